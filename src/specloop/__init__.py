"""specloop: worker/verifier agent loop for implementing specs."""

__version__ = "0.1.0"
