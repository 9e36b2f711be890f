"""Main entry point for running specloop as a module.

Usage:
    python -m specloop --help
    python -m specloop run spec-01-demo
    python -m specloop status
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
