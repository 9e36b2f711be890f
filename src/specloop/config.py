"""Configuration management for specloop."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationFault

logger = logging.getLogger(__name__)

SETTINGS_FILE = ".cli-settings.json"
REPO_CONFIG_FILE = "specloop.config.json"

DEFAULT_MODE = "strict"
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_MODEL = "gpt-5.1-codex"
DEFAULT_SPLIT_MODEL = "gpt-5.1"
DEFAULT_SPECS_ROOT = "docs/specs"
DEFAULT_CODEX_BIN = "codex"


@dataclass
class Settings:
    """Run settings: file defaults, then environment, then CLI overrides."""

    mode: str = DEFAULT_MODE
    acceptance_commands: list[str] = field(default_factory=list)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    worker_model: str = DEFAULT_MODEL
    verifier_model: str = DEFAULT_MODEL
    reasoning: Optional[str] = None
    split_model: str = DEFAULT_SPLIT_MODEL

    # Runtime settings (environment only)
    codex_bin: str = DEFAULT_CODEX_BIN
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict) -> Settings:
        """Create Settings from a settings-file mapping."""
        commands = data.get("acceptanceCommands") or []
        if not isinstance(commands, list):
            raise ConfigurationFault("acceptanceCommands must be a list of strings")
        return cls(
            mode=str(data.get("mode") or DEFAULT_MODE),
            acceptance_commands=[str(c) for c in commands],
            max_attempts=_to_int(data.get("defaultMaxAttempts", DEFAULT_MAX_ATTEMPTS), "defaultMaxAttempts"),
            worker_model=str(data.get("codexModelRunImpl") or DEFAULT_MODEL),
            verifier_model=str(data.get("codexModelRunVer") or DEFAULT_MODEL),
            reasoning=data.get("reasoning") or None,
            split_model=str(data.get("codexModelSplit") or DEFAULT_SPLIT_MODEL),
        )

    def to_dict(self) -> dict:
        """Settings-file mapping; environment-only fields are left out."""
        data = {
            "mode": self.mode,
            "acceptanceCommands": list(self.acceptance_commands),
            "defaultMaxAttempts": self.max_attempts,
            "codexModelRunImpl": self.worker_model,
            "codexModelRunVer": self.verifier_model,
            "codexModelSplit": self.split_model,
        }
        if self.reasoning:
            data["reasoning"] = self.reasoning
        return data

    @classmethod
    def load_from_file(cls, specs_root: Path) -> Settings:
        """Load settings from ``.cli-settings.json`` in the specs root.

        The file is parsed with YAML, which accepts plain JSON as well.
        A missing file yields defaults.

        Raises:
            ConfigurationFault: If the file exists but cannot be read or
                does not contain a mapping.
        """
        settings_path = specs_root / SETTINGS_FILE
        if not settings_path.exists():
            logger.debug(f"No settings file at {settings_path}, using defaults")
            return cls()

        try:
            with open(settings_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            raise ConfigurationFault(f"Failed to read settings {settings_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationFault(f"Settings file {settings_path} must contain an object")
        return cls.from_dict(data)

    @classmethod
    def load(cls, specs_root: Path) -> Settings:
        """Load settings from file and apply environment overrides.

        Environment variables (a ``.env`` file is honoured):
            MAX_ATTEMPTS, CODEX_MODEL_IMPL, CODEX_MODEL_VER,
            SPECLOOP_CODEX_BIN, SPECLOOP_LOG_LEVEL.
        """
        load_dotenv()

        settings = cls.load_from_file(specs_root)
        settings.apply_env()
        return settings

    def apply_env(self) -> None:
        if os.getenv("MAX_ATTEMPTS"):
            self.max_attempts = _to_int(os.getenv("MAX_ATTEMPTS"), "MAX_ATTEMPTS")
        self.worker_model = os.getenv("CODEX_MODEL_IMPL") or self.worker_model
        self.verifier_model = os.getenv("CODEX_MODEL_VER") or self.verifier_model
        self.codex_bin = os.getenv("SPECLOOP_CODEX_BIN") or self.codex_bin
        self.log_level = os.getenv("SPECLOOP_LOG_LEVEL", self.log_level)

    def validate(self) -> list[str]:
        """Validate settings and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.max_attempts < 1:
            errors.append(f"Max attempts must be a positive integer, got {self.max_attempts}")
        if not self.worker_model.strip():
            errors.append("Worker model must not be empty")
        if not self.verifier_model.strip():
            errors.append("Verifier model must not be empty")
        if not self.mode.strip():
            errors.append("Mode must not be empty")

        return errors


def _to_int(value: object, name: str) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ConfigurationFault(f"{name} must be an integer, got {value!r}") from e


@dataclass
class RepoConfig:
    """Workspace-level ``specloop.config.json``: where the specs root lives.

    Kept outside the specs root because it is what locates it.
    """

    specs_root: str = DEFAULT_SPECS_ROOT
    initialized: bool = False

    @classmethod
    def load(cls, root: Path) -> RepoConfig:
        """Read ``<root>/specloop.config.json``; a missing file yields defaults.

        Raises:
            ConfigurationFault: If the file exists but cannot be read or
                does not contain a mapping.
        """
        path = root / REPO_CONFIG_FILE
        if not path.exists():
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            raise ConfigurationFault(f"Failed to read {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationFault(f"{path} must contain an object")
        return cls(
            specs_root=str(data.get("specsRoot") or DEFAULT_SPECS_ROOT),
            initialized=bool(data.get("initialized", False)),
        )

    def save(self, root: Path) -> Path:
        path = root / REPO_CONFIG_FILE
        data = {"specsRoot": self.specs_root, "initialized": self.initialized}
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        logger.debug(f"Saved repo config to {path}")
        return path

    def resolve_specs_root(self, root: Path) -> Path:
        """Absolute specs root; relative values are taken from ``root``."""
        specs_root = Path(self.specs_root).expanduser()
        if not specs_root.is_absolute():
            specs_root = root / specs_root
        return specs_root.resolve()
