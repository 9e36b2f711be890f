"""Spec bundles: metadata.json, SPEC.md, checklist, and discovery.

A spec directory looks like this:

    docs/specs/
      implement.prompt-template.md
      review.prompt-template.md
      .cli-settings.json            (optional)
      spec-01-foo/
        metadata.json
        SPEC.md
        acceptance-checklist.md     (optional)
        implementation-report.md    (written by specloop)

Metadata is always rewritten as a whole file; see ``write_text_atomic``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigurationFault
from .prompts import PromptTemplates

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
SPEC_FILE = "SPEC.md"
CHECKLIST_FILE = "acceptance-checklist.md"
REPORT_FILE = "implementation-report.md"
SPEC_DIR_PREFIX = "spec-"

STATUS_TODO = "todo"
STATUS_IN_PROGRESS = "in-progress"
STATUS_DONE = "done"
STATUS_BLOCKED = "blocked"

UNNAMED_SPEC = "(unnamed spec)"


@dataclass
class NoteRecord:
    """One entry of the append-only notes log."""

    timestamp: str
    attempt: Optional[int] = None
    status: Optional[str] = None
    remaining_tasks: list[str] = field(default_factory=list)
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "attempt": self.attempt,
            "status": self.status,
            "remainingTasks": list(self.remaining_tasks),
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NoteRecord:
        return cls(
            timestamp=data.get("timestamp", ""),
            attempt=data.get("attempt"),
            status=data.get("status"),
            remaining_tasks=list(data.get("remainingTasks") or []),
            text=data.get("text", ""),
        )


@dataclass
class SpecMetadata:
    """The metadata.json record of a spec."""

    id: str = ""
    name: str = ""
    status: str = STATUS_TODO
    depends_on: list[str] = field(default_factory=list)
    last_run: Optional[str] = None
    notes: list[NoteRecord] = field(default_factory=list)
    acceptance_commands: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ("id", "name", "status", "dependsOn", "lastRun", "notes", "acceptanceCommands")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "dependsOn": list(self.depends_on),
            "acceptanceCommands": list(self.acceptance_commands),
        }
        if self.last_run:
            data["lastRun"] = self.last_run
        if self.notes:
            data["notes"] = [note.to_dict() for note in self.notes]
        # Unknown keys written by other tools survive a rewrite
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpecMetadata:
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            status=str(data.get("status") or STATUS_TODO),
            depends_on=list(data.get("dependsOn") or []),
            last_run=data.get("lastRun"),
            notes=_load_notes(data.get("notes")),
            acceptance_commands=list(data.get("acceptanceCommands") or []),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )

    @classmethod
    def load(cls, path: Path) -> SpecMetadata:
        """Read metadata.json.

        Raises:
            ConfigurationFault: If the file is missing, not UTF-8 or not a
                JSON object.
        """
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationFault(f"Failed to read metadata {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationFault(f"Failed to parse metadata {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationFault(f"Metadata {path} must contain a JSON object")
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        """Rewrite metadata.json in full."""
        write_text_atomic(path, json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n")
        logger.debug(f"Saved metadata to {path}")


def _load_notes(raw: Any) -> list[NoteRecord]:
    """Accept both the record list and the legacy newline-joined string."""
    if not raw:
        return []
    if isinstance(raw, str):
        return [NoteRecord(timestamp="", text=line.strip()) for line in raw.splitlines() if line.strip()]
    if isinstance(raw, list):
        return [
            NoteRecord.from_dict(item) if isinstance(item, dict) else NoteRecord(timestamp="", text=str(item))
            for item in raw
        ]
    raise ConfigurationFault(f"Unsupported notes value in metadata: {type(raw).__name__}")


def write_text_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers never see a partial file.

    Writes to a temporary file in the same directory and swaps it in with
    ``os.replace``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def extract_title(markdown: str) -> str:
    """Return the first level-1 heading of a markdown document, or ''."""
    for line in markdown.splitlines():
        trimmed = line.strip()
        if trimmed.startswith("# "):
            return trimmed[2:].strip()
    return ""


def resolve_spec_dir(spec_arg: str, root: Path, specs_root: Path) -> Path:
    """Locate a spec directory from a CLI argument.

    Tries the argument as an absolute path, then relative to the workspace
    root, then relative to the specs root.

    Raises:
        ConfigurationFault: If no candidate exists.
    """
    if not spec_arg:
        raise ConfigurationFault("Spec argument is required")

    arg_path = Path(spec_arg)
    if arg_path.is_absolute():
        if not arg_path.is_dir():
            raise ConfigurationFault(f"Could not find spec directory {arg_path}")
        return arg_path

    candidate = root / arg_path
    if candidate.is_dir():
        return candidate

    alt = specs_root / arg_path
    if alt.is_dir():
        return alt

    raise ConfigurationFault(f"Could not find spec directory at {candidate} or {alt}")


@dataclass
class SpecBundle:
    """Everything the attempt loop reads about one spec."""

    spec_dir: Path
    metadata: SpecMetadata
    spec_id: str
    spec_name: str
    spec_body: str
    checklist: str
    acceptance_commands: list[str]
    templates: PromptTemplates

    @property
    def metadata_path(self) -> Path:
        return self.spec_dir / METADATA_FILE

    @property
    def report_path(self) -> Path:
        return self.spec_dir / REPORT_FILE

    @classmethod
    def load(
        cls,
        spec_dir: Path,
        specs_root: Optional[Path] = None,
        default_acceptance_commands: Optional[list[str]] = None,
    ) -> SpecBundle:
        """Load metadata, spec body, checklist and templates for a spec.

        Args:
            spec_dir: The spec directory.
            specs_root: Directory holding the prompt templates. Defaults to
                the parent of ``spec_dir``.
            default_acceptance_commands: Used when metadata lists none.

        Raises:
            ConfigurationFault: If a required document is missing or unreadable.
        """
        specs_root = specs_root or spec_dir.parent
        metadata = SpecMetadata.load(spec_dir / METADATA_FILE)

        try:
            spec_body = (spec_dir / SPEC_FILE).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationFault(f"Failed to read {SPEC_FILE} in {spec_dir}: {e}") from e

        checklist_path = spec_dir / CHECKLIST_FILE
        try:
            checklist = checklist_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No checklist at {checklist_path}, verifier gets an empty one")
            checklist = ""
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationFault(f"Failed to read {CHECKLIST_FILE} in {spec_dir}: {e}") from e

        templates = PromptTemplates.load(specs_root)

        commands = metadata.acceptance_commands or list(default_acceptance_commands or [])

        return cls(
            spec_dir=spec_dir,
            metadata=metadata,
            spec_id=metadata.id or spec_dir.name,
            spec_name=metadata.name or extract_title(spec_body) or UNNAMED_SPEC,
            spec_body=spec_body,
            checklist=checklist,
            acceptance_commands=commands,
            templates=templates,
        )


@dataclass
class SpecFolder:
    """A discovered spec-* directory with its dependency state."""

    id: str
    name: str
    path: Path
    metadata: SpecMetadata
    has_checklist: bool = False
    can_run: bool = False
    unmet_deps: list[str] = field(default_factory=list)


def discover_specs(specs_root: Path) -> list[SpecFolder]:
    """Scan the specs root for ``spec-*`` directories, sorted by id.

    Raises:
        ConfigurationFault: If the root is unreadable or a spec folder lacks
            SPEC.md or metadata.json.
    """
    if not specs_root.is_dir():
        raise ConfigurationFault(f"Specs root does not exist: {specs_root}")

    folders: list[SpecFolder] = []
    for entry in sorted(specs_root.iterdir()):
        if not entry.is_dir() or not entry.name.startswith(SPEC_DIR_PREFIX):
            continue
        for required in (SPEC_FILE, METADATA_FILE):
            if not (entry / required).exists():
                raise ConfigurationFault(f"Spec folder {entry} missing {required}")

        meta = SpecMetadata.load(entry / METADATA_FILE)
        folders.append(
            SpecFolder(
                id=meta.id or entry.name,
                name=meta.name,
                path=entry,
                metadata=meta,
                has_checklist=(entry / CHECKLIST_FILE).exists(),
            )
        )

    folders.sort(key=lambda f: f.id)
    compute_dependency_state(folders)
    return folders


def compute_dependency_state(folders: list[SpecFolder]) -> None:
    """Mark which specs can run: not done, and every dependency done."""
    status_by_id = {f.metadata.id or f.id: f.metadata.status for f in folders}

    for folder in folders:
        folder.can_run = False
        folder.unmet_deps = []
        if folder.metadata.status == STATUS_DONE:
            continue
        folder.unmet_deps = [
            dep for dep in folder.metadata.depends_on
            if status_by_id.get(dep) != STATUS_DONE
        ]
        folder.can_run = not folder.unmet_deps
