"""Prompt template loading and placeholder rendering for specloop."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationFault

logger = logging.getLogger(__name__)

WORKER_TEMPLATE_FILE = "implement.prompt-template.md"
VERIFIER_TEMPLATE_FILE = "review.prompt-template.md"

NO_ACCEPTANCE_COMMANDS = "- (none specified)"

PLACEHOLDER_RE = re.compile(r"\{\{([A-Z][A-Z0-9_]*)\}\}")


def render_template(template: str, values: Mapping[str, str]) -> str:
    """Substitute ``{{NAME}}`` placeholders with literal values.

    Placeholders without a value are left untouched. Replacement happens in
    one pass over the template, so a value that itself contains ``{{...}}``
    is inserted as-is and never expanded.

    Args:
        template: Template text.
        values: Mapping from placeholder name (without braces) to text.

    Returns:
        Rendered text.
    """

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return match.group(0)

    return PLACEHOLDER_RE.sub(substitute, template)


def format_acceptance_commands(commands: list[str]) -> str:
    """Render acceptance commands as a markdown bullet list."""
    if not commands:
        return NO_ACCEPTANCE_COMMANDS
    return "\n".join(f"- {cmd}" for cmd in commands)


def format_remaining_tasks(tasks: list[str]) -> str:
    """Render remaining tasks as pretty-printed JSON for the worker prompt."""
    return json.dumps(tasks, indent=2, ensure_ascii=False)


def worker_values(
    spec_id: str,
    spec_name: str,
    spec_body: str,
    acceptance_commands: list[str],
    mode: str,
    previous_remaining_tasks: list[str],
) -> dict[str, str]:
    return {
        "SPEC_ID": spec_id,
        "SPEC_NAME": spec_name,
        "SPEC_BODY": spec_body,
        "ACCEPTANCE_COMMANDS": format_acceptance_commands(acceptance_commands),
        "PREVIOUS_REMAINING_TASKS": format_remaining_tasks(previous_remaining_tasks),
        "MODE": mode,
    }


def verifier_values(
    spec_id: str,
    spec_name: str,
    spec_body: str,
    acceptance_commands: list[str],
    mode: str,
    checklist: str,
    implementation_report: str,
) -> dict[str, str]:
    return {
        "SPEC_ID": spec_id,
        "SPEC_NAME": spec_name,
        "SPEC_BODY": spec_body,
        "ACCEPTANCE_COMMANDS": format_acceptance_commands(acceptance_commands),
        "ACCEPTANCE_CHECKLIST": checklist,
        "IMPLEMENTATION_REPORT": implementation_report,
        "MODE": mode,
    }


@dataclass
class PromptTemplates:
    """The worker and verifier templates that live in the specs root."""

    worker: str
    verifier: str

    @classmethod
    def load(cls, specs_root: Path) -> PromptTemplates:
        """Load both templates from the specs root.

        Raises:
            ConfigurationFault: If either template cannot be read.
        """
        return cls(
            worker=_read_template(specs_root / WORKER_TEMPLATE_FILE),
            verifier=_read_template(specs_root / VERIFIER_TEMPLATE_FILE),
        )

    def render_worker(self, values: Mapping[str, str]) -> str:
        return render_template(self.worker, values)

    def render_verifier(self, values: Mapping[str, str]) -> str:
        return render_template(self.verifier, values)


def _read_template(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationFault(f"Failed to read prompt template {path}: {e}") from e
    logger.debug(f"Loaded prompt template {path} ({len(text)} chars)")
    return text


def unresolved_placeholders(text: str, known: Optional[Mapping[str, str]] = None) -> list[str]:
    """List placeholder names still present in rendered text.

    Useful for warning about template typos; unresolved placeholders are
    never an error.
    """
    names = sorted(set(PLACEHOLDER_RE.findall(text)))
    if known is None:
        return names
    return [name for name in names if name not in known]
