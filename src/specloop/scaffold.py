"""Bootstrap a specs workspace.

``scaffold_workspace`` lays down everything ``specloop run`` expects to read:
the specs root with both prompt templates, ``.cli-settings.json``, a README,
the splitting guide used by ``specloop spec``, and an example spec folder.
Existing files are never overwritten; re-running reports them as skipped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import DEFAULT_SPECS_ROOT, REPO_CONFIG_FILE, SETTINGS_FILE, RepoConfig, Settings
from .prompts import VERIFIER_TEMPLATE_FILE, WORKER_TEMPLATE_FILE
from .specs import CHECKLIST_FILE, METADATA_FILE, SPEC_FILE, SpecMetadata

logger = logging.getLogger(__name__)

MODES = ("strict", "lenient")
DEFAULT_ACCEPTANCE_COMMANDS = ["pytest"]
SPLITTING_GUIDE_FILE = "spec-splitting-guide.md"
EXAMPLE_SPEC_ID = "spec-00-example"

README_TEMPLATE = """# Specs

Each `spec-*` folder holds one unit of work:

- `SPEC.md`: what to build
- `acceptance-checklist.md`: what the verifier checks
- `metadata.json`: id, name, status, dependencies and run notes
- `implementation-report.md`: written by `specloop run` after every attempt

Run a spec with `specloop run <spec-folder>` and list progress with
`specloop status`. A spec is runnable once every id in its `dependsOn` is done.

`implement.prompt-template.md` and `review.prompt-template.md` are the worker
and verifier prompts. `{{PLACEHOLDER}}` names are filled in per run; unknown
names are left as they are.
"""

SPLITTING_GUIDE_TEMPLATE = """# Spec splitting guide

Break a large spec into small specs that can each be implemented and verified
in one worker/verifier run.

- One spec per coherent, testable slice of behaviour.
- Order specs so that foundations come first; give each an increasing `index`.
- List a spec's prerequisites in `dependsOn` by `index`, `idSuffix` or id.
- Give every spec concrete acceptance criteria a reviewer can check by reading
  code and running the acceptance commands.
- Avoid specs that only make sense together; merge them instead.
"""

WORKER_PROMPT_TEMPLATE = """# Implement {{SPEC_ID}}: {{SPEC_NAME}}

You are the implementer for this spec. Mode: {{MODE}}.

{mode_guidance}

## Spec

{{SPEC_BODY}}

## Acceptance commands

Run these before you finish and fix any failure:

{{ACCEPTANCE_COMMANDS}}

## Remaining tasks from the previous review

{{PREVIOUS_REMAINING_TASKS}}

Finish with a short report of what you changed and how you verified it.
"""

MODE_GUIDANCE = {
    "strict": "Implement every requirement. Do not leave stubs, TODOs or skipped tests.",
    "lenient": "Implement the core requirements first; note anything deferred in your report.",
}

VERIFIER_PROMPT_TEMPLATE = """# Review {{SPEC_ID}}: {{SPEC_NAME}}

You are the reviewer for this spec. Mode: {{MODE}}. Do not modify any files.

## Spec

{{SPEC_BODY}}

## Acceptance checklist

{{ACCEPTANCE_CHECKLIST}}

## Acceptance commands

{{ACCEPTANCE_COMMANDS}}

## Implementer report

{{IMPLEMENTATION_REPORT}}

## Response format

Reply with exactly two lines and nothing before them:

STATUS: ok
{"remainingTasks": []}

Use `STATUS: missing` instead when work remains, and list each missing item
as a string in `remainingTasks`.
"""

EXAMPLE_SPEC_BODY = """# Example spec workspace walkthrough

## Summary

Replace this folder with real specs. It shows the files `specloop run`
reads and the report it writes back.

## Acceptance Criteria

- The acceptance commands pass.
"""


@dataclass
class ScaffoldResult:
    """Paths created and skipped, relative to the workspace root when possible."""

    specs_root: Path
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def normalize_commands(commands: Optional[list[str]]) -> list[str]:
    """Strip, drop blanks and de-duplicate, keeping order."""
    out: list[str] = []
    for command in commands or []:
        trimmed = command.strip()
        if trimmed and trimmed not in out:
            out.append(trimmed)
    return out


def write_file_if_missing(path: Path, text: str) -> bool:
    """Write ``text`` to ``path`` unless it exists. Returns True if written."""
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return True


def build_worker_template(mode: str) -> str:
    # str.format would trip over the {{...}} placeholders
    return WORKER_PROMPT_TEMPLATE.replace("{mode_guidance}", MODE_GUIDANCE.get(mode, MODE_GUIDANCE["strict"]))


def example_checklist(commands: list[str]) -> str:
    lines = [f"# Acceptance Checklist - {EXAMPLE_SPEC_ID}", "", "## Automated commands", ""]
    lines.extend(f"- [ ] `{command}`" for command in commands)
    if not commands:
        lines.append("- [ ] (none provided)")
    lines.extend(["", "## Spec criteria", "", "- [ ] The acceptance commands pass.", ""])
    return "\n".join(lines)


def scaffold_workspace(
    root: Path,
    specs_root: str = DEFAULT_SPECS_ROOT,
    mode: str = "strict",
    acceptance_commands: Optional[list[str]] = None,
) -> ScaffoldResult:
    """Create the specs workspace under ``root``.

    Args:
        root: Workspace root.
        specs_root: Specs root, relative to ``root`` unless absolute.
        mode: Mode written to the settings file and used for the worker prompt.
        acceptance_commands: Defaults to ``DEFAULT_ACCEPTANCE_COMMANDS``.

    Returns:
        ScaffoldResult listing created and skipped files.

    Raises:
        ValueError: If ``mode`` is not one of ``MODES``.
        OSError: If a directory or file cannot be written.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown mode {mode!r}; expected one of {', '.join(MODES)}")

    root = root.resolve()
    repo_config = RepoConfig(specs_root=specs_root.strip() or DEFAULT_SPECS_ROOT, initialized=True)
    specs_dir = repo_config.resolve_specs_root(root)
    specs_dir.mkdir(parents=True, exist_ok=True)

    commands = normalize_commands(acceptance_commands) or list(DEFAULT_ACCEPTANCE_COMMANDS)
    settings = Settings(mode=mode, acceptance_commands=commands)
    result = ScaffoldResult(specs_root=specs_dir)

    def record(path: Path, created: bool) -> None:
        try:
            shown = str(path.relative_to(root))
        except ValueError:
            shown = str(path)
        (result.created if created else result.skipped).append(shown)
        logger.debug(f"{'Created' if created else 'Skipped existing'} {path}")

    files = [
        (specs_dir / "README.md", README_TEMPLATE),
        (specs_dir / SPLITTING_GUIDE_FILE, SPLITTING_GUIDE_TEMPLATE),
        (specs_dir / WORKER_TEMPLATE_FILE, build_worker_template(mode)),
        (specs_dir / VERIFIER_TEMPLATE_FILE, VERIFIER_PROMPT_TEMPLATE),
        (specs_dir / SETTINGS_FILE, json.dumps(settings.to_dict(), indent=2) + "\n"),
        (specs_dir / EXAMPLE_SPEC_ID / SPEC_FILE, EXAMPLE_SPEC_BODY),
        (specs_dir / EXAMPLE_SPEC_ID / CHECKLIST_FILE, example_checklist(commands)),
    ]
    for path, text in files:
        record(path, write_file_if_missing(path, text))

    metadata_path = specs_dir / EXAMPLE_SPEC_ID / METADATA_FILE
    if metadata_path.exists():
        record(metadata_path, False)
    else:
        SpecMetadata(
            id=EXAMPLE_SPEC_ID,
            name="Example spec workspace walkthrough",
            acceptance_commands=commands,
        ).save(metadata_path)
        record(metadata_path, True)

    # Always rewritten so a re-scaffold to another root is picked up
    existed = (root / REPO_CONFIG_FILE).exists()
    record(repo_config.save(root), not existed)

    result.created.sort()
    result.skipped.sort()
    logger.info(f"Scaffolded {specs_dir}: {len(result.created)} created, {len(result.skipped)} skipped")
    return result
