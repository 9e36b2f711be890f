"""Shared test fixtures for specloop tests."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from specloop.agent_runner import ScriptedAgentRunner
from specloop.config import Settings
from specloop.specs import SpecBundle

WORKER_TEMPLATE = """# Implement {{SPEC_ID}}: {{SPEC_NAME}}

Mode: {{MODE}}

{{SPEC_BODY}}

Acceptance commands:
{{ACCEPTANCE_COMMANDS}}

Previous remaining tasks:
{{PREVIOUS_REMAINING_TASKS}}
"""

VERIFIER_TEMPLATE = """# Review {{SPEC_ID}}: {{SPEC_NAME}}

Mode: {{MODE}}

{{SPEC_BODY}}

Checklist:
{{ACCEPTANCE_CHECKLIST}}

Acceptance commands:
{{ACCEPTANCE_COMMANDS}}

Worker report:
{{IMPLEMENTATION_REPORT}}
"""

OK_OUTPUT = 'STATUS: ok\n{"remainingTasks":[]}\n'

FIXED_NOW = datetime(2025, 11, 22, 8, 0, 0, tzinfo=timezone.utc)


def missing_output(*tasks: str) -> str:
    return "STATUS: missing\n" + json.dumps({"remainingTasks": list(tasks)}) + "\n"


@pytest.fixture
def specs_root(tmp_path: Path) -> Path:
    """Create a workspace with docs/specs and one spec folder."""
    root = tmp_path / "docs" / "specs"
    spec_dir = root / "spec-01-demo"
    spec_dir.mkdir(parents=True)

    (root / "implement.prompt-template.md").write_text(WORKER_TEMPLATE)
    (root / "review.prompt-template.md").write_text(VERIFIER_TEMPLATE)

    (spec_dir / "SPEC.md").write_text("# Demo Spec\n\nBuild the demo.\n")
    (spec_dir / "acceptance-checklist.md").write_text("- [ ] demo works\n")
    (spec_dir / "metadata.json").write_text(
        json.dumps(
            {
                "id": "spec-01-demo",
                "name": "Demo",
                "status": "todo",
                "dependsOn": [],
                "acceptanceCommands": ["make test"],
            },
            indent=2,
        )
    )
    return root


@pytest.fixture
def spec_dir(specs_root: Path) -> Path:
    return specs_root / "spec-01-demo"


@pytest.fixture
def bundle(spec_dir: Path) -> SpecBundle:
    return SpecBundle.load(spec_dir)


@pytest.fixture
def settings() -> Settings:
    return Settings(mode="strict", max_attempts=2, worker_model="impl-model", verifier_model="ver-model")


@pytest.fixture
def scripted() -> ScriptedAgentRunner:
    return ScriptedAgentRunner()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
