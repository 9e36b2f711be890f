"""Tests for CLI entrypoint."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import OK_OUTPUT, missing_output
from specloop.cli import app
from specloop.errors import AgentProcessError

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MAX_ATTEMPTS", "CODEX_MODEL_IMPL", "CODEX_MODEL_VER", "SPECLOOP_CODEX_BIN", "SPECLOOP_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("specloop.config.load_dotenv", lambda: None)


def write_responses(path: Path, responses: list[str]) -> Path:
    path.write_text(yaml.safe_dump(responses))
    return path


def run_args(tmp_path: Path, *extra: str) -> list[str]:
    return ["run", "spec-01-demo", "--root", str(tmp_path), *extra]


class TestCLI:
    """Tests for CLI commands."""

    def test_version(self) -> None:
        """Test --version flag."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "specloop version" in result.stdout

    def test_help(self) -> None:
        """Test --help flag."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "run" in result.stdout
        assert "status" in result.stdout

    def test_run_help(self) -> None:
        """Test run command help."""
        result = runner.invoke(app, ["run", "--help"])

        assert result.exit_code == 0
        assert "--max-attempts" in result.stdout
        assert "--specs-root" in result.stdout


class TestRunCommand:
    """Tests for the run command with canned agent responses."""

    def test_success_exit_zero(self, tmp_path: Path, specs_root: Path) -> None:
        """Test a verified run exits 0 and marks the spec done."""
        responses = write_responses(tmp_path / "responses.yaml", ["worker done", OK_OUTPUT])

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 0, result.output
        meta = json.loads((specs_root / "spec-01-demo" / "metadata.json").read_text())
        assert meta["status"] == "done"

    def test_exhausted_exit_one(self, tmp_path: Path, specs_root: Path) -> None:
        """Test an exhausted budget exits non-zero and lists remaining tasks."""
        responses = write_responses(
            tmp_path / "responses.yaml",
            ["w1", missing_output("add tests"), "w2", missing_output("add tests")],
        )

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 1
        assert "add tests" in result.output
        meta = json.loads((specs_root / "spec-01-demo" / "metadata.json").read_text())
        assert meta["status"] == "in-progress"

    def test_max_attempts_option(self, tmp_path: Path, specs_root: Path) -> None:
        """Test --max-attempts 1 stops after one round."""
        responses = write_responses(tmp_path / "responses.yaml", ["w1", missing_output("x"), "w2", OK_OUTPUT])

        result = runner.invoke(
            app, run_args(tmp_path, "--mock-responses", str(responses), "--max-attempts", "1")
        )

        assert result.exit_code == 1

    def test_settings_file_budget(self, tmp_path: Path, specs_root: Path) -> None:
        """Test defaultMaxAttempts from .cli-settings.json is honoured."""
        (specs_root / ".cli-settings.json").write_text(json.dumps({"defaultMaxAttempts": 3}))
        responses = write_responses(
            tmp_path / "responses.yaml",
            ["w1", missing_output("x"), "w2", missing_output("x"), "w3", OK_OUTPUT],
        )

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 0, result.output

    def test_protocol_violation_exit_code(self, tmp_path: Path, specs_root: Path) -> None:
        """Test a malformed verifier response exits with the protocol code."""
        responses = write_responses(tmp_path / "responses.yaml", ["w1", "STATUS: ok\nnot json"])

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 4
        assert "malformed payload" in result.output
        assert not (specs_root / "spec-01-demo" / "implementation-report.md").exists()

    def test_agent_error_exit_code(self, tmp_path: Path, specs_root: Path) -> None:
        """Test an agent process failure exits with the agent code."""
        with patch(
            "specloop.agent_runner.CodexRunner.invoke",
            side_effect=AgentProcessError("codex exited with code 9", returncode=9),
        ):
            result = runner.invoke(app, run_args(tmp_path))

        assert result.exit_code == 3
        assert "exited with code 9" in result.output

    def test_missing_spec_dir(self, tmp_path: Path, specs_root: Path) -> None:
        """Test an unknown spec is a configuration fault."""
        result = runner.invoke(app, ["run", "spec-42-missing", "--root", str(tmp_path)])

        assert result.exit_code == 2
        assert "Could not find spec directory" in result.output

    def test_missing_template(self, tmp_path: Path, specs_root: Path) -> None:
        """Test a missing template fails before any attempt runs."""
        (specs_root / "implement.prompt-template.md").unlink()
        responses = write_responses(tmp_path / "responses.yaml", ["w1", OK_OUTPUT])

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 2
        assert not (specs_root / "spec-01-demo" / "implementation-report.md").exists()

    def test_invalid_max_attempts(self, tmp_path: Path, specs_root: Path) -> None:
        """Test a zero budget is rejected."""
        result = runner.invoke(app, run_args(tmp_path, "--max-attempts", "0"))

        assert result.exit_code == 2
        assert "positive integer" in result.output

    def test_metadata_not_utf8_is_configuration_fault(self, tmp_path: Path, specs_root: Path) -> None:
        """Test undecodable metadata exits with the configuration code, not a traceback."""
        (specs_root / "spec-01-demo" / "metadata.json").write_bytes(b'{"id": "\xff"}')
        responses = write_responses(tmp_path / "responses.yaml", ["w1", OK_OUTPUT])

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 2
        assert "Failed to read metadata" in result.output
        assert not isinstance(result.exception, UnicodeDecodeError)

    def test_specs_root_from_repo_config(self, tmp_path: Path, specs_root: Path) -> None:
        """Test specloop.config.json relocates the specs root."""
        specs_root.rename(tmp_path / "specs")
        (tmp_path / "specloop.config.json").write_text(json.dumps({"specsRoot": "specs"}))
        responses = write_responses(tmp_path / "responses.yaml", ["w1", OK_OUTPUT])

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert result.exit_code == 0, result.output
        meta = json.loads((tmp_path / "specs" / "spec-01-demo" / "metadata.json").read_text())
        assert meta["status"] == "done"

    def test_attempt_banner_printed(self, tmp_path: Path, specs_root: Path) -> None:
        responses = write_responses(tmp_path / "responses.yaml", ["w1", OK_OUTPUT])

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(responses)))

        assert "=== Attempt 1 of 2 for spec-01-demo ===" in result.stdout

    def test_bad_mock_responses(self, tmp_path: Path, specs_root: Path) -> None:
        """Test a mock file that is not a list of strings is rejected."""
        bad = tmp_path / "responses.yaml"
        bad.write_text("key: value\n")

        result = runner.invoke(app, run_args(tmp_path, "--mock-responses", str(bad)))

        assert result.exit_code == 2


class TestStatusCommand:
    """Tests for the status command."""

    def test_lists_specs(self, tmp_path: Path, specs_root: Path) -> None:
        """Test specs are listed with their status."""
        result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "spec-01-demo" in result.stdout
        assert "todo" in result.stdout

    def test_missing_specs_root(self, tmp_path: Path) -> None:
        """Test a missing specs root fails."""
        result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert result.exit_code == 2

    def test_empty_specs_root(self, tmp_path: Path) -> None:
        """Test an empty specs root reports no specs."""
        (tmp_path / "docs" / "specs").mkdir(parents=True)

        result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert result.exit_code == 0
        assert "No specs found" in result.stdout

    def test_brackets_in_names_are_shown(self, tmp_path: Path, specs_root: Path) -> None:
        """Test bracketed text in a spec name is not eaten as markup."""
        meta_path = specs_root / "spec-01-demo" / "metadata.json"
        meta = json.loads(meta_path.read_text())
        meta["name"] = "Fix [x] parser"
        meta_path.write_text(json.dumps(meta))

        result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "Fix [x] parser" in result.stdout

    def test_specs_root_from_repo_config(self, tmp_path: Path, specs_root: Path) -> None:
        specs_root.rename(tmp_path / "specs")
        (tmp_path / "specloop.config.json").write_text(json.dumps({"specsRoot": "specs"}))

        result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "spec-01-demo" in result.stdout

    def test_bad_repo_config(self, tmp_path: Path, specs_root: Path) -> None:
        (tmp_path / "specloop.config.json").write_text("[]")

        result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert result.exit_code == 2


class TestScaffoldCommand:
    """Tests for the scaffold command."""

    def test_scaffold_then_status(self, tmp_path: Path) -> None:
        """Test a scaffolded workspace is found by status without extra options."""
        result = runner.invoke(app, ["scaffold", "--root", str(tmp_path), "--specs-root", "specs", "-a", "make test"])

        assert result.exit_code == 0, result.output
        assert "created" in result.stdout
        assert (tmp_path / "specs" / "implement.prompt-template.md").exists()

        status_result = runner.invoke(app, ["status", "--root", str(tmp_path)])

        assert status_result.exit_code == 0, status_result.output
        assert "spec-00-example" in status_result.stdout

    def test_scaffold_twice_skips(self, tmp_path: Path) -> None:
        runner.invoke(app, ["scaffold", "--root", str(tmp_path)])

        result = runner.invoke(app, ["scaffold", "--root", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "skipped" in result.stdout
        assert "created" not in result.stdout

    def test_invalid_mode(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["scaffold", "--root", str(tmp_path), "--mode", "yolo"])

        assert result.exit_code == 2
        assert not (tmp_path / "docs").exists()


class TestSpecCommand:
    """Tests for the spec split command."""

    PLAN = {
        "specs": [
            {"index": 2, "idSuffix": "core", "name": "Core", "acceptanceCriteria": ["works"]},
            {"index": 3, "idSuffix": "cli", "name": "CLI", "dependsOn": ["core"]},
        ]
    }

    def test_plan_file(self, tmp_path: Path, specs_root: Path) -> None:
        """Test a plan file creates linked spec folders."""
        plan = tmp_path / "plan.json"
        plan.write_text(json.dumps(self.PLAN))

        result = runner.invoke(app, ["spec", "--plan-file", str(plan), "--root", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "Created 2 spec(s)." in result.stdout
        meta = json.loads((specs_root / "spec-03-cli" / "metadata.json").read_text())
        assert meta["dependsOn"] == ["spec-02-core"]

    def test_agent_plan_with_mock_responses(self, tmp_path: Path, specs_root: Path) -> None:
        """Test the planning agent's reply is applied."""
        (specs_root / "spec-splitting-guide.md").write_text("# Guide\n")
        big_spec = tmp_path / "big.md"
        big_spec.write_text("# Big\n\nEverything.\n")
        responses = write_responses(tmp_path / "responses.yaml", [json.dumps(self.PLAN)])

        result = runner.invoke(
            app, ["spec", str(big_spec), "--root", str(tmp_path), "--mock-responses", str(responses)]
        )

        assert result.exit_code == 0, result.output
        assert (specs_root / "spec-02-core" / "SPEC.md").exists()

    def test_bad_plan_exit_code(self, tmp_path: Path, specs_root: Path) -> None:
        plan = tmp_path / "plan.json"
        plan.write_text('{"specs": []}')

        result = runner.invoke(app, ["spec", "--plan-file", str(plan), "--root", str(tmp_path)])

        assert result.exit_code == 4

    def test_requires_input(self, tmp_path: Path, specs_root: Path) -> None:
        result = runner.invoke(app, ["spec", "--root", str(tmp_path)])

        assert result.exit_code == 2
