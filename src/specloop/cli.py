"""CLI entrypoint for specloop.

Two directories matter:
1. "workspace root" - the repository being implemented (agents run here)
2. "specs root" - where spec-* folders, prompt templates and
   .cli-settings.json live (default: specsRoot from <root>/specloop.config.json,
   else <root>/docs/specs)

Exit codes: 0 verified, 1 attempts exhausted, 2 configuration or I/O
fault, 3 agent process error, 4 verifier protocol violation.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .agent_runner import CodexRunner, ScriptedAgentRunner
from .config import DEFAULT_SPECS_ROOT, RepoConfig, Settings
from .errors import ConfigurationFault, SpecLoopError
from .orchestrator import AttemptLoop, LoopState
from .scaffold import MODES, scaffold_workspace
from .specs import SpecBundle, discover_specs, resolve_spec_dir
from .specsplit import SpecSplitter, load_plan_file

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="specloop",
    help="Drive a worker/verifier agent loop until a spec is implemented and verified.",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

EXIT_CONFIGURATION = ConfigurationFault.exit_code


def setup_logging(verbose: bool = False, level_name: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, force DEBUG level.
        level_name: Level to use otherwise (e.g. from SPECLOOP_LOG_LEVEL).
    """
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"specloop version {__version__}")
        raise typer.Exit()


def get_specs_root(root: Path, specs_root: Optional[Path]) -> Path:
    """Resolve the specs root.

    Order: explicit option, then ``specsRoot`` from <root>/specloop.config.json,
    then <root>/docs/specs.

    Raises:
        ConfigurationFault: If specloop.config.json exists but is unreadable.
    """
    if specs_root:
        return specs_root.resolve()
    return RepoConfig.load(root).resolve_specs_root(root)


def load_mock_responses(path: Path) -> list[str]:
    """Load canned agent outputs (a YAML or JSON list of strings)."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigurationFault(f"Failed to read mock responses {path}: {e}") from e
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise ConfigurationFault(f"Mock responses {path} must be a list of strings")
    return data


def _fail(message: str, code: int) -> None:
    err_console.print(f"[red]Error:[/red] {escape(message)}")
    raise typer.Exit(code)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Drive a worker/verifier agent loop until a spec is verified."""
    pass


@app.command()
def run(
    spec: str = typer.Argument(..., help="Spec directory (absolute, root-relative, or specs-root-relative)."),
    root: Path = typer.Option(
        Path.cwd(),
        "--root",
        "-r",
        help="Workspace root the agents operate in.",
    ),
    specs_root: Optional[Path] = typer.Option(
        None,
        "--specs-root",
        "-s",
        help="Directory with spec folders and prompt templates (default: specsRoot from specloop.config.json, else <root>/docs/specs).",
    ),
    max_attempts: Optional[int] = typer.Option(
        None,
        "--max-attempts",
        "-n",
        help="Maximum worker/verifier rounds (default from settings or MAX_ATTEMPTS).",
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        help="Mode passed through to the prompts (e.g. strict, lenient).",
    ),
    worker_model: Optional[str] = typer.Option(
        None,
        "--worker-model",
        help="Model for the worker (default from settings or CODEX_MODEL_IMPL).",
    ),
    verifier_model: Optional[str] = typer.Option(
        None,
        "--verifier-model",
        help="Model for the verifier (default from settings or CODEX_MODEL_VER).",
    ),
    mock_responses: Optional[Path] = typer.Option(
        None,
        "--mock-responses",
        help="YAML/JSON list of canned agent outputs; replays them instead of calling Codex.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable debug logging.",
    ),
) -> None:
    """Run the worker/verifier loop for one spec."""
    root = root.resolve()
    if not root.exists():
        _fail(f"Workspace root does not exist: {root}", EXIT_CONFIGURATION)

    try:
        resolved_specs_root = get_specs_root(root, specs_root)
        settings = Settings.load(resolved_specs_root)
    except ConfigurationFault as e:
        setup_logging(verbose)
        logger.error(str(e))
        _fail(str(e), e.exit_code)

    setup_logging(verbose, settings.log_level)

    if max_attempts is not None:
        settings.max_attempts = max_attempts
    if mode:
        settings.mode = mode
    if worker_model:
        settings.worker_model = worker_model
    if verifier_model:
        settings.verifier_model = verifier_model

    errors = settings.validate()
    if errors:
        for error in errors:
            logger.error(error)
        _fail("; ".join(errors), EXIT_CONFIGURATION)

    try:
        spec_dir = resolve_spec_dir(spec, root, resolved_specs_root)
        bundle = SpecBundle.load(
            spec_dir,
            specs_root=resolved_specs_root,
            default_acceptance_commands=settings.acceptance_commands,
        )

        if mock_responses:
            runner = ScriptedAgentRunner(responses=load_mock_responses(mock_responses))
            console.print(f"[yellow]Mock mode:[/yellow] replaying {len(runner.responses)} canned response(s)")
        else:
            runner = CodexRunner(binary=settings.codex_bin, reasoning=settings.reasoning, cwd=str(root))
            if not runner.check_installed():
                logger.warning(f"{settings.codex_bin} not found in PATH; the first invocation will fail")

        console.print(
            f"[bold]specloop[/bold] {bundle.spec_id} - {bundle.spec_name} "
            f"(mode={settings.mode}, max attempts={settings.max_attempts})"
        )
        loop = AttemptLoop(bundle, settings, runner, console=console)
        outcome = loop.run()
    except SpecLoopError as e:
        logger.error(str(e))
        _fail(str(e), e.exit_code)
    except OSError as e:
        logger.error(f"I/O failure: {e}")
        _fail(f"I/O failure: {e}", EXIT_CONFIGURATION)

    if outcome.state == LoopState.DONE:
        console.print(f"[green]Verified[/green] after {outcome.attempts_used} attempt(s).")
    else:
        err_console.print(
            f"[red]Exhausted {outcome.max_attempts} attempts without STATUS: ok.[/red] "
            f"Remaining tasks: {len(outcome.remaining_tasks)}"
        )
        for task in outcome.remaining_tasks:
            err_console.print(f"  - {escape(task)}")
    console.print(f"[dim]Report: {bundle.report_path}[/dim]")
    raise typer.Exit(outcome.exit_code)


@app.command()
def status(
    root: Path = typer.Option(
        Path.cwd(),
        "--root",
        "-r",
        help="Workspace root.",
    ),
    specs_root: Optional[Path] = typer.Option(
        None,
        "--specs-root",
        "-s",
        help="Directory with spec folders (default: specsRoot from specloop.config.json, else <root>/docs/specs).",
    ),
) -> None:
    """List specs with their status and whether their dependencies are met."""
    try:
        resolved_specs_root = get_specs_root(root.resolve(), specs_root)
        folders = discover_specs(resolved_specs_root)
    except ConfigurationFault as e:
        _fail(str(e), e.exit_code)

    if not folders:
        console.print(f"[yellow]No specs found in {resolved_specs_root}.[/yellow]")
        return

    table = Table(title=f"Specs in {resolved_specs_root}")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Runnable")
    table.add_column("Unmet deps", style="dim")

    status_styles = {"done": "green", "in-progress": "yellow", "blocked": "red"}
    for folder in folders:
        style = status_styles.get(folder.metadata.status, "white")
        table.add_row(
            escape(folder.id),
            escape(folder.name),
            f"[{style}]{escape(folder.metadata.status)}[/{style}]",
            "yes" if folder.can_run else "no",
            escape(", ".join(folder.unmet_deps)),
        )

    console.print(table)


@app.command()
def scaffold(
    root: Path = typer.Option(
        Path.cwd(),
        "--root",
        "-r",
        help="Workspace root to scaffold.",
    ),
    specs_root: str = typer.Option(
        DEFAULT_SPECS_ROOT,
        "--specs-root",
        "-s",
        help="Specs root to create, relative to the workspace root unless absolute.",
    ),
    mode: str = typer.Option(
        "strict",
        "--mode",
        help=f"Mode for the settings file and worker prompt ({', '.join(MODES)}).",
    ),
    acceptance_commands: Optional[list[str]] = typer.Option(
        None,
        "--acceptance-command",
        "-a",
        help="Acceptance command for new specs (repeatable; default: pytest).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
) -> None:
    """Create the specs root, prompt templates, settings and an example spec."""
    setup_logging(verbose)
    root = root.resolve()
    if not root.is_dir():
        _fail(f"Workspace root does not exist: {root}", EXIT_CONFIGURATION)
    if mode not in MODES:
        _fail(f"Invalid mode '{mode}'. Use one of: {', '.join(MODES)}", EXIT_CONFIGURATION)

    try:
        result = scaffold_workspace(root, specs_root=specs_root, mode=mode, acceptance_commands=acceptance_commands)
    except OSError as e:
        logger.error(f"Scaffold failed: {e}")
        _fail(f"Scaffold failed: {e}", EXIT_CONFIGURATION)

    for path in result.created:
        console.print(f"[green]created[/green] {escape(path)}")
    for path in result.skipped:
        console.print(f"[dim]skipped[/dim] {escape(path)}")
    console.print(f"Workspace ready at {escape(str(result.specs_root))}")


@app.command()
def spec(
    spec_file: Optional[Path] = typer.Argument(None, help="Markdown file with the large spec to split."),
    root: Path = typer.Option(
        Path.cwd(),
        "--root",
        "-r",
        help="Workspace root.",
    ),
    specs_root: Optional[Path] = typer.Option(
        None,
        "--specs-root",
        "-s",
        help="Directory to create spec folders in (default: specsRoot from specloop.config.json, else <root>/docs/specs).",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        help="Model for the planning agent (default from settings codexModelSplit).",
    ),
    plan_file: Optional[Path] = typer.Option(
        None,
        "--plan-file",
        help="JSON split plan to apply instead of asking the agent.",
    ),
    mock_responses: Optional[Path] = typer.Option(
        None,
        "--mock-responses",
        help="YAML/JSON list of canned agent outputs; replays them instead of calling Codex.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
) -> None:
    """Split a large spec into incremental spec-* folders with dependencies."""
    root = root.resolve()
    try:
        resolved_specs_root = get_specs_root(root, specs_root)
        settings = Settings.load(resolved_specs_root)
    except ConfigurationFault as e:
        setup_logging(verbose)
        _fail(str(e), e.exit_code)

    setup_logging(verbose, settings.log_level)

    try:
        splitter = SpecSplitter(resolved_specs_root, acceptance_commands=settings.acceptance_commands)
        if plan_file:
            plan = load_plan_file(plan_file)
        else:
            if spec_file is None:
                raise ConfigurationFault("A spec file or --plan-file is required")
            try:
                raw_spec = spec_file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise ConfigurationFault(f"Failed to read spec file {spec_file}: {e}") from e
            if not raw_spec.strip():
                raise ConfigurationFault(f"Spec file {spec_file} is empty")

            if mock_responses:
                runner = ScriptedAgentRunner(responses=load_mock_responses(mock_responses))
            else:
                runner = CodexRunner(binary=settings.codex_bin, reasoning=settings.reasoning, cwd=str(root))
            plan = splitter.request_plan(raw_spec, runner, model or settings.split_model)

        result = splitter.apply(plan)
    except SpecLoopError as e:
        logger.error(str(e))
        _fail(str(e), e.exit_code)
    except OSError as e:
        logger.error(f"I/O failure: {e}")
        _fail(f"I/O failure: {e}", EXIT_CONFIGURATION)

    for warning in result.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    for generated in result.specs:
        deps = f" (depends on {', '.join(generated.depends_on)})" if generated.depends_on else ""
        console.print(f"[green]created[/green] {escape(generated.id)}: {escape(generated.name + deps)}")
    console.print(f"Created {len(result.specs)} spec(s).")
