"""
Typer CLI for the adaptive textbook engine.

Commands:
    tutor-engine decide EVENTS        - Decide hint / explanation / textbook for a problem
    tutor-engine replay EVENTS        - Replay a trace under a strategy and fingerprint it
    tutor-engine hint                 - Select the next grounded hint
    tutor-engine parse RAW            - Run the structured-output parser on model text
    tutor-engine generate BUNDLE      - Generate an instructional unit for a retrieval bundle
    tutor-engine textbook list        - List a learner's textbook units
    tutor-engine db init              - Initialize database tables
    tutor-engine llm health           - Check the Ollama server and model

Usage:
    tutor-engine --help
    tutor-engine decide events.json --learner l1 --problem p1 --strategy adaptive-high
    tutor-engine replay events.json --learner l1 --strategy adaptive-low
    tutor-engine generate bundle.json --learner l1 --template explanation.v1 --save
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.adaptive.escalation_policy import EscalationPolicy
from src.adaptive.hint_catalog import classify_error_message, load_anchor_catalog, set_anchor_catalog
from src.adaptive.models import AutoEscalationMode, InteractionEvent, LearnerProfile, parse_strategy
from src.textbook.models import now_ms

app = typer.Typer(
    help="tutor-engine CLI: escalation decisions, grounded content generation, learner textbooks",
    no_args_is_help=True,
)

console = Console()


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with stderr (and an optional file) at the configured level."""
    settings = get_settings()
    level = level or settings.log_level
    log_file = log_file or settings.log_file

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Adaptive textbook engine.

    Settings come from the environment or .env (DATABASE_URL, OLLAMA_URL,
    LLM_MODEL, AUTO_ESCALATION_MODE, ...).
    """
    configure_logging("DEBUG" if verbose else None)
    settings = get_settings()
    if settings.anchor_dataset_path:
        set_anchor_catalog(load_anchor_catalog(settings.anchor_dataset_path))


# ========================================
# Helpers
# ========================================


def _fail(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")
    raise typer.Exit(code=1)


def _load_json(path: Path) -> Any:
    try:
        if str(path) == "-":
            return json.load(sys.stdin)
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        _fail(f"File not found: {path}")
    except json.JSONDecodeError as e:
        _fail(f"{path} is not valid JSON: {e}")


def _load_events(path: Path) -> list[InteractionEvent]:
    data = _load_json(path)
    if isinstance(data, dict):
        data = data.get("interactions") or data.get("events") or []
    if not isinstance(data, list):
        _fail(f"{path} must contain a list of interaction events")
    return [InteractionEvent.from_dict(item) for item in data if isinstance(item, dict)]


def _parse_mode_option(mode: Optional[str]) -> Optional[AutoEscalationMode]:
    if mode is None:
        return None
    try:
        return AutoEscalationMode(mode)
    except ValueError:
        _fail(f"Unknown escalation mode '{mode}'")
    return None


def _open_store():
    from src.db.database import get_engine
    from src.db.store import SqlAlchemyStore

    return SqlAlchemyStore(get_engine(), create_tables=True)


# ========================================
# DECISION COMMANDS
# ========================================


@app.command("decide")
def decide(
    events_file: Path = typer.Argument(..., help="JSON list of interaction events ('-' for stdin)"),
    learner: str = typer.Option(..., "--learner", "-l", help="Learner id"),
    problem: str = typer.Option(..., "--problem", "-p", help="Problem id"),
    strategy: str = typer.Option("adaptive-medium", "--strategy", "-s", help="Escalation strategy"),
    now: Optional[int] = typer.Option(None, "--now", help="Decision time in epoch ms (default: current)"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Auto-escalation mode override"),
    as_json: bool = typer.Option(False, "--json", help="Print the decision as JSON"),
) -> None:
    """Decide what a learner should see next on a problem."""
    policy = EscalationPolicy.from_settings(get_settings())
    events = _load_events(events_file)
    profile = LearnerProfile(id=learner, current_strategy=parse_strategy(strategy))

    decision = policy.make_decision(
        profile,
        events,
        problem,
        now if now is not None else now_ms(),
        auto_escalation_mode=_parse_mode_option(mode),
    )

    if as_json:
        console.print_json(json.dumps(decision.to_dict()))
        return

    table = Table(title=f"Decision for {learner} on {problem}", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Decision", decision.decision.value)
    table.add_row("Rule", decision.rule_fired.value)
    table.add_row("Errors", str(decision.context.error_count))
    table.add_row("Retries", str(decision.context.retry_count))
    table.add_row("Time spent", f"{decision.context.time_spent / 1000:.0f}s")
    table.add_row("Hint level", str(decision.context.current_hint_level))
    table.add_row("Reasoning", decision.reasoning)
    console.print(table)


@app.command("replay")
def replay(
    events_file: Path = typer.Argument(..., help="JSON list of interaction events ('-' for stdin)"),
    learner: str = typer.Option(..., "--learner", "-l", help="Learner id"),
    strategy: str = typer.Option("adaptive-medium", "--strategy", "-s", help="Strategy to replay under"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Auto-escalation mode override"),
    as_json: bool = typer.Option(False, "--json", help="Print decision points as JSON"),
) -> None:
    """Replay a historical trace under a strategy."""
    policy = EscalationPolicy.from_settings(get_settings())
    events = _load_events(events_file)
    profile = LearnerProfile(id=learner, current_strategy=parse_strategy(strategy))

    points = policy.replay_decision_trace(profile, events, strategy, mode=_parse_mode_option(mode))
    fingerprint = policy.replay_fingerprint(points)

    if as_json:
        console.print_json(
            json.dumps({"fingerprint": fingerprint, "points": [point.to_dict() for point in points]})
        )
        return

    table = Table(title=f"Replay ({len(points)} decision points)", show_header=True)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Event", style="cyan")
    table.add_column("Problem")
    table.add_column("Type")
    table.add_column("Decision", style="green")
    table.add_column("Rule", style="yellow")
    for point in points:
        table.add_row(
            str(point.index),
            point.event_id,
            point.problem_id,
            point.event_type.value,
            point.decision.value,
            point.rule_fired.value,
        )
    console.print(table)
    rprint(f"Fingerprint: [bold]{fingerprint}[/bold]")


@app.command("hint")
def hint(
    learner: str = typer.Option(..., "--learner", "-l", help="Learner id"),
    problem: str = typer.Option(..., "--problem", "-p", help="Problem id"),
    subtype: Optional[str] = typer.Option(None, "--subtype", help="Error subtype id"),
    error_message: Optional[str] = typer.Option(
        None, "--error", "-e", help="SQL error message to classify when no subtype is given"
    ),
    query: str = typer.Option("", "--query", "-q", help="Learner's query (helps classification)"),
    level: int = typer.Option(0, "--level", help="Current hint level (0 = none shown yet)"),
) -> None:
    """Select the next grounded hint for a learner."""
    if subtype is None and error_message:
        subtype = classify_error_message(error_message, query)
        logger.debug(f"Classified error as '{subtype}'")

    policy = EscalationPolicy.from_settings(get_settings())
    selection = policy.get_next_hint(subtype, level, LearnerProfile(id=learner), problem)

    rprint(f"[bold cyan]L{selection.hint_level}[/bold cyan] {selection.hint_text}")
    rprint(f"[dim]subtype: {selection.error_subtype} | row: {selection.grounding_row_id}[/dim]")
    if selection.should_escalate:
        rprint("[yellow]⚠[/yellow] Hint ladder exhausted, escalate to an explanation")


# ========================================
# CONTENT COMMANDS
# ========================================


@app.command("parse")
def parse(
    raw_file: Path = typer.Argument(..., help="File with raw model output ('-' for stdin)"),
) -> None:
    """Run the structured-output parser on raw model text."""
    from src.content.generation.structured_output import parse_template_json

    raw = sys.stdin.read() if str(raw_file) == "-" else raw_file.read_text(encoding="utf-8")
    result = parse_template_json(raw)

    console.print_json(json.dumps(result.telemetry.to_dict()))
    if result.output is None:
        _fail(f"Unparseable output: {result.telemetry.failure_reason}")
    console.print_json(json.dumps(result.output.to_dict()))


@app.command("generate")
def generate(
    bundle_file: Path = typer.Argument(..., help="Retrieval bundle JSON ('-' for stdin)"),
    learner: Optional[str] = typer.Option(None, "--learner", "-l", help="Learner id (default: bundle's)"),
    template: str = typer.Option("explanation.v1", "--template", "-t", help="Template id"),
    model: Optional[str] = typer.Option(None, "--model", help="Model override"),
    session: Optional[str] = typer.Option(None, "--session", help="Session id recorded on the unit"),
    replay_mode: bool = typer.Option(False, "--replay", help="Never call the model; use fallback content"),
    save: bool = typer.Option(False, "--save", help="Add the unit to the learner's textbook"),
) -> None:
    """Generate an instructional unit for a retrieval bundle."""
    from src.content.generation.retrieval import RetrievalBundle
    from src.content.generation.unit_generator import GenerateUnitOptions, InstructionalUnitGenerator
    from src.integrations.ollama_client import OllamaClient
    from src.textbook.service import TextbookService

    data = _load_json(bundle_file)
    if not isinstance(data, dict):
        _fail(f"{bundle_file} must contain a retrieval bundle object")
    bundle = RetrievalBundle.from_dict(data)
    learner_id = learner or bundle.learner_id
    if not learner_id:
        _fail("No learner id given and the bundle has none")

    settings = get_settings()
    store = _open_store()

    async def run():
        async with OllamaClient.from_settings(settings) as client:
            pipeline = InstructionalUnitGenerator.from_settings(client, store, settings)
            return await pipeline.generate_unit(
                GenerateUnitOptions(
                    learner_id=learner_id,
                    template_id=template,
                    bundle=bundle,
                    session_id=session,
                    model=model,
                    replay_mode=replay_mode,
                )
            )

    result = asyncio.run(run())
    unit = result.unit

    table = Table(title=unit.title, show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Unit", unit.id)
    table.add_row("Concept", unit.concept_id)
    table.add_row("Type", unit.type.value)
    table.add_row("Cache", "hit" if result.from_cache else "miss")
    table.add_row("Fallback", result.fallback_reason.value)
    table.add_row("Parser", result.parse_telemetry.status.value)
    table.add_row("Quality", f"{unit.quality_score:.3f}")
    table.add_row("Sources", ", ".join(unit.provenance.retrieved_source_ids) if unit.provenance else "")
    table.add_row("Time", f"{result.generation_time_ms}ms")
    console.print(table)

    if save:
        outcome = TextbookService.from_settings(store, settings).save_generated_unit(learner_id, unit)
        rprint(f"[green]✓[/green] Saved to textbook: {outcome.action.value} ({outcome.reason})")


# ========================================
# TEXTBOOK COMMANDS
# ========================================

textbook_app = typer.Typer(help="Learner textbooks")
app.add_typer(textbook_app, name="textbook")


@textbook_app.command("list")
def textbook_list(
    learner: str = typer.Option(..., "--learner", "-l", help="Learner id"),
    status: Optional[str] = typer.Option(
        None, "--status", help="Only units with this status (primary, alternative, archived)"
    ),
) -> None:
    """List a learner's textbook units."""
    from src.textbook.models import UnitStatus
    from src.textbook.reconciliation import get_quality_tier, get_unit_display_status
    from src.textbook.service import TextbookService

    statuses = None
    if status:
        try:
            statuses = [UnitStatus(status)]
        except ValueError:
            _fail(f"Unknown status '{status}'")

    units = TextbookService(_open_store()).list_units(learner, statuses)
    if not units:
        rprint(f"[yellow]⚠[/yellow] No textbook units for {learner}")
        return

    table = Table(title=f"Textbook for {learner} ({len(units)} units)", show_header=True)
    table.add_column("Unit", style="dim")
    table.add_column("Concept", style="cyan")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Quality", justify="right")
    table.add_column("Rev", justify="right")
    for unit in units:
        badge = get_unit_display_status(unit)
        table.add_row(
            unit.id,
            unit.concept_id,
            unit.type.value,
            unit.title,
            f"[{badge.color}]{badge.badge}[/{badge.color}]",
            f"{unit.quality_score:.2f} ({get_quality_tier(unit).value})",
            str(unit.revision_count),
        )
    console.print(table)


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from sqlalchemy.exc import SQLAlchemyError

    from src.db.database import init_db

    logger.info("Initializing database tables...")
    try:
        init_db()
    except SQLAlchemyError as e:
        _fail(f"Database initialization failed: {e}")
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# LLM COMMANDS
# ========================================

llm_app = typer.Typer(help="Text generator (Ollama)")
app.add_typer(llm_app, name="llm")


@llm_app.command("health")
def llm_health(
    model: Optional[str] = typer.Option(None, "--model", help="Model to check (default: configured)"),
) -> None:
    """Check that Ollama is reachable and the model is installed."""
    from src.integrations.ollama_client import OllamaClient

    async def run():
        async with OllamaClient.from_settings(get_settings()) as client:
            return await client.check_health(model)

    health = asyncio.run(run())
    if not health.ok:
        _fail(health.message)
    rprint(f"[green]✓[/green] {health.message}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
