"""Command-line interface for the travel email engine.

Provides commands for configuration validation, rule store setup and
seeding, and for trying classification and timezone resolution against
sample emails.

Usage:
    python -m tripmail validate-config
    python -m tripmail init-db
    python -m tripmail seed --seed-path config/seed.yaml
    python -m tripmail classify email.txt --subject "UPCOMING: PS" --sender ps@reserveps.com
    python -m tripmail timezone private_terminal output.json --body-file email.txt
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from tripmail.config import config_path_from_env, validate_config_file
from tripmail.core.logging import configure_logging

if TYPE_CHECKING:
    from tripmail.config_schema import AppConfig
    from tripmail.db.store import SQLiteRuleStore

console = Console()

CONFIG_OPTION_HELP = "Path to config file (default: config/config.yaml)"


def _load_cli_config(config_path: Path | None) -> AppConfig:
    """Load configuration for a command.

    Without an explicit path and without a config file the built-in
    defaults (plus TRIPMAIL_* overrides) are used. Prints an actionable
    message and exits on errors.
    """
    from tripmail.config import apply_env_overrides, build_config, get_config, load_config
    from tripmail.core.errors import ConfigLoadError, ConfigValidationError

    try:
        if config_path is not None:
            return load_config(config_path)
        default_path = config_path_from_env()
        if not default_path.exists():
            console.print(f"[dim]No {default_path} found, using defaults.[/dim]")
            return build_config(apply_env_overrides({}))
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it."
        )
        sys.exit(1)


async def _open_store(config: AppConfig, db_path: Path | None) -> SQLiteRuleStore:
    from tripmail.db.store import SQLiteRuleStore

    store = SQLiteRuleStore(db_path or Path(config.database.path))
    await store.initialize()
    return store


def _run(coro_factory: Callable[[], Awaitable[None]]) -> None:
    """Run an async command body with the shared error handling."""
    try:
        asyncio.run(coro_factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """tripmail - travel confirmation email classification and resolution."""
    log_level = "DEBUG" if debug else "WARNING"
    # Human-readable output for the CLI; services use JSON
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help=CONFIG_OPTION_HELP,
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print(f"Validating config: [cyan]{config_path_from_env()}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
@click.option(
    "--config", "-c", "config_path", type=click.Path(path_type=Path), help=CONFIG_OPTION_HELP
)
@click.option("--db-path", type=click.Path(path_type=Path), help="Override database.path")
def init_db(config_path: Path | None, db_path: Path | None) -> None:
    """Create the rule store tables if they do not exist."""
    config = _load_cli_config(config_path)

    async def _run_init_db() -> None:
        from tripmail.db.models import verify_schema

        store = await _open_store(config, db_path)
        if await verify_schema(store.db_path):
            console.print(f"[green]✓[/green] Rule store ready at [cyan]{store.db_path}[/cyan]")
        else:
            console.print(f"[red]✗[/red] Rule store at {store.db_path} is missing tables")
            sys.exit(1)

    _run(_run_init_db)


@cli.command("seed")
@click.option(
    "--seed-path",
    type=click.Path(exists=True, path_type=Path),
    default="config/seed.yaml",
    show_default=True,
    help="Seed file to load",
)
@click.option(
    "--config", "-c", "config_path", type=click.Path(path_type=Path), help=CONFIG_OPTION_HELP
)
@click.option("--db-path", type=click.Path(path_type=Path), help="Override database.path")
def seed(seed_path: Path, config_path: Path | None, db_path: Path | None) -> None:
    """Populate the rule store from a YAML seed file.

    Items that already exist by name are skipped, so seeding twice is safe.
    """
    config = _load_cli_config(config_path)

    async def _run_seed() -> None:
        from tripmail.core.errors import SeedError
        from tripmail.db.seed import load_seed_file, seed_store

        try:
            seed_data = load_seed_file(seed_path)
        except SeedError as e:
            console.print(f"[red]Seed error:[/red] {e}")
            sys.exit(1)

        store = await _open_store(config, db_path)
        report = await seed_store(store, seed_data)

        table = Table(box=None, padding=(0, 2))
        table.add_column("Collection", style="cyan")
        table.add_column("Created", justify="right")
        table.add_column("Skipped", justify="right")
        for collection in sorted(set(report.created) | set(report.skipped)):
            table.add_row(
                collection,
                str(report.created.get(collection, 0)),
                str(report.skipped.get(collection, 0)),
            )
        console.print(table)
        console.print(
            f"\n[green]✓[/green] Seeded [cyan]{store.db_path}[/cyan] "
            f"({report.total_created} created)"
        )

    _run(_run_seed)


@cli.command("types")
@click.option(
    "--config", "-c", "config_path", type=click.Path(path_type=Path), help=CONFIG_OPTION_HELP
)
@click.option("--db-path", type=click.Path(path_type=Path), help="Override database.path")
def types(config_path: Path | None, db_path: Path | None) -> None:
    """List the active booking types."""
    config = _load_cli_config(config_path)

    async def _run_types() -> None:
        from tripmail.engine import ItineraryEngine

        store = await _open_store(config, db_path)
        engine = ItineraryEngine(store, config)
        segment_types = await engine.list_segment_types()
        if not segment_types:
            console.print("[yellow]No booking types configured.[/yellow] Run `tripmail seed`.")
            return

        table = Table(box=None, padding=(0, 2))
        table.add_column("Type", style="cyan")
        table.add_column("Display name")
        table.add_column("Description", style="dim")
        for segment in segment_types:
            table.add_row(segment["name"], segment["display_name"], segment["description"] or "")
        console.print(table)

    _run(_run_types)


@cli.command("classify")
@click.argument("body_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--subject", default="", help="Email subject line")
@click.option("--sender", default="", help="Sender address")
@click.option("--show-prompt/--no-show-prompt", default=True, help="Print the resolved prompt")
@click.option(
    "--config", "-c", "config_path", type=click.Path(path_type=Path), help=CONFIG_OPTION_HELP
)
@click.option("--db-path", type=click.Path(path_type=Path), help="Override database.path")
def classify(
    body_file: Path,
    subject: str,
    sender: str,
    show_prompt: bool,
    config_path: Path | None,
    db_path: Path | None,
) -> None:
    """Classify an email body and show the prompt it would be parsed with."""
    config = _load_cli_config(config_path)
    body = body_file.read_text(encoding="utf-8")

    async def _run_classify() -> None:
        from tripmail.engine import ItineraryEngine
        from tripmail.rules.matcher import EmailInput

        store = await _open_store(config, db_path)
        engine = ItineraryEngine(store, config)
        prepared = await engine.prepare(
            EmailInput(body=body, subject=subject, from_address=sender)
        )
        result = prepared.classification

        console.print(f"Booking type: [bold cyan]{result.label}[/bold cyan]")
        console.print(f"Matched rule: {result.rule_name or '[dim]none (default)[/dim]'}")
        if result.match_reason:
            console.print(f"Reason:       {result.match_reason}")
        if result.sender_trust:
            console.print(f"Sender trust: {result.sender_trust}")
        if result.degraded:
            console.print("[yellow]Rule store unavailable; built-in defaults used.[/yellow]")
        console.print(f"Prompt:       {prepared.prompt.source}")

        if show_prompt:
            console.print()
            console.print(prepared.prompt.text, markup=False, highlight=False)

    _run(_run_classify)


@cli.command("timezone")
@click.argument("email_type")
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--body-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Raw email body, scanned for facility codes",
)
@click.option(
    "--config", "-c", "config_path", type=click.Path(path_type=Path), help=CONFIG_OPTION_HELP
)
@click.option("--db-path", type=click.Path(path_type=Path), help="Override database.path")
def timezone(
    email_type: str,
    output_file: Path,
    body_file: Path | None,
    config_path: Path | None,
    db_path: Path | None,
) -> None:
    """Resolve the timezone for a model output JSON file and print the final segment."""
    config = _load_cli_config(config_path)
    try:
        model_output = json.loads(output_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {output_file}:[/red] {e}")
        sys.exit(1)
    raw_body = body_file.read_text(encoding="utf-8") if body_file else None

    async def _run_timezone() -> None:
        from tripmail.engine import ItineraryEngine

        store = await _open_store(config, db_path)
        engine = ItineraryEngine(store, config)
        snapshot = await engine.snapshot()
        resolution = await engine.resolve_timezone_detailed(
            email_type, model_output, raw_body, snapshot=snapshot
        )
        segment = await engine.finalize(email_type, model_output, raw_body, snapshot=snapshot)

        console.print(f"Timezone: [bold cyan]{resolution.timezone}[/bold cyan]")
        console.print(f"Step:     {resolution.step}")
        if resolution.matched:
            console.print(f"Matched:  {resolution.matched}")
        console.print()
        console.print_json(data=segment)

    _run(_run_timezone)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
