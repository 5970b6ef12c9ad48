"""Command-line entry point for ExpenseWatch."""

import json
import logging
import sys
from datetime import date, datetime
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .api import RateLimitedClient
from .config import RunConfig, get_settings
from .models import PipelineState, ProgressEvent, RunResult
from .pipeline import PipelineOrchestrator
from .utils import format_amount

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(level: str, json_lines: bool = False) -> None:
    """Set up logging with Rich handler or JSON lines."""
    log_level = getattr(logging, level.upper())
    if json_lines:

        class JsonFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                payload = {
                    "level": record.levelname,
                    "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
                    "message": record.getMessage(),
                    "name": record.name,
                }
                return json.dumps(payload)

        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logging.basicConfig(level=log_level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
            force=True,
        )


def _parse_reference_date(
    ctx: click.Context, param: click.Parameter, value: Optional[str]
) -> Optional[date]:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD") from None


def print_summary(result: RunResult) -> None:
    """Final human-readable summary of the run."""
    table = Table(title=f"Run {result.run_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("State", result.state.value)
    table.add_row("Successes", str(result.successes))
    table.add_row("Failures", str(result.failures))
    table.add_row("Warnings", str(result.warnings))
    table.add_row("Subjects processed", str(result.subjects_processed))
    table.add_row("Records written", str(result.records_written))
    table.add_row("Rankings generated", str(result.rankings_generated))
    table.add_row("Total volume", format_amount(result.total_volume))
    if result.cancelled:
        table.add_row("Cancelled", "yes")
    console.print(table)

    for subject_id, error in list(result.failed_subjects.items())[:20]:
        console.print(f"[red]✗[/red] subject {subject_id}: {error}")
    if result.error:
        console.print(f"[red]Run failed:[/red] {result.error}")


@click.group()
def cli() -> None:
    """ExpenseWatch - legislator expense ETL."""
    pass


@cli.command()
@click.option("--legislature", type=int, help="Legislature id (e.g. 57)")
@click.option("--subject", "subject_id", help="Process a single legislator id")
@click.option("--limit", type=int, help="Process at most N legislators")
@click.option("--concurrency", type=int, help="Legislators fetched in parallel")
@click.option(
    "--destination",
    "destinations",
    type=click.Choice(["sqlite", "postgres", "json"]),
    multiple=True,
    help="Sink(s) to write to (repeatable, default sqlite)",
)
@click.option("--incremental", is_flag=True, help="Only the last three months")
@click.option(
    "--reference-date",
    callback=_parse_reference_date,
    help="Reference date for incremental mode (YYYY-MM-DD, default today)",
)
@click.option("--party", default="", help="Comma-separated party filter")
@click.option("--state", default="", help="Comma-separated state (UF) filter")
@click.option("--range", "subject_range", help="1-based inclusive slice, e.g. 1-50")
@click.option("--year", type=int, help="Only expenses of this year")
@click.option("--month", type=int, help="Only expenses of this month (needs --year)")
@click.option("--max-pages", type=int, help="Safety cap on pages per collection")
@click.option("--run-timeout", type=float, help="Abort extraction after N seconds")
@click.option("--rules-file", type=click.Path(), help="JSON scoring rules")
@click.option("--enrich", is_flag=True, help="Fetch detail profile per legislator")
@click.option("--dry-run", is_flag=True, help="Extract and transform without writing")
@click.option("--log-level", default=None, help="Logging level")
def run(
    legislature: Optional[int],
    subject_id: Optional[str],
    limit: Optional[int],
    concurrency: Optional[int],
    destinations: Tuple[str, ...],
    incremental: bool,
    reference_date: Optional[date],
    party: str,
    state: str,
    subject_range: Optional[str],
    year: Optional[int],
    month: Optional[int],
    max_pages: Optional[int],
    run_timeout: Optional[float],
    rules_file: Optional[str],
    enrich: bool,
    dry_run: bool,
    log_level: Optional[str],
) -> None:
    """Run the expense pipeline."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level, settings.log_json)

    config = RunConfig(
        legislature=legislature,
        subject_id=subject_id,
        limit=limit,
        concurrency=concurrency,
        destinations=list(destinations) or ["sqlite"],
        incremental=incremental,
        reference_date=reference_date,
        parties=party,
        states=state,
        subject_range=subject_range,
        year=year,
        month=month,
        max_pages=max_pages,
        run_timeout_seconds=run_timeout,
        rules_file=rules_file,
        enrich=enrich,
        dry_run=dry_run or settings.dry_run,
    )

    def report(event: ProgressEvent) -> None:
        if event.state != PipelineState.FAILED:
            logger.info(f"[{event.percent:5.1f}%] {event.message}")

    orchestrator = PipelineOrchestrator(config, settings=settings, progress_callback=report)
    try:
        result = orchestrator.run()
    except KeyboardInterrupt:
        orchestrator.abort()
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)

    print_summary(result)
    sys.exit(result.exit_code)


@cli.command()
@click.option("--log-level", default=None, help="Logging level")
def check(log_level: Optional[str]) -> None:
    """Check connectivity with the upstream API."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level, settings.log_json)

    client = RateLimitedClient.from_settings(settings)
    try:
        ok = client.check_connectivity()
    finally:
        client.close()

    if ok:
        console.print(f"[green]✓[/green] {settings.api_base_url} reachable")
        sys.exit(0)
    console.print(f"[red]✗[/red] {settings.api_base_url} unreachable")
    sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
