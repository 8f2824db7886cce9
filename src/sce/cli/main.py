"""CLI application using Typer for the screening consensus engine."""

from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from ..config.settings import settings
from ..core.errors import EngineError
from ..core.models import Phase, ProjectRole, QueueStrategy
from ..engine import ScreeningEngine
from ..reconcile.scheduler import SweepScheduler
from ..store.database import ScreeningStore
from ..utils.logging import get_logger
from ..web.app import start_server as _start_web_server

app = typer.Typer(
    name="sce",
    help="Screening Consensus Engine - multi-reviewer screening for systematic reviews",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def _engine(db_path: Optional[Path]) -> ScreeningEngine:
    return ScreeningEngine(db_path=db_path)


def _fail(exc: Exception) -> None:
    console.print(f"[red]Error: {exc}[/red]")
    raise typer.Exit(1)


DB_OPTION = typer.Option(None, "--db", help="SQLite database path (default: from settings)")


@app.command("init-db")
def init_db(db_path: Optional[Path] = DB_OPTION) -> None:
    """Create the screening database schema."""
    store = ScreeningStore(db_path)
    store.close()
    console.print(f"[bold green]✓ Database ready[/bold green] at {store.db_path}")


@app.command("create-project")
def create_project(
    name: str = typer.Argument(..., help="Project name"),
    reviewers_required: int = typer.Option(
        settings.default_reviewers_required, "--reviewers", "-k", help="Reviewers required per study"
    ),
    owner: Optional[str] = typer.Option(None, "--owner", help="User ID of the project owner"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Create a screening project."""
    engine = _engine(db_path)
    try:
        project = engine.store.create_project(name, reviewers_required=reviewers_required)
        if owner:
            engine.store.add_member(project.project_id, owner, ProjectRole.OWNER)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    console.print(f"[green]Created project {project.project_id}[/green] (k={project.reviewers_required})")


@app.command("add-member")
def add_member(
    project_id: str = typer.Argument(...),
    user_id: str = typer.Argument(...),
    role: ProjectRole = typer.Option(ProjectRole.REVIEWER, "--role", help="Project role"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Add a member to a project or change their role."""
    engine = _engine(db_path)
    try:
        engine.store.add_member(project_id, user_id, role)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    console.print(f"[green]{user_id} is now {role.value} of {project_id}[/green]")


@app.command("import-studies")
def import_studies(
    project_id: str = typer.Argument(...),
    csv_path: Path = typer.Argument(..., help="CSV with work_id, title, abstract, year, journal columns"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Import studies from a CSV file into a project."""
    if not csv_path.exists():
        console.print(f"[red]Error: {csv_path} not found[/red]")
        raise typer.Exit(1)
    df = pd.read_csv(csv_path)
    if "work_id" not in df.columns:
        console.print("[red]Error: CSV must have a work_id column[/red]")
        raise typer.Exit(1)
    columns = [c for c in ("work_id", "title", "abstract", "year", "journal") if c in df.columns]
    df = df[columns].astype(object).where(df[columns].notna(), None)
    works = df.to_dict(orient="records")
    for work in works:
        work["work_id"] = str(work["work_id"])
        if work.get("year") is not None:
            work["year"] = int(work["year"])
        if work.get("title") is None:
            work["title"] = ""
    engine = _engine(db_path)
    try:
        studies = engine.store.add_studies(project_id, works)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    console.print(f"[green]✓ Imported {len(studies)} studies into {project_id}[/green]")


@app.command()
def queue(
    project_id: str = typer.Argument(...),
    reviewer_id: str = typer.Argument(...),
    phase: Phase = typer.Option(Phase.TITLE_ABSTRACT, "--phase"),
    strategy: QueueStrategy = typer.Option(QueueStrategy.DEFAULT, "--strategy"),
    limit: int = typer.Option(settings.default_queue_limit, "--limit", "-n"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Show the next studies awaiting a reviewer."""
    engine = _engine(db_path)
    try:
        items = engine.get_queue(reviewer_id, project_id, phase, strategy, limit)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    table = Table(title=f"Queue for {reviewer_id} ({strategy.value})")
    table.add_column("#", justify="right")
    table.add_column("Study", style="cyan")
    table.add_column("Title")
    table.add_column("Priority", justify="right")
    table.add_column("AI", style="magenta")
    for item in items:
        ai = (
            f"{item.ai_suggestion.value} ({item.ai_confidence:.2f})"
            if item.ai_suggestion is not None and item.ai_confidence is not None
            else "-"
        )
        table.add_row(str(item.position), item.study_id, item.title[:60], str(item.priority_score), ai)
    console.print(table)
    if not items:
        console.print("[yellow]Nothing left to screen[/yellow]")


@app.command()
def reliability(
    project_id: str = typer.Argument(...),
    phase: Phase = typer.Option(Phase.TITLE_ABSTRACT, "--phase"),
    collapse_maybe: bool = typer.Option(False, "--collapse-maybe", help="Count MAYBE as EXCLUDE"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Report Cohen's Kappa between reviewers."""
    engine = _engine(db_path)
    try:
        report = engine.get_reliability(project_id, phase, collapse_maybe)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    if report.kappa is None:
        console.print("[yellow]Not enough co-screened studies to compute kappa[/yellow]")
        return
    console.print(
        f"[bold]Average kappa:[/bold] {report.kappa:.3f} ({report.interpretation.level})"
    )
    console.print(report.interpretation.recommendation)
    table = Table(title="Pairwise agreement")
    table.add_column("Reviewer A", style="cyan")
    table.add_column("Reviewer B", style="cyan")
    table.add_column("Shared", justify="right")
    table.add_column("Kappa", justify="right", style="green")
    table.add_column("Agreement", justify="right")
    for pair in report.pairwise:
        table.add_row(
            pair.reviewer_a,
            pair.reviewer_b,
            str(pair.shared_studies),
            "-" if pair.kappa is None else f"{pair.kappa:.3f}",
            "-" if pair.percent_agreement is None else f"{pair.percent_agreement:.0%}",
        )
    console.print(table)


@app.command()
def sweep(
    project_id: str = typer.Argument(...),
    phase: Optional[Phase] = typer.Option(None, "--phase"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Repair studies whose status disagrees with their decisions."""
    engine = _engine(db_path)
    try:
        report = engine.sweep(project_id, phase)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    table = Table(title=f"Sweep of {project_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for metric in ("checked", "repaired", "conflicts_opened", "overrides", "skipped", "errors"):
        table.add_row(metric, str(getattr(report, metric)))
    console.print(table)


@app.command("recompute-priority")
def recompute_priority(
    project_id: str = typer.Argument(...),
    journals: Optional[List[str]] = typer.Option(None, "--journal", help="High-impact journal (repeatable)"),
    keywords: Optional[List[str]] = typer.Option(None, "--keyword", help="Relevant keyword (repeatable)"),
    boost_by_year: bool = typer.Option(True, "--boost-by-year/--no-boost-by-year"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Recompute priority scores of open studies."""
    engine = _engine(db_path)
    try:
        updated = engine.recompute_priority(
            project_id, boost_by_year=boost_by_year, journals=journals, keywords=keywords
        )
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    console.print(f"[green]✓ Updated {updated} priority scores[/green]")


@app.command()
def progress(
    project_id: str = typer.Argument(...),
    phase: Phase = typer.Option(Phase.TITLE_ABSTRACT, "--phase"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Show screening progress of a phase."""
    engine = _engine(db_path)
    try:
        result = engine.phase_progress(project_id, phase)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()
    table = Table(title=f"{phase.value} progress: {result['percentage']}%")
    table.add_column("Status", style="cyan")
    table.add_column("Studies", style="green", justify="right")
    for status, count in result["status_counts"].items():
        table.add_row(status, str(count))
    table.add_row("[bold]Total[/bold]", f"[bold]{result['total']}[/bold]")
    console.print(table)
    for blocker in result["blockers"]:
        console.print(f"[yellow]• {blocker}[/yellow]")
    if result["complete"]:
        console.print("[bold green]✓ Phase complete[/bold green]")


@app.command()
def watch(
    project_ids: List[str] = typer.Argument(..., help="Projects to sweep"),
    interval: int = typer.Option(settings.sweep_interval_minutes, "--every", help="Minutes between sweeps"),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Run reconciliation sweeps periodically until interrupted."""
    engine = _engine(db_path)
    scheduler = SweepScheduler(
        engine.sweeper, project_ids, interval_minutes=interval, dispatcher=engine.dispatcher
    )
    console.print(f"[bold blue]Sweeping {len(project_ids)} projects every {interval} minutes[/bold blue]")
    try:
        scheduler.run_once()
        scheduler.start()
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")
    finally:
        engine.close()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Hostname to bind the web server to."),
    port: int = typer.Option(8000, "--port", help="Port for the web server."),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Enable auto-reload (development only)."),
) -> None:
    """Start the HTTP API server."""
    console.print(f"[bold blue]Starting API server[/bold blue] at http://{host}:{port}")
    try:
        _start_web_server(host=host, port=port, reload=reload)
    except Exception as exc:
        logger.error(f"Failed to start web server: {exc}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
