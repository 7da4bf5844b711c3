"""Command line interface for smartlabel."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .config import EngineConfig
from .engine import Engine
from .errors import SmartLabelError
from .utils.runtime import setup_logging

app = typer.Typer(help="Annotation orchestration toolkit")
console = Console()

_STATE: dict = {"db": Path("smartlabel.db"), "config": None}


def _engine() -> Engine:
    cfg = EngineConfig.from_file(_STATE["config"])
    return Engine(_STATE["db"], cfg)


def _fail(exc: Exception) -> None:
    console.print("[red]error:[/red]", escape(str(exc)))
    raise typer.Exit(code=1)


def _version(value: bool) -> None:
    if value:
        typer.echo(f"smartlabel {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    db: Path = typer.Option(Path("smartlabel.db"), "--db", help="SQLite database path"),
    config: Optional[Path] = typer.Option(None, "--config", help="JSON file with engine overrides"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
    version: bool = typer.Option(False, "--version", callback=_version, is_eager=True),
) -> None:
    """Select, label, route and audit annotation samples."""
    _STATE["db"] = db
    _STATE["config"] = config
    setup_logging(getattr(logging, log_level.upper(), logging.WARNING))


@app.command("create-project")
def create_project(
    name: str = typer.Argument(...),
    labels: str = typer.Option(..., "--labels", help="Comma separated label values"),
    task_type: str = typer.Option("classification", "--task-type"),
    project_id: Optional[str] = typer.Option(None, "--project-id"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Confidence threshold"),
    double: Optional[bool] = typer.Option(None, "--double/--no-double", help="Require double annotation"),
    agreement: Optional[float] = typer.Option(None, "--agreement", help="Agreement threshold"),
) -> None:
    """Create a labeling project."""
    try:
        with _engine() as engine:
            project = engine.create_project(
                name,
                task_type,
                [label for label in labels.split(",")],
                project_id=project_id,
                confidence_threshold=threshold,
                require_double_annotation=double,
                agreement_threshold=agreement,
            )
    except (SmartLabelError, ValueError) as exc:
        _fail(exc)
    typer.echo(project.project_id)


@app.command("import")
def import_samples(
    project_id: str = typer.Argument(...),
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
) -> None:
    """Import samples from a .jsonl, .csv or .parquet file."""
    try:
        with _engine() as engine:
            added = engine.import_file(project_id, path)
    except (SmartLabelError, ValueError) as exc:
        _fail(exc)
    typer.echo(f"Imported {added} samples.")


@app.command("label")
def label(
    project_id: str = typer.Argument(...),
    batch_size: Optional[int] = typer.Option(None, "--batch-size"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for the job"),
) -> None:
    """Select a batch and run it through the label providers."""
    try:
        with _engine() as engine:
            status = engine.label(project_id, batch_size, timeout=timeout)
    except (SmartLabelError, ValueError) as exc:
        _fail(exc)
    _print_job(status.to_dict())


@app.command("review")
def review(
    project_id: str = typer.Argument(...),
    task_id: Optional[str] = typer.Option(None, "--task", help="Resolve this review task"),
    label_value: Optional[str] = typer.Option(None, "--label"),
    reject: bool = typer.Option(False, "--reject"),
    reviewer: str = typer.Option("reviewer", "--reviewer"),
) -> None:
    """List open review tasks, or resolve one."""
    try:
        with _engine() as engine:
            if task_id is None:
                tasks = engine.review_queue(project_id)
                table = Table(title=f"Open review tasks ({len(tasks)})")
                for column in ("task", "sample", "reason", "reviewer", "created"):
                    table.add_column(column)
                for task in tasks:
                    table.add_row(
                        task.task_id, task.sample_id, task.reason, task.assigned_reviewer or "", task.created_at
                    )
                console.print(table)
                return
            if not reject and label_value is None:
                label_value = Prompt.ask("Label (blank to reject)", default="")
                reject = not label_value.strip()
            sample = engine.resolve_review(task_id, reviewer, None if reject else label_value, reject=reject)
    except (SmartLabelError, ValueError) as exc:
        _fail(exc)
    typer.echo(f"{sample.sample_id}: {sample.status}")


@app.command("export")
def export(
    project_id: str = typer.Argument(...),
    path: Path = typer.Argument(...),
) -> None:
    """Write labels and provenance as canonical JSON lines."""
    try:
        with _engine() as engine:
            count = engine.export(project_id, path)
    except SmartLabelError as exc:
        _fail(exc)
    typer.echo(f"Exported {count} samples to {path}.")


def _print_job(data: dict) -> None:
    table = Table(title=f"Job {data['job_id']}")
    table.add_column("field")
    table.add_column("value")
    for key in ("project_id", "state", "total", "error", "created_at", "started_at", "finished_at"):
        table.add_row(key, "" if data.get(key) is None else str(data[key]))
    for outcome, count in data["counts"].items():
        table.add_row(f"outcome:{outcome}", str(count))
    console.print(table)


@app.command("job-status")
def job_status(job_id: str = typer.Argument(...)) -> None:
    """Show the state and per-sample outcome counts of a batch job."""
    try:
        with _engine() as engine:
            status = engine.get_job_status(job_id)
    except SmartLabelError as exc:
        _fail(exc)
    _print_job(status.to_dict())


@app.command("history")
def history(
    sample_id: str = typer.Argument(...),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON lines"),
) -> None:
    """Show the audit trail of a sample."""
    try:
        with _engine() as engine:
            entries = engine.history(sample_id)
    except SmartLabelError as exc:
        _fail(exc)
    if as_json:
        for entry in entries:
            typer.echo(json.dumps({"entry_id": entry.entry_id, **entry.to_export()}, sort_keys=True))
        return
    table = Table(title=f"History of {sample_id}")
    for column in ("#", "ts", "kind", "from", "to", "actor"):
        table.add_column(column)
    for entry in entries:
        table.add_row(str(entry.entry_id), entry.ts, entry.kind, entry.prev_status or "", entry.status, entry.actor)
    console.print(table)


@app.command("quality")
def quality(
    project_id: str = typer.Argument(...),
    window: Optional[int] = typer.Option(None, "--window"),
) -> None:
    """Record a quality snapshot and print it."""
    try:
        with _engine() as engine:
            metric = engine.quality_snapshot(project_id, window)
    except SmartLabelError as exc:
        _fail(exc)
    score = "n/a" if metric.agreement_score is None else f"{metric.agreement_score:.3f}"
    typer.echo(
        f"agreement={score} flags={metric.consistency_flag_count} "
        f"samples={metric.sample_count} window={metric.window_size}"
    )


@app.command("recover")
def recover(project_id: str = typer.Argument(...)) -> None:
    """Requeue stalled samples and report provenance mismatches."""
    try:
        with _engine() as engine:
            recovered = engine.recover_stalled(project_id)
            mismatched = engine.verify_provenance(project_id)
    except SmartLabelError as exc:
        _fail(exc)
    typer.echo(f"Requeued {len(recovered)} samples.")
    if mismatched:
        typer.echo("Provenance mismatch: " + ", ".join(mismatched))
        raise typer.Exit(code=2)


if __name__ == "__main__":
    app()
