"""Cron entry point: run one escalation tick and exit."""

# purpose: let an external scheduler drive the engine; exit 1 only when the store is unusable
# status: active
# depends_on: circlewatch.services.escalation

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import typer
from sqlalchemy.exc import SQLAlchemyError

from ..database import SessionLocal
from ..services.escalation import run_tick

app = typer.Typer(help="CircleWatch escalation engine")

logger = logging.getLogger(__name__)


@app.command()
def tick(
    now: Optional[str] = typer.Option(
        None, "--now", help="ISO-8601 instant to evaluate instead of the current time"
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", min=1, help="Bound on concurrent per-alert units"
    ),
) -> None:
    """Detect missed check-ins, escalate open alerts and notify circles."""

    logging.basicConfig(level=logging.INFO)
    at = None
    if now:
        try:
            at = datetime.fromisoformat(now)
        except ValueError as exc:
            raise typer.BadParameter(f"Not an ISO-8601 timestamp: {now}") from exc
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
    try:
        report = run_tick(SessionLocal, now=at, max_workers=workers)
    except SQLAlchemyError as exc:
        logger.error("Escalation tick failed: %s", exc)
        typer.echo(f"tick failed: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"created={report.created} escalated={report.escalated} recovered={report.recovered} "
        f"race_losses={report.race_losses} sent={report.delivered} failed={report.failed}"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
