from __future__ import annotations

import json

import click
from flask import Flask


def register_sync_cli(app: Flask) -> None:
    @app.cli.group("sync")
    def sync_group() -> None:
        """Reconciliation runs and job queue drains."""

    @sync_group.command("run")
    @click.argument("kind")
    @click.option("--full", is_flag=True, help="Ignore the last run and re-read every record.")
    def sync_run(kind: str, full: bool) -> None:
        from app.scheduler import get_sync_orchestrator

        result = get_sync_orchestrator(app).trigger(kind, full=full, triggered_by="cli")
        click.echo(json.dumps(result, indent=2, default=str))
        if result.get("status") == "failed":
            raise SystemExit(1)

    @sync_group.command("drain")
    @click.option("--limit", type=int, default=None, help="Maximum jobs to claim.")
    def sync_drain(limit: int | None) -> None:
        from app.scheduler import get_sync_orchestrator

        summary = get_sync_orchestrator(app).drain_jobs(limit)
        click.echo(json.dumps(summary, indent=2))
