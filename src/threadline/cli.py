"""
Threadline CLI - command-line interface for server and database management.
"""

import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from threadline.logging_config import setup_logging

app = typer.Typer(
    name="threadline",
    help="Threadline - webhook message ingestion and conversation threading",
    no_args_is_help=True,
)

console = Console()


def _setup_cli_logging() -> None:
    # Fall back to console logging if file logging is not permitted
    try:
        setup_logging(context="cli")
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """
    Start the FastAPI server.

    Serves the gateway webhook endpoint and the status API.
    """
    import uvicorn

    console.print("[bold green]Starting Threadline API server...[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Reload: {reload}")
    console.print(f"\n  Webhook URL: http://{host}:{port}/webhook")
    console.print(f"  API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "threadline.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


@app.command("init-db")
def init_db_command() -> None:
    """
    Create database tables from the ORM models.

    Intended for SQLite and development databases; use
    ``alembic upgrade head`` for PostgreSQL deployments.
    """
    from threadline.db.connection import init_db

    _setup_cli_logging()
    init_db()
    console.print("[green]Database tables created[/green]")


@app.command()
def replay(
    path: Path = typer.Argument(..., help="JSON file holding a webhook body (or a list of bodies)"),
    dispatch: bool = typer.Option(
        False, help="Run automation dispatch for new inbound messages"
    ),
) -> None:
    """
    Feed stored webhook bodies through the ingestion pipeline.

    Useful to reproduce a gateway delivery locally. Automation dispatch
    runs synchronously when enabled.
    """
    from threadline.automation import AutomationDispatcher, get_automation_engine
    from threadline.db.connection import db_session
    from threadline.pipeline.ingestion import WebhookCoordinator
    from threadline.pipeline.media import MediaResolver, default_media_store
    from threadline.presence import PresenceTracker

    _setup_cli_logging()

    if not path.exists():
        console.print(f"[bold red]Error:[/bold red] Path not found: {path}")
        raise typer.Exit(1)

    try:
        body = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] Cannot read {path}: {e}")
        raise typer.Exit(1)

    payloads = body if isinstance(body, list) else [body]
    dispatcher = (
        AutomationDispatcher.inline(get_automation_engine(), session_scope=db_session)
        if dispatch
        else None
    )
    presence = PresenceTracker(auto_expire=False)

    table = Table(title=f"Replay of {path.name}")
    table.add_column("#", justify="right")
    table.add_column("Event")
    table.add_column("Result")
    table.add_column("Message")
    table.add_column("Outcome")
    table.add_column("Detail")

    with db_session() as session:
        coordinator = WebhookCoordinator(
            session,
            MediaResolver(default_media_store()),
            dispatcher=dispatcher,
            presence=presence,
        )
        for index, payload in enumerate(payloads, start=1):
            outcome = coordinator.handle(payload)
            if not outcome.messages:
                detail = outcome.error or (
                    f"{outcome.status_updates} status update(s)"
                    if outcome.status_updates
                    else ""
                )
                table.add_row(str(index), outcome.event or "-", outcome.status, "", "", detail)
                continue
            for message in outcome.messages:
                table.add_row(
                    str(index),
                    outcome.event or "-",
                    outcome.status,
                    message.provider_message_id or "-",
                    message.status,
                    message.reason or "",
                )
            for future in outcome.dispatches:
                result = future.result()
                console.print(
                    f"  Automation: [cyan]{result.action}[/cyan]"
                    + (f" ({result.keyword})" if result.keyword else "")
                    + (f" [red]{result.error}[/red]" if result.error else "")
                )

    console.print(table)


if __name__ == "__main__":
    app()
