"""InboxPilot CLI: database management, API server and operator commands."""

from __future__ import annotations

import json
from typing import Optional

import typer

app = typer.Typer(
    name="inboxpilot",
    help="Small-business email assistant backend.",
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level."),
):
    """Configure logging before any command runs."""
    from inboxpilot.config import load_config
    from inboxpilot.observability import configure_logging

    config = load_config()
    configure_logging(
        level=log_level or config.logging.level,
        json_format=config.logging.json_format,
        service_name=config.logging.service_name,
    )


# --- Database commands ---

db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")


@db_app.callback(invoke_without_command=True)
def db_callback(
    ctx: typer.Context,
    reset: bool = typer.Option(False, "--reset", help="Wipe and recreate the database."),
    stats: bool = typer.Option(False, "--stats", help="Show row counts for all tables."),
    migrate: bool = typer.Option(False, "--migrate", help="Add columns missing from an older database."),
):
    """Database management."""
    from inboxpilot.config import load_config
    from inboxpilot.database import db_stats, get_db, init_db, migrate_db, reset_db

    config = load_config()

    if reset:
        conn = reset_db(config)
        typer.echo("Database reset and initialized.")
        conn.close()
        return

    if stats:
        conn = get_db(config)
        init_db(conn)
        s = db_stats(conn)
        typer.echo("Table row counts:")
        for table, count in s.items():
            status = f"{count}" if count >= 0 else "missing"
            typer.echo(f"  {table:30s} {status}")
        conn.close()
        return

    if migrate:
        conn = get_db(config)
        added = migrate_db(conn)
        init_db(conn)
        if added:
            for col in added:
                typer.echo(f"  added {col}")
        typer.echo("Schema migrations applied.")
        conn.close()
        return

    typer.echo(ctx.get_help())


# --- Server ---

@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind host."),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development."),
):
    """Start the HTTP API."""
    import uvicorn

    typer.echo(f"Starting InboxPilot API at http://{host}:{port}/api")
    uvicorn.run(
        "inboxpilot.web.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


# --- Operator commands ---

def _invoke(name: str, payload: dict) -> dict:
    """Run a handler in the foreground and wait for anything it dispatched."""
    from inboxpilot.invoker import invoker

    try:
        return invoker.invoke(name, payload)
    finally:
        invoker.shutdown(wait=True)


@app.command()
def watchdog():
    """Run one pass of the import, research and pipeline watchdogs."""
    from inboxpilot.invoker import invoker

    try:
        for name in ("import-watchdog", "competitor-research-watchdog", "pipeline-supervisor"):
            result = invoker.invoke(name, {})
            typer.echo(
                f"{name}: checked {result['checked']}, "
                f"restarted {len(result['restarted'])}, failed {len(result['failed'])}"
            )
    finally:
        invoker.shutdown(wait=True)


@app.command("bootstrap-rules")
def bootstrap_rules(
    workspace: str = typer.Argument(..., help="Workspace ID."),
    min_emails: int = typer.Option(5, "--min-emails", help="Minimum conversations per domain."),
):
    """Suggest sender rules from reply history and create the confident ones."""
    result = _invoke("bootstrap-sender-rules", {"workspace_id": workspace, "min_email_count": min_emails})
    typer.echo(
        f"Analyzed {result['total_domains_analyzed']} domains, "
        f"{result['total_suggestions']} suggestions, {result['rules_created']} rules created."
    )
    for s in result["suggestions"]:
        typer.echo(
            f"  {s['sender_domain']:30s} {s['suggested_bucket']:12s} "
            f"{s['suggested_classification']:24s} {s['confidence']:3d}  ({s['reply_rate']}% replied)"
        )


@app.command()
def drift(workspace: str = typer.Argument(..., help="Workspace ID.")):
    """Check the workspace's recent sent mail for voice drift."""
    result = _invoke("detect-style-drift", {"workspace_id": workspace})
    typer.echo(json.dumps(result, indent=2))


@app.command()
def draft(
    workspace: str = typer.Argument(..., help="Workspace ID."),
    conversation: int = typer.Argument(..., help="Conversation ID."),
    verify: bool = typer.Option(False, "--verify", help="Check the draft against the knowledge base."),
):
    """Draft a reply to a conversation's latest customer message."""
    from inboxpilot.invoker import invoker

    try:
        result = invoker.invoke("ai-draft", {"workspace_id": workspace, "conversation_id": conversation})
        typer.echo(result["draft"])
        typer.echo(f"\n[draft #{result['draft_id']}, confidence {result['confidence']:.2f}]")
        if verify:
            check = invoker.invoke("draft-verify", {"workspace_id": workspace, "draft_id": result["draft_id"]})
            typer.echo(f"verification: {check['status']} ({check['confidence_score']:.2f})")
            for issue in check["issues"]:
                typer.echo(f"  [{issue['severity']}] {issue['type']}: {issue['description']}")
    finally:
        invoker.shutdown(wait=True)


@app.command()
def corrections(
    workspace: str = typer.Argument(..., help="Workspace ID."),
    show_stats: bool = typer.Option(False, "--stats", help="Show correction rates per bucket."),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of corrections to list."),
):
    """List the owner's classification corrections."""
    from inboxpilot.config import load_config
    from inboxpilot.database import get_db, init_db
    from inboxpilot.triage.corrections import correction_stats, list_corrections

    conn = get_db(load_config())
    init_db(conn)

    if show_stats:
        stats = correction_stats(conn, workspace)
        if not stats:
            typer.echo("No corrections to analyze.")
        for bucket, data in stats.items():
            flag = " NEEDS TUNING" if data["needs_tuning"] else ""
            typer.echo(
                f"  {bucket}: {data['total_corrections']} corrections / "
                f"{data['total_classified']} classified = {data['correction_rate']}%{flag}"
            )
    else:
        items = list_corrections(conn, workspace, limit=limit)
        if not items:
            typer.echo("No corrections found.")
        for item in items:
            typer.echo(
                f"  #{item['id']} [{item['scope']}] {item['sender_email'] or ''}: "
                f"{item['original_bucket']} -> {item['corrected_bucket']} "
                f"({item['corrected_classification']})"
            )
    conn.close()
