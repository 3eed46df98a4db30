#!/usr/bin/env python3
"""Command Line Interface for leadmarket.

Usage:
    leadmarket serve                       # Start API server
    leadmarket auto-assign 42              # Offer lead 42 to the best partner
    leadmarket bulk-invoices moving        # Bill last month's moving leads
    leadmarket info                        # Show configuration
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import typer
import uvicorn

from core.config import get_settings
from core.db import get_session
from core.exceptions import LeadMarketError
from core.logging_config import get_logger, setup_logging
from core.types import BillingPeriod

LOGGER = get_logger(__name__)

app = typer.Typer(help="Leadmarket CLI")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Leadmarket - lead assignment and partner billing."""
    settings = get_settings()
    log_level = "DEBUG" if verbose else settings.log_level
    setup_logging(level=log_level, json_format=settings.log_format == "json")


# =============================================================================
# Server Commands
# =============================================================================


@app.command("serve")
def run_server(
    host: Optional[str] = typer.Option(None, help="Host to bind to (default API_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port to bind to (default API_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    typer.echo(f"Starting API server on {host}:{port}...")
    uvicorn.run("api.app:app", host=host, port=port, reload=reload)


@app.command("scheduler")
def run_scheduler_cmd() -> None:
    """Start the background scheduler."""
    from scheduler.runner import run_scheduler_blocking

    typer.echo("Starting scheduler...")
    run_scheduler_blocking()


# =============================================================================
# Assignment and Billing Commands
# =============================================================================


@app.command("auto-assign")
def auto_assign(
    lead_id: int = typer.Argument(..., help="Lead to assign"),
) -> None:
    """Offer a lead to the best eligible partner."""
    from domain.assignment import LeadAssignmentCoordinator

    try:
        with get_session() as session:
            result = LeadAssignmentCoordinator(session).auto_assign(lead_id)
            partner_number = result.partner.partner_number if result.partner else None
    except LeadMarketError as e:
        typer.secho(f"✗ {e}", fg="red")
        raise typer.Exit(1)

    if result.success:
        typer.secho(f"✓ Lead {lead_id} assigned to {partner_number}", fg="green")
    else:
        typer.secho(f"✗ {result.message}", fg="yellow")


@app.command("bulk-invoices")
def bulk_invoices(
    service_type: str = typer.Argument(..., help="moving or cleaning"),
    start: Optional[datetime] = typer.Option(None, formats=["%Y-%m-%d"], help="Period start (default: last month)"),
    end: Optional[datetime] = typer.Option(None, formats=["%Y-%m-%d"], help="Period end"),
) -> None:
    """Invoice every billing-ready partner of a service type."""
    from scheduler.jobs import run_bulk_invoice_job

    if (start is None) != (end is None):
        typer.secho("✗ Give both --start and --end, or neither", fg="red")
        raise typer.Exit(1)

    try:
        period = BillingPeriod.from_dates(start.date(), end.date()) if start else None
    except LeadMarketError as e:
        typer.secho(f"✗ {e}", fg="red")
        raise typer.Exit(1)

    result = run_bulk_invoice_job(service_type=service_type, period=period)
    if not result["success"]:
        typer.secho(f"✗ Bulk invoicing failed: {result['error']}", fg="red")
        raise typer.Exit(1)

    for name, summary in result["result"]["service_types"].items():
        if "skipped" in summary:
            typer.secho(f"  - {name}: skipped ({summary['skipped']})", fg="yellow")
        else:
            typer.secho(f"✓ {name}: {summary['invoices']} invoices, total {summary['total']}", fg="green")


@app.command("reset-weekly")
def reset_weekly() -> None:
    """Reset all weekly lead counters."""
    from scheduler.jobs import run_weekly_reset_job

    result = run_weekly_reset_job()
    if not result["success"]:
        typer.secho(f"✗ Reset failed: {result['error']}", fg="red")
        raise typer.Exit(1)
    typer.secho(f"✓ Reset {result['result']['partners_reset']} partners", fg="green")


# =============================================================================
# Utility Commands
# =============================================================================


@app.command("init-db")
def init_database() -> None:
    """Create missing database tables."""
    from core.db import init_db

    result = init_db(create_missing_only=True)
    if result["status"] == "error":
        typer.secho(f"✗ Database init failed: {result.get('error')}", fg="red")
        raise typer.Exit(1)
    typer.secho(f"✓ Database ready ({len(result.get('tables_created', []))} tables created)", fg="green")


@app.command("info")
def show_info() -> None:
    """Show application configuration info."""
    settings = get_settings()
    typer.echo("Leadmarket Configuration:")
    typer.echo(f"  Environment: {settings.environment}")
    typer.echo(f"  Dry Run: {settings.dry_run}")
    typer.echo(f"  Log Level: {settings.log_level}")
    typer.echo(f"  Notifications Live: {settings.is_notification_live()}")
    typer.echo(f"  Webhook Configured: {settings.is_webhook_configured()}")
    typer.echo(f"  Commission Rate: {settings.revenue_commission_rate}")
    typer.echo(f"  Invoice Due Days: {settings.invoice_due_days}")
    typer.echo(f"  Auto-assign Batch: {settings.auto_assign_batch_size}")


if __name__ == "__main__":
    app()
