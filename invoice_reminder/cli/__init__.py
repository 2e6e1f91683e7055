"""CLI application setup using Typer."""

from invoice_reminder.cli.main import app

__all__ = ["app"]
