"""
app/cli.py — `flask oauth ...` operator commands.

  flask oauth sweep                               delete expired codes/tokens
  flask oauth set-client-status CLIENT_ID STATUS  approve / suspend / reject

Suspending or rejecting a client revokes every token, unused code and
standing authorization it holds (GrantEngine.change_client_status).
"""

from __future__ import annotations

import click
from flask import current_app
from flask.cli import AppGroup

from authgrant.app.errors import AppError
from authgrant.app.extensions import db
from authgrant.app.models.client import CLIENT_STATUSES
from authgrant.app.services.grant_engine import GrantEngine

oauth_cli = AppGroup("oauth", help="OAuth authorization server maintenance.")


def _engine() -> GrantEngine:
    return GrantEngine(
        db.session,
        current_app.extensions["oauth_settings"],
        clock=current_app.extensions["oauth_clock"],
    )


@oauth_cli.command("sweep")
def sweep_command():
    """Delete expired authorization codes and token pairs."""
    counts = _engine().sweep_expired()
    db.session.commit()
    for kind, count in counts.items():
        click.echo(f"{kind}: {count}")


@oauth_cli.command("set-client-status")
@click.argument("client_id")
@click.argument("status", type=click.Choice(CLIENT_STATUSES))
def set_client_status_command(client_id: str, status: str):
    """Change a client's status."""
    try:
        client = _engine().change_client_status(client_id, status)
    except AppError as err:
        db.session.rollback()
        raise click.ClickException(err.message) from err
    db.session.commit()
    click.echo(f"{client.client_id} ({client.name}): {client.status}")
