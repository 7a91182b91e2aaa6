"""CLI tools for orgscope administration."""

import click
from sqlalchemy import text

from orgscope.db.session import SessionLocal


@click.group()
def cli():
    """orgscope CLI tools."""
    pass


@cli.command()
def check_coverage():
    """
    Verify every API route runs through the authorization wrapper.

    Exits non-zero and lists the offending routes when any endpoint is
    neither wrapped nor on the exclusion list.

    Example:
        orgscope check-coverage
    """
    from orgscope.core.authorization import audit_route_coverage
    from orgscope.main import create_app

    uncovered = audit_route_coverage(create_app())
    if uncovered:
        for method, path in uncovered:
            click.echo(f"❌ {method} {path} is not wrapped by authorize()")
        raise SystemExit(1)
    click.echo("✓ Every route is wrapped or explicitly excluded")


@cli.command()
def apply_policies():
    """
    (Re)apply row-level security functions, policies and grants.

    Run as the table owner after changing orgscope.db.rls.POLICIES.
    """
    from orgscope.db.rls import render_rls_sql

    statements = render_rls_sql()
    db = SessionLocal()
    try:
        for statement in statements:
            db.execute(text(statement))
        db.commit()
    except Exception as e:
        db.rollback()
        raise click.ClickException(f"Applying policies failed: {type(e).__name__}") from e
    finally:
        db.close()
    click.echo(f"✓ Applied {len(statements)} row-level security statements")


@cli.command()
@click.option("--hours", default=None, type=int, help="Retention window (default: IDEMPOTENCY_RETENTION_HOURS)")
def purge_idempotency(hours: int | None):
    """Delete idempotency records older than the retention window."""
    from orgscope.services import idempotency_service

    db = SessionLocal()
    try:
        deleted = idempotency_service.purge_expired(db, retention_hours=hours)
        db.commit()
    except Exception as e:
        db.rollback()
        raise click.ClickException(f"Purge failed: {type(e).__name__}") from e
    finally:
        db.close()
    click.echo(f"✓ Deleted {deleted} idempotency records")


@cli.command()
@click.option("--email", required=True, help="Email of the first national coordinator")
def bootstrap_national(email: str):
    """
    Create the invitation for the first national coordinator.

    The invitee takes the role on first sign-in with that email.

    Example:
        orgscope bootstrap-national --email "coordinator@example.org"
    """
    from orgscope.services import invitation_service

    db = SessionLocal()
    try:
        invitation = invitation_service.bootstrap_national_invitation(db, email)
        db.commit()
        click.echo(f"✓ Created national coordinator invite for {invitation.email}")
        click.echo(f"  Expires: {invitation.expires_at.isoformat()}")
        click.echo("→ Sign in with that email to take the role")
    except Exception as e:
        db.rollback()
        raise click.ClickException(f"Bootstrap failed: {type(e).__name__}") from e
    finally:
        db.close()


if __name__ == "__main__":
    cli()
