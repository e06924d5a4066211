"""CLI tools for DojoFlow administration."""

import asyncio
from datetime import datetime, timezone

import click

from dojoflow.db.models import Organization
from dojoflow.db.session import SessionLocal
from dojoflow.services import automation_sequence_service, credit_service
from dojoflow.services.automation_scheduler import AutomationScheduler


def _get_org(db, slug: str) -> Organization | None:
    org = db.query(Organization).filter(Organization.slug == slug.lower().strip()).first()
    if not org:
        click.echo(f"❌ Organization not found: {slug}")
    return org


@click.group()
def cli():
    """DojoFlow CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Organization name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
@click.option("--billing-email", default=None, help="Receives low-credit alerts")
@click.option(
    "--allowance",
    default=None,
    type=int,
    help="Monthly credit allowance (default: CREDIT_DEFAULT_PERIOD_ALLOWANCE)",
)
def create_org(name: str, slug: str, billing_email: str | None, allowance: int | None):
    """
    Create an organization and provision its credit balance.

    Example:
        python -m dojoflow.cli create-org --name "Tiger Dojo" --slug "tiger" --allowance 300
    """
    db = SessionLocal()
    try:
        slug = slug.lower().strip()
        if not slug.replace("-", "").replace("_", "").isalnum():
            click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
            return

        existing = db.query(Organization).filter(Organization.slug == slug).first()
        if existing:
            click.echo(f"❌ Organization with slug '{slug}' already exists")
            return

        org = Organization(name=name, slug=slug, business_name=name, billing_email=billing_email)
        db.add(org)
        db.commit()

        balance = credit_service.provision_balance(db, org.id, period_allowance=allowance)

        click.echo(f"✓ Created organization: {name}")
        click.echo(f"  ID: {org.id}")
        click.echo(f"  Slug: {slug}")
        click.echo(f"✓ Provisioned {balance.balance} credits (allowance {balance.period_allowance})")

    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise
    finally:
        db.close()


@cli.command()
@click.option("--org-slug", default=None, help="Reset one organization now (default: all due)")
def reset_credits(org_slug: str | None):
    """
    Start a new credit period.

    Without --org-slug, resets every organization whose period has ended
    (same as one run of the credit reset job).

    Example:
        python -m dojoflow.cli reset-credits --org-slug "tiger"
    """
    db = SessionLocal()
    try:
        if org_slug is None:
            count = credit_service.reset_due_periods(db)
            click.echo(f"✓ Reset {count} credit balance(s)")
            return

        org = _get_org(db, org_slug)
        if not org:
            return
        snapshot = credit_service.reset_period(db, org.id)
        click.echo(f"✓ Reset credits for {org.name}")
        click.echo(f"  Balance: {snapshot.balance}")
        click.echo(f"  Next reset: {snapshot.next_reset_at:%Y-%m-%d}")

    except credit_service.CreditLedgerError as e:
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--now", default=None, help="ISO timestamp to treat as the current time")
def run_automations(now: str | None):
    """
    Run one automation scheduler tick and print the result.

    Example:
        python -m dojoflow.cli run-automations
    """
    tick_time = None
    if now:
        tick_time = datetime.fromisoformat(now)
        if tick_time.tzinfo is None:
            tick_time = tick_time.replace(tzinfo=timezone.utc)

    result = asyncio.run(AutomationScheduler().run_once(tick_time))
    click.echo(
        f"✓ Processed {result.processed}: {result.succeeded} succeeded, "
        f"{result.retried} retried, {result.blocked} blocked on credits, "
        f"{result.failed} failed, {result.released} released, {result.errors} errors"
    )


@cli.command()
@click.option("--org-slug", required=True, help="Organization slug")
@click.option("--template", "template_name", required=True, help="Template name")
def install_template(org_slug: str, template_name: str):
    """
    Install a built-in automation template for an organization.

    Example:
        python -m dojoflow.cli install-template --org-slug "tiger" --template "New Lead Welcome Sequence"
    """
    db = SessionLocal()
    try:
        org = _get_org(db, org_slug)
        if not org:
            return
        sequence = automation_sequence_service.install_template(db, org.id, template_name)
        click.echo(f"✓ Installed '{sequence.name}' ({len(sequence.steps)} steps)")
        click.echo(f"  ID: {sequence.id}")

    except (
        automation_sequence_service.SequenceNotFoundError,
        automation_sequence_service.SequenceValidationError,
    ) as e:
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--org-slug", default=None, help="Organization slug (default: all)")
def reconcile(org_slug: str | None):
    """
    Replay credit ledgers and report any mismatch with cached balances.

    Exits with status 1 when a mismatch is found.

    Example:
        python -m dojoflow.cli reconcile
    """
    db = SessionLocal()
    try:
        if org_slug:
            org = _get_org(db, org_slug)
            if not org:
                return
            orgs = [org]
        else:
            orgs = db.query(Organization).order_by(Organization.slug).all()

        mismatches = 0
        for org in orgs:
            try:
                report = credit_service.reconcile_balance(db, org.id)
            except credit_service.CreditBalanceNotFoundError:
                click.echo(f"- {org.slug}: no credit balance")
                continue
            if report.is_consistent:
                click.echo(f"✓ {org.slug}: {report.cached_balance} credits")
            else:
                mismatches += 1
                click.echo(
                    f"❌ {org.slug}: cached {report.cached_balance}, "
                    f"ledger {report.ledger_balance} ({report.transaction_count} transactions)"
                )
    finally:
        db.close()

    if mismatches:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
