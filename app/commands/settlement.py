"""
CLI Commands for settlement housekeeping.

Suggested cron:

# Reconcile stuck payments every 10 minutes
*/10 * * * * cd /app && flask settlement reconcile --older-than=5
"""
import click
from flask.cli import with_appcontext

from ..models.user import User
from ..services.points_service import PointsLedger
from ..services.settlement_service import SettlementService


@click.group('settlement')
def settlement_cli():
    """Settlement commands."""
    pass


@settlement_cli.command('reconcile')
@click.option('--older-than', type=int, default=5, help='Only orders older than this many minutes')
@click.option('--limit', type=int, default=100, help='Maximum orders to check')
@with_appcontext
def reconcile(older_than, limit):
    """Ask the processor about pending orders and pending refunds, and record the outcome."""
    result = SettlementService().reconcile_pending(older_than_minutes=older_than, limit=limit)

    click.echo(f"Checked: {result['checked']}")
    click.echo(f"Settled: {result['settled']}")
    click.echo(f"Failed: {result['failed']}")
    click.echo(f"Still pending: {result['pending']}")
    click.echo(
        f"Refunds: {result['refunds_checked']} checked, {result['refunds_processed']} processed, "
        f"{result['refunds_failed']} failed, {result['refunds_pending']} pending"
    )
    if result['errors']:
        click.echo(f"Errors: {len(result['errors'])}")
        for error in result['errors'][:5]:
            click.echo(f"  - {error['order_number']}: {error['error']}")


@settlement_cli.command('verify-points')
@click.option('--user-id', type=int, help='Specific user (or all if not specified)')
@with_appcontext
def verify_points(user_id):
    """Compare cached points balances with the points history."""
    ledger = PointsLedger()
    user_ids = [user_id] if user_id else [u.id for u in User.query.with_entities(User.id).all()]

    mismatches = 0
    for uid in user_ids:
        result = ledger.verify(uid)
        if not result['consistent']:
            mismatches += 1
            click.echo(f"User {uid}: balance {result['balance']} != history {result['history_total']}")

    click.echo(f"\nChecked {len(user_ids)} users, {mismatches} mismatched")


def init_app(app):
    app.cli.add_command(settlement_cli)
