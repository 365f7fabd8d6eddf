"""
Finance CLI Commands - Operator commands for the capital ledger.

Provides command-line interface for:
- Recalculating one project's ledger and phase totals
- Sweeping every active project
- Checking capital availability for an amount
- Creating the database tables
"""
import click
import logging

from buildledger.models import SessionLocal, init_db
from buildledger.config import get_config
from buildledger.domain.exceptions import DomainError
from buildledger.domain.events import RecalculationDispatcher
from buildledger.domain.services import CapitalLedgerService, FinancialRecalculationService

logger = logging.getLogger(__name__)


def _cents(value: int) -> str:
    return f"{value / 100:,.2f}"


@click.command()
@click.argument('project_id', type=int)
def recalculate(project_id: int):
    """Recalculate the ledger and phase totals of a project."""
    db = SessionLocal()
    try:
        finance = FinancialRecalculationService(db).recalculate_project_finances(project_id)
        db.commit()
    except DomainError as e:
        db.rollback()
        click.echo(click.style(f"Error: {e.message}", fg='red'))
        raise SystemExit(1)
    finally:
        db.close()

    click.echo(click.style(f"Project {project_id} recalculated", fg='green'))
    click.echo(f"  Invested:   {_cents(finance.total_invested_cents):>15}")
    click.echo(f"  Used:       {_cents(finance.total_used_cents):>15}")
    click.echo(f"  Committed:  {_cents(finance.committed_cost_cents):>15}")
    click.echo(f"  Available:  {_cents(finance.available_cents):>15}")


@click.command()
@click.option('--workers', type=int, default=None, help='Concurrent recalculations (default from config)')
@click.option('--timeout', type=float, default=600.0, help='Seconds to wait for the sweep to finish')
def sweep(workers: int, timeout: float):
    """Recalculate every active project."""
    dispatcher = RecalculationDispatcher(
        max_workers=workers or get_config().recalculation_max_workers
    )
    try:
        count = dispatcher.sweep()
        finished = dispatcher.wait_idle(timeout=timeout)
    finally:
        dispatcher.shutdown(wait=True)

    if not finished:
        click.echo(click.style(f"Sweep did not finish within {timeout:.0f}s", fg='yellow'))
        raise SystemExit(1)
    click.echo(click.style(f"Swept {count} projects", fg='green'))


@click.command('check-capital')
@click.argument('project_id', type=int)
@click.argument('amount_cents', type=int)
def check_capital(project_id: int, amount_cents: int):
    """Check whether a project's capital covers AMOUNT_CENTS."""
    db = SessionLocal()
    try:
        result = CapitalLedgerService(db).validate_capital_availability(project_id, amount_cents)
        db.commit()
    except DomainError as e:
        db.rollback()
        click.echo(click.style(f"Error: {e.message}", fg='red'))
        raise SystemExit(1)
    finally:
        db.close()

    if result.capital_not_set:
        click.echo(click.style("Capital not set - spending is tracked but not capped", fg='yellow'))
    elif result.is_valid:
        click.echo(click.style("Capital available", fg='green'))
    else:
        click.echo(click.style(result.message or "Capital check failed", fg='red'))
    click.echo(f"  Required:   {_cents(result.required_cents):>15}")
    click.echo(f"  Available:  {_cents(result.available_cents):>15}")
    if result.shortfall_cents:
        click.echo(f"  Shortfall:  {_cents(result.shortfall_cents):>15}")
    if not result.is_valid:
        raise SystemExit(2)


@click.command('init-db')
def init_db_command():
    """Create all database tables."""
    init_db()
    click.echo(click.style("Database initialized", fg='green'))


def register_commands(cli):
    """Register finance commands with main CLI."""
    for command in (recalculate, sweep, check_capital, init_db_command):
        cli.add_command(command)
