#!/usr/bin/env python3
"""
CLI for the BuildLedger finance engine.

Usage:
    python cli.py init-db
    python cli.py recalculate 42
    python cli.py sweep --workers 8
    python cli.py check-capital 42 1500000
    python cli.py serve --port 8000

Commands:
    init-db        Create the database tables
    recalculate    Recalculate one project's ledger and phase totals
    sweep          Recalculate every active project
    check-capital  Check capital availability for an amount in cents
    serve          Start the API server
"""
import click
import logging

from buildledger import __version__
from buildledger.cli import register_commands

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
def cli():
    """BuildLedger CLI.

    Operator commands for project budgets, the capital ledger and
    purchase-order settlement. Settings come from the finance_config.yaml
    shipped with the package unless BUILDLEDGER_CONFIG names another file.
    """
    pass


@cli.command()
@click.option('--port', type=int, default=8000, help='Server port')
@click.option('--host', default='0.0.0.0', help='Server host')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(port: int, host: str, reload: bool):
    """Start the API server.

    Runs the FastAPI application with uvicorn.

    Example:
        python cli.py serve --port 8000 --reload
    """
    import uvicorn

    click.echo(click.style('BuildLedger - API Server', fg='cyan', bold=True))
    click.echo(f"Starting server at http://{host}:{port}")
    click.echo("Press CTRL+C to stop\n")

    uvicorn.run(
        "buildledger.main:app",
        host=host,
        port=port,
        reload=reload
    )


register_commands(cli)


if __name__ == '__main__':
    cli()
