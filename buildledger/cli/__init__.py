"""
CLI Module - Operator commands for the finance engine.

Provides management commands for:
- Ledger recalculation (single project or sweep)
- Capital availability checks
- Database initialization
"""

from .finance_commands import recalculate, sweep, check_capital, init_db_command, register_commands

__all__ = ['recalculate', 'sweep', 'check_capital', 'init_db_command', 'register_commands']
