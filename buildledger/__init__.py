"""
Construction finance engine: budgets, capital ledger, phase allocations
and purchase-order settlement.
"""

__version__ = "1.0.0"
