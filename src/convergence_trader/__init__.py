"""Convergence Trader - late-stage convergence bot for Polymarket.

This package is responsible for:
- Account state sync (venue, positions API, on-chain balance)
- Ledger/account reconciliation
- Safety-checked, idempotent order execution
- Market scanning and the convergence strategy
- Orchestration of the scan and state-check cycles
"""

__version__ = "0.1.0"
