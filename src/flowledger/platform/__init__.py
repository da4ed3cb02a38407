"""
Flowledger Platform Services - usage billing core.

This package provides the billing core shared by flowledger applications:
- Usage ledger (entries, transactions, balances, credit application)
- Checkout and setup-intent reconciliation
- Subscription upgrade and activation helpers
"""

__version__ = "1.0.0"
__author__ = "Flowledger Team"


def get_version() -> str:
    """Get platform services version."""
    return __version__


__all__ = ["__version__", "get_version"]
