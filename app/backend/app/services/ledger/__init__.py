"""
Ledger query client for token holder balances.
"""

from .types import TokenAccountEntry, LedgerPage, RateLimited, HolderBalance, parse_token_accounts_response
from .client import LedgerQueryClient, get_ledger_client, close_ledger_client

__all__ = [
    "TokenAccountEntry",
    "LedgerPage",
    "RateLimited",
    "HolderBalance",
    "parse_token_accounts_response",
    "LedgerQueryClient",
    "get_ledger_client",
    "close_ledger_client",
]
