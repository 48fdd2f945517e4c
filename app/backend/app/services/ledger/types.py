"""
Typed records for ledger service responses.

Raw JSON-RPC payloads are mapped to these records as soon as they arrive;
nothing past this module handles untyped response data.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from app.core.config import LedgerConfig
from app.core.exceptions import LedgerFetchError, LedgerFetchReason


@dataclass(frozen=True)
class TokenAccountEntry:
    """One token account as returned by the ledger."""
    owner: str
    raw_amount: int


@dataclass(frozen=True)
class LedgerPage:
    """A successfully fetched page of token accounts."""
    entries: List[TokenAccountEntry] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class RateLimited:
    """The ledger refused the request because of rate limiting."""
    code: int
    message: str = ""


@dataclass(frozen=True)
class HolderBalance:
    """A holder and its decimal-scaled balance."""
    wallet: str
    balance: Decimal


LedgerResult = Union[LedgerPage, RateLimited]


def parse_token_accounts_response(payload: Dict[str, Any]) -> LedgerResult:
    """
    Map a getTokenAccounts JSON-RPC response to a typed result.

    Raises:
        LedgerFetchError: for API errors other than rate limiting, or
            payloads that do not have the expected shape
    """
    if not isinstance(payload, dict):
        raise LedgerFetchError("Malformed ledger response", LedgerFetchReason.TRANSPORT)

    error = payload.get("error")
    if error:
        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", "") if isinstance(error, dict) else str(error)
        if code == LedgerConfig.RATE_LIMIT_ERROR_CODE:
            return RateLimited(code=code, message=message)
        raise LedgerFetchError(
            f"Ledger API error: {message or error}",
            LedgerFetchReason.TRANSPORT,
            {"code": code}
        )

    result = payload.get("result") or {}
    accounts = result.get("token_accounts") or []

    entries = []
    for account in accounts:
        try:
            entries.append(TokenAccountEntry(
                owner=str(account["owner"]),
                raw_amount=int(account.get("amount") or 0)
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerFetchError(
                f"Malformed token account entry: {account!r}",
                LedgerFetchReason.TRANSPORT
            ) from e

    return LedgerPage(entries=entries, next_cursor=result.get("cursor") or None)


def scale_amount(raw_amount: int, decimals: int) -> Decimal:
    """Convert a raw token amount to whole tokens."""
    return Decimal(raw_amount) / (Decimal(10) ** decimals)
