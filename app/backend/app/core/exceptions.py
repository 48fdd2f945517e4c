"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from enum import Enum
from typing import Any, Optional, Dict


class RaceRewardsException(Exception):
    """Base exception class for the race rewards backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RaceRewardsException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class LedgerFetchReason(Enum):
    """Why a ledger fetch failed."""
    NO_DATA = "no_data"
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"


class LedgerFetchError(RaceRewardsException):
    """Raised when holder balances cannot be obtained from the ledger service."""

    def __init__(
        self,
        message: str,
        reason: LedgerFetchReason = LedgerFetchReason.TRANSPORT,
        details: Optional[Dict[str, Any]] = None
    ):
        self.reason = reason
        super().__init__(message, "LEDGER_FETCH_ERROR", {"reason": reason.value, **(details or {})})

    @property
    def is_transient(self) -> bool:
        # Every ledger failure is retried by the recovery supervisor
        return True


class SnapshotPhaseError(RaceRewardsException):
    """Raised when a snapshot phase cannot complete for a race."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SNAPSHOT_PHASE_ERROR", details)


class ValidationError(RaceRewardsException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(RaceRewardsException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthorizationError(RaceRewardsException):
    """Raised when authorization fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHORIZATION_ERROR", details)


class ExternalServiceError(RaceRewardsException):
    """Raised when an external service error occurs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", details)


class RaceNotFoundError(NotFoundError):
    """Raised when a race is not found."""

    def __init__(self, race_id: str):
        super().__init__(
            f"Race not found: {race_id}",
            {"race_id": race_id}
        )


class ClaimNotFoundError(NotFoundError):
    """Raised when a claim request is not found."""

    def __init__(self, claim_id: int):
        super().__init__(
            f"Claim request not found: {claim_id}",
            {"claim_id": claim_id}
        )


class ClaimError(ValidationError):
    """Raised when a reward claim cannot be created or confirmed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "CLAIM_ERROR"


class ClaimOwnershipError(AuthorizationError):
    """Raised when a wallet confirms a claim it does not own."""

    def __init__(self, wallet: str, claim_id: int):
        super().__init__(
            f"Wallet {wallet} does not own claim request {claim_id}",
            {"wallet": wallet, "claim_id": claim_id}
        )
