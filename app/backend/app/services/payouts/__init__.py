"""
Reward claims and payout submission.
"""

from .executor_client import (
    PayoutExecutorClient,
    PayoutSubmission,
    get_payout_executor_client,
    close_payout_executor_client,
)
from .claim_service import (
    ClaimService,
    PayoutDispatcher,
    DispatchReport,
    get_claim_service,
    get_payout_dispatcher,
)

__all__ = [
    "PayoutExecutorClient",
    "PayoutSubmission",
    "get_payout_executor_client",
    "close_payout_executor_client",
    "ClaimService",
    "PayoutDispatcher",
    "DispatchReport",
    "get_claim_service",
    "get_payout_dispatcher",
]
