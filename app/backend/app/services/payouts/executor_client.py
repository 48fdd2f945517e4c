"""
HTTP client for the external payout executor.

The executor performs the token transfer; this client only submits claim
requests and reads back whether they were accepted.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import structlog

from app.core.config import settings
from app.core.exceptions import ConfigurationError, ExternalServiceError


logger = structlog.get_logger(__name__)

Transport = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class PayoutSubmission:
    accepted: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


class PayoutExecutorClient:
    """Submits claim requests to ``{payout_executor_url}/claims``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[Transport] = None,
    ):
        self.logger = logger.bind(service="payout_executor_client")
        self.base_url = (base_url or settings.payout_executor_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payout_executor_api_key
        self.timeout = timeout or settings.payout_timeout
        self._transport = transport or self._http_post
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers
            )
        return self._session

    async def _http_post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base_url:
            raise ConfigurationError("PAYOUT_EXECUTOR_URL not configured")

        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}{path}", json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise ExternalServiceError(
                        f"Payout executor HTTP {response.status}: {text[:200]}",
                        {"status": response.status}
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExternalServiceError(
                f"Payout executor request failed: {type(e).__name__}: {e}"
            ) from e

    async def submit_claim(
        self,
        claim_id: int,
        race_id: str,
        wallet: str,
        amount: str,
        token_mint: Optional[str]
    ) -> PayoutSubmission:
        """Submit one claim. Transport failures raise ``ExternalServiceError``."""
        body = {
            "claimId": claim_id,
            "raceId": race_id,
            "wallet": wallet,
            "amount": amount,
            "tokenMint": token_mint,
        }
        data = await self._transport("/claims", body)

        accepted = bool(data.get("accepted"))
        submission = PayoutSubmission(
            accepted=accepted,
            tx_hash=data.get("txHash"),
            error=None if accepted else (data.get("error") or "Rejected by payout executor"),
        )

        self.logger.info(
            "Claim submitted to payout executor",
            claim_id=claim_id,
            race_id=race_id,
            accepted=submission.accepted,
            tx_hash=submission.tx_hash
        )
        return submission


# Global instance
_executor_client: Optional[PayoutExecutorClient] = None


async def get_payout_executor_client() -> PayoutExecutorClient:
    """Get or create global PayoutExecutorClient instance."""
    global _executor_client
    if _executor_client is None:
        _executor_client = PayoutExecutorClient()
    return _executor_client


async def close_payout_executor_client():
    """Close global PayoutExecutorClient instance."""
    global _executor_client
    if _executor_client:
        await _executor_client.close()
        _executor_client = None
