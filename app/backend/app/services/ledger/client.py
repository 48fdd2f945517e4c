"""
Ledger Query Client for current token-holder balances.

This service provides:
- Cursor pagination over Helius getTokenAccounts, bounded by a page cap
- Linear backoff on rate-limit responses, per page
- Decimal scaling, zero-balance filtering and per-owner aggregation
- A deterministic top-N ranking (stable on ties, fetch order wins)
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import structlog

from app.core.config import settings, LedgerConfig
from app.core.exceptions import ConfigurationError, LedgerFetchError, LedgerFetchReason
from .types import (
    HolderBalance,
    LedgerPage,
    LedgerResult,
    RateLimited,
    parse_token_accounts_response,
    scale_amount,
)


logger = structlog.get_logger(__name__)

Transport = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
Sleeper = Callable[[float], Awaitable[Any]]


class LedgerQueryClient:
    """
    Paginated holder-balance reader.

    ``transport`` sends one JSON-RPC body and returns the decoded response;
    it defaults to an aiohttp POST against the configured endpoint.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        rpc_url: Optional[str] = None,
        page_limit: Optional[int] = None,
        max_pages: Optional[int] = None,
        rate_limit_retries: Optional[int] = None,
        rate_limit_backoff: Optional[float] = None,
        page_delay: Optional[float] = None,
        timeout: Optional[int] = None,
        transport: Optional[Transport] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.logger = logger.bind(service="ledger_query_client")

        self.api_key = api_key if api_key is not None else settings.helius_api_key
        self.rpc_url = rpc_url or settings.ledger_rpc_url
        self.page_limit = page_limit or settings.ledger_page_limit
        self.max_pages = max_pages or settings.ledger_max_pages
        self.rate_limit_retries = (
            rate_limit_retries if rate_limit_retries is not None else settings.ledger_rate_limit_retries
        )
        self.rate_limit_backoff = (
            rate_limit_backoff if rate_limit_backoff is not None else settings.ledger_rate_limit_backoff
        )
        self.page_delay = page_delay if page_delay is not None else settings.ledger_page_delay
        self.timeout = timeout or settings.ledger_timeout

        self._transport = transport or self._http_post
        self._sleep = sleep or asyncio.sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self):
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _http_post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON-RPC body to the ledger endpoint."""
        if not self.api_key:
            raise ConfigurationError("HELIUS_API_KEY not configured")

        session = await self._get_session()
        url = f"{self.rpc_url}?api-key={self.api_key}"

        try:
            async with session.post(url, json=body) as response:
                if response.status == 429:
                    return {"error": {"code": LedgerConfig.RATE_LIMIT_ERROR_CODE, "message": "HTTP 429"}}
                if response.status >= 400:
                    text = await response.text()
                    raise LedgerFetchError(
                        f"Ledger HTTP {response.status}: {text[:200]}",
                        LedgerFetchReason.TRANSPORT,
                        {"status": response.status}
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerFetchError(
                f"Ledger request failed: {type(e).__name__}: {e}",
                LedgerFetchReason.TRANSPORT
            ) from e

    def _build_request(self, asset: str, cursor: Optional[str], page: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "mint": asset,
            "limit": self.page_limit,
            "options": {"showZeroBalance": False},
        }
        if cursor:
            params["cursor"] = cursor

        return {
            "jsonrpc": "2.0",
            "id": f"page-{page}",
            "method": LedgerConfig.TOKEN_ACCOUNTS_METHOD,
            "params": params,
        }

    async def fetch_page(self, asset: str, cursor: Optional[str], page: int) -> LedgerResult:
        """Fetch one page and map it to a typed result."""
        payload = await self._transport(self._build_request(asset, cursor, page))
        return parse_token_accounts_response(payload)

    async def _fetch_page_with_backoff(self, asset: str, cursor: Optional[str], page: int) -> LedgerPage:
        """Fetch one page, retrying rate-limit responses with linear backoff."""
        retries = 0
        while True:
            result = await self.fetch_page(asset, cursor, page)
            if isinstance(result, LedgerPage):
                return result

            if retries >= self.rate_limit_retries:
                raise LedgerFetchError(
                    f"Rate limit retries exhausted for {asset}",
                    LedgerFetchReason.RATE_LIMITED,
                    {"page": page, "retries": retries}
                )

            retries += 1
            wait = self.rate_limit_backoff * retries
            self.logger.warning(
                "Ledger rate limited, backing off",
                asset=asset,
                page=page,
                retry=retries,
                max_retries=self.rate_limit_retries,
                wait_seconds=wait
            )
            await self._sleep(wait)

    async def fetch_top_holders(self, asset: str, limit: int, decimals: int = 6) -> List[HolderBalance]:
        """
        Return the top ``limit`` holders of ``asset`` by balance, descending.

        Balances of several token accounts owned by the same wallet are
        summed. Equal balances keep the order in which their owners were
        first seen. An empty list means the ledger reported no holders.

        Raises:
            LedgerFetchError: transport failure or rate-limit exhaustion
            ConfigurationError: no API key configured
        """
        self.logger.info("Fetching holders", asset=asset, limit=limit, decimals=decimals)

        balances: Dict[str, Any] = {}
        cursor: Optional[str] = None
        page = 0

        while page < self.max_pages:
            result = await self._fetch_page_with_backoff(asset, cursor, page)
            if not result.entries:
                break

            for entry in result.entries:
                balance = scale_amount(entry.raw_amount, decimals)
                if balance <= 0:
                    continue
                # dicts keep first-insertion order, which is the tie-break
                balances[entry.owner] = balances.get(entry.owner, 0) + balance

            cursor = result.next_cursor
            if not cursor:
                break
            page += 1

            if page < self.max_pages:
                await self._sleep(self.page_delay)

        holders = [HolderBalance(wallet=wallet, balance=balance) for wallet, balance in balances.items()]
        holders.sort(key=lambda h: h.balance, reverse=True)
        top_holders = holders[:limit]

        if top_holders:
            self.logger.info(
                "Holders fetched",
                asset=asset,
                accounts=len(holders),
                pages=page + 1,
                top_balance=str(top_holders[0].balance),
                last_balance=str(top_holders[-1].balance)
            )
        else:
            self.logger.info("No holders returned", asset=asset)

        return top_holders


# Global instance
_ledger_client: Optional[LedgerQueryClient] = None


async def get_ledger_client() -> LedgerQueryClient:
    """Get or create global LedgerQueryClient instance."""
    global _ledger_client
    if _ledger_client is None:
        _ledger_client = LedgerQueryClient()
    return _ledger_client


async def close_ledger_client():
    """Close the global LedgerQueryClient instance."""
    global _ledger_client
    if _ledger_client:
        await _ledger_client.close()
        _ledger_client = None
