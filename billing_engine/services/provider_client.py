"""
Provider Billing API Client.

Handles the fulfillment provider's billing endpoints:
- Date-windowed transaction query (pending and settled rows)
- Settlement invoice listing
- Per-invoice transaction streams
- Return point lookups (anchor back-fill)

All list endpoints use cursor pagination and are drained until the
provider stops returning a `next` cursor. Calls are throttled, 429
responses wait out a cooldown and transient failures back off
exponentially.
"""
import asyncio
import logging
from datetime import date, datetime, time, timezone
from typing import Optional, List, Dict, Any, AsyncIterator, Awaitable, Callable

import httpx
from pydantic import ValidationError

from billing_engine.config import settings
from billing_engine.schemas.provider import ProviderReturn

logger = logging.getLogger(__name__)


class ProviderAPIError(Exception):
    """Provider API error."""

    def __init__(self, status_code: int, message: str, errors: Dict = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors or {}
        super().__init__(f"Provider API Error ({status_code}): {message}")


class ProviderRateLimitError(ProviderAPIError):
    """Rate limit still exceeded after the configured retries."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(429, message)


def _window_bound(value: date, end_of_day: bool = False) -> str:
    """Format a window bound as an explicit UTC timestamp."""
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    else:
        moment = datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


class ProviderBillingClient:
    """
    Client for the provider billing API.

    Usage:
        async with ProviderBillingClient() as client:
            async for page in client.query_transactions(start, end):
                ...
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        page_size: Optional[int] = None,
        request_delay: Optional[float] = None,
        rate_limit_cooldown: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or settings.PROVIDER_API_URL).rstrip("/")
        self.token = token if token is not None else settings.PROVIDER_API_TOKEN
        self.page_size = page_size or settings.PROVIDER_PAGE_SIZE
        self.request_delay = settings.PROVIDER_REQUEST_DELAY_SECONDS if request_delay is None else request_delay
        self.rate_limit_cooldown = (
            settings.PROVIDER_RATE_LIMIT_COOLDOWN_SECONDS if rate_limit_cooldown is None else rate_limit_cooldown
        )
        self.max_retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.billing_path = settings.provider_billing_path
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ProviderBillingClient":
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _backoff_delay(self, attempt: int) -> float:
        return min(
            settings.PROVIDER_BACKOFF_BASE_SECONDS * (2 ** attempt),
            settings.PROVIDER_BACKOFF_MAX_SECONDS,
        )

    def _retry_after(self, response: httpx.Response) -> float:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(float(header), 0.0)
            except ValueError:
                pass
        return self.rate_limit_cooldown

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Any:
        """Make an authenticated request, retrying rate limits and transient failures."""
        if self._client is None:
            raise RuntimeError("ProviderBillingClient must be used as an async context manager")

        attempt = 0
        while True:
            try:
                response = await self._client.request(method.upper(), endpoint, json=data, params=params)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Provider request {method} {endpoint} failed after {attempt + 1} attempts: {e}")
                    raise ProviderAPIError(status_code=0, message=str(e))
                delay = self._backoff_delay(attempt)
                logger.warning(f"Provider request {method} {endpoint} failed, retrying in {delay}s: {e}")
                await self._sleep(delay)
                attempt += 1
                continue

            if response.status_code == 429:
                cooldown = self._retry_after(response)
                if attempt >= self.max_retries:
                    logger.error(f"Provider rate limit persisted after {attempt + 1} attempts on {endpoint}")
                    raise ProviderRateLimitError(f"Rate limited on {endpoint}", retry_after=cooldown)
                logger.warning(f"Provider rate limited on {endpoint}, cooling down {cooldown}s")
                await self._sleep(cooldown)
                attempt += 1
                continue

            if response.status_code >= 500 and attempt < self.max_retries:
                delay = self._backoff_delay(attempt)
                logger.warning(f"Provider {response.status_code} on {endpoint}, retrying in {delay}s")
                await self._sleep(delay)
                attempt += 1
                continue

            if response.status_code >= 400:
                logger.error(f"Provider API error: {response.status_code} - {response.text}")
                try:
                    error_data = response.json() if response.text else {}
                except ValueError:
                    error_data = {}
                if not isinstance(error_data, dict):
                    error_data = {"detail": error_data}
                raise ProviderAPIError(
                    status_code=response.status_code,
                    message=error_data.get("message", response.text),
                    errors=error_data.get("errors", {})
                )

            return response.json() if response.content else {}

    async def _paginate(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        cursor_param: str = "cursor",
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield pages until the provider stops returning a next cursor."""
        cursor: Optional[str] = None
        page_number = 0
        while True:
            page_params = dict(params or {})
            if cursor:
                page_params[cursor_param] = cursor
            if page_number > 0 and self.request_delay > 0:
                await self._sleep(self.request_delay)

            payload = await self._request(method, endpoint, data=data, params=page_params or None)
            page_number += 1

            if isinstance(payload, list):
                items, next_cursor = payload, None
            else:
                items, next_cursor = payload.get("items") or [], payload.get("next")

            logger.debug(f"Provider {endpoint} page {page_number}: {len(items)} items")
            yield items

            if not next_cursor or next_cursor == cursor:
                break
            cursor = next_cursor

    # ==================== BILLING ====================

    def query_transactions(self, start_date: date, end_date: date) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Query transactions charged inside [start_date, end_date].

        The window is mandatory; without it the provider returns an
        unbounded default range.
        """
        if start_date is None or end_date is None:
            raise ValueError("query_transactions requires an explicit date window")
        body = {
            "from_date": _window_bound(start_date),
            "to_date": _window_bound(end_date, end_of_day=True),
            "page_size": self.page_size,
        }
        return self._paginate("POST", f"{self.billing_path}/transactions:query", data=body, cursor_param="Cursor")

    def list_invoices(self, start_date: date, end_date: date) -> AsyncIterator[List[Dict[str, Any]]]:
        """List settlement invoices dated inside the window."""
        if start_date is None or end_date is None:
            raise ValueError("list_invoices requires an explicit date window")
        params = {
            "startDate": start_date.isoformat(),
            "endDate": end_date.isoformat(),
            "pageSize": self.page_size,
        }
        return self._paginate("GET", f"{self.billing_path}/invoices", params=params)

    def get_invoice_transactions(self, invoice_id: str) -> AsyncIterator[List[Dict[str, Any]]]:
        """Stream every transaction settled on one provider invoice."""
        params = {"pageSize": self.page_size}
        return self._paginate("GET", f"{self.billing_path}/invoices/{invoice_id}/transactions", params=params)

    # ==================== ANCHORS ====================

    async def get_return(self, return_id: str) -> Optional[ProviderReturn]:
        """Fetch one return record; None when the provider does not know it."""
        try:
            payload = await self._request("GET", f"/1.0/return/{return_id}")
        except ProviderAPIError as e:
            if e.status_code == 404:
                return None
            raise
        if not payload:
            return None
        try:
            return ProviderReturn.model_validate(payload)
        except ValidationError as e:
            raise ProviderAPIError(502, f"Malformed return {return_id}", {"validation": e.errors()}) from e
