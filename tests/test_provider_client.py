"""Tests for the provider billing API client: pagination, rate limits, lookups."""
import json
from datetime import date

import httpx
import pytest

from billing_engine.services.provider_client import (
    ProviderBillingClient,
    ProviderAPIError,
    ProviderRateLimitError,
)


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_client(handler, sleep=None, **kwargs) -> ProviderBillingClient:
    return ProviderBillingClient(
        base_url="https://provider.test",
        token="test-token",
        request_delay=0,
        transport=httpx.MockTransport(handler),
        sleep=sleep or SleepRecorder(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_query_transactions_follows_cursor_until_exhausted():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append((request.url.params.get("Cursor"), body["from_date"][:10], body["to_date"][:10]))
        if request.url.params.get("Cursor") is None:
            return httpx.Response(200, json={"items": [{"transaction_id": "A"}], "next": "page-2"})
        return httpx.Response(200, json={"items": [{"transaction_id": "B"}], "next": None})

    async with make_client(handler) as client:
        pages = [page async for page in client.query_transactions(date(2025, 12, 1), date(2025, 12, 7))]

    assert [[item["transaction_id"] for item in page] for page in pages] == [["A"], ["B"]]
    assert seen == [(None, "2025-12-01", "2025-12-07"), ("page-2", "2025-12-01", "2025-12-07")]


@pytest.mark.asyncio
async def test_query_transactions_requires_window():
    async with make_client(lambda request: httpx.Response(200, json={})) as client:
        with pytest.raises(ValueError):
            client.query_transactions(None, date(2025, 12, 7))


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after_then_succeeds():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json={"items": [], "next": None}),
    ])
    sleep = SleepRecorder()

    async with make_client(lambda request: next(responses), sleep=sleep) as client:
        pages = [page async for page in client.list_invoices(date(2025, 12, 1), date(2025, 12, 7))]

    assert pages == [[]]
    assert sleep.calls == [7.0]


@pytest.mark.asyncio
async def test_rate_limit_uses_cooldown_and_gives_up_after_max_retries():
    sleep = SleepRecorder()

    async with make_client(
        lambda request: httpx.Response(429),
        sleep=sleep,
        rate_limit_cooldown=60,
        max_retries=2,
    ) as client:
        with pytest.raises(ProviderRateLimitError):
            async for _ in client.list_invoices(date(2025, 12, 1), date(2025, 12, 7)):
                pass

    assert sleep.calls == [60, 60]


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(400, json={"message": "bad window"})

    async with make_client(handler) as client:
        with pytest.raises(ProviderAPIError) as exc_info:
            async for _ in client.list_invoices(date(2025, 12, 1), date(2025, 12, 7)):
                pass

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "bad window"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_get_return_maps_404_to_none():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/R-1"):
            return httpx.Response(200, json={"id": 1, "original_shipment_id": 1001, "status": "Completed"})
        return httpx.Response(404, json={"message": "not found"})

    async with make_client(handler) as client:
        found = await client.get_return("R-1")
        missing = await client.get_return("R-2")

    assert found.id == "1"
    assert found.original_shipment_id == "1001"
    assert missing is None


@pytest.mark.asyncio
async def test_get_return_rejects_malformed_payload():
    async with make_client(lambda request: httpx.Response(200, json={"status": "Completed"})) as client:
        with pytest.raises(ProviderAPIError) as exc_info:
            await client.get_return("R-3")

    assert exc_info.value.status_code == 502
    assert "validation" in exc_info.value.errors


@pytest.mark.asyncio
async def test_request_outside_context_manager_fails():
    client = make_client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(RuntimeError):
        await client.get_return("R-1")
