import json
from decimal import Decimal
import httpx
import pytest

from rewardflow.config import Settings
from rewardflow.errors import IssuanceFailed
from rewardflow.services.reward_provider import (
    HttpRewardProvider,
    ProviderRequest,
    ProviderStatus,
    UnconfiguredRewardProvider,
    build_reward_provider,
)

REQ = ProviderRequest(
    idempotency_key="rewardflow-sku-123",
    participant_id="p-1",
    type="sku",
    sku_id="MUG-1",
    metadata={"submissionId": "s-1"},
)

def _provider(handler) -> HttpRewardProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://rewards.test")
    return HttpRewardProvider("https://rewards.test", "key-1", client=client)

@pytest.mark.asyncio
async def test_posts_transaction_with_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "tx-1", "status": "completed"})

    p = _provider(handler)
    result = await p.fulfill(REQ)
    await p.aclose()

    assert result.status is ProviderStatus.ISSUED and result.transaction_id == "tx-1"
    assert seen["url"] == "https://rewards.test/transactions"
    assert seen["headers"]["Idempotency-Key"] == "rewardflow-sku-123"
    assert seen["headers"]["Authorization"] == "Bearer key-1"
    assert seen["body"]["skuId"] == "MUG-1" and seen["body"]["participantId"] == "p-1"

@pytest.mark.asyncio
async def test_monetary_amount_is_sent_as_string():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "tx-2", "status": "processing"})

    req = ProviderRequest(idempotency_key="k", participant_id="p", type="monetary", amount=Decimal("12.50"), currency="USD")
    result = await _provider(handler).fulfill(req)
    assert result.status is ProviderStatus.PENDING and result.transaction_id == "tx-2"
    assert seen["body"]["amount"] == "12.50" and seen["body"]["currency"] == "USD"

@pytest.mark.asyncio
async def test_provider_reported_failure_carries_error():
    result = await _provider(lambda r: httpx.Response(200, json={"id": "tx-3", "status": "failed", "error": "out of stock"})).fulfill(REQ)
    assert result.status is ProviderStatus.FAILED and result.error == "out of stock"

@pytest.mark.asyncio
async def test_http_error_status_raises_issuance_failed():
    with pytest.raises(IssuanceFailed) as exc:
        await _provider(lambda r: httpx.Response(503, text="unavailable")).fulfill(REQ)
    assert "503" in exc.value.message

@pytest.mark.asyncio
async def test_transport_error_raises_issuance_failed():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(IssuanceFailed):
        await _provider(handler).fulfill(REQ)

@pytest.mark.asyncio
async def test_timeout_leaves_outcome_pending():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    result = await _provider(handler).fulfill(REQ)
    assert result.status is ProviderStatus.PENDING and result.error == "provider_timeout"

@pytest.mark.asyncio
async def test_non_json_body_raises_issuance_failed():
    with pytest.raises(IssuanceFailed):
        await _provider(lambda r: httpx.Response(200, text="<html>")).fulfill(REQ)

@pytest.mark.asyncio
async def test_unconfigured_provider_fails_every_request():
    p = build_reward_provider(Settings(reward_provider_url=""))
    assert isinstance(p, UnconfiguredRewardProvider)
    result = await p.fulfill(REQ)
    assert result.status is ProviderStatus.FAILED and result.error == "reward provider not configured"

def test_configured_provider_is_http():
    p = build_reward_provider(Settings(reward_provider_url="https://rewards.test", reward_provider_api_key="k"))
    assert isinstance(p, HttpRewardProvider)

@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[], "ok", 42])
async def test_non_object_body_is_an_issuance_failure(body):
    p = _provider(lambda request: httpx.Response(200, json=body))
    with pytest.raises(IssuanceFailed):
        await p.fulfill(REQ)

@pytest.mark.asyncio
async def test_numeric_transaction_id_is_stored_as_text():
    p = _provider(lambda request: httpx.Response(200, json={"id": 12345, "status": "completed"}))
    result = await p.fulfill(REQ)
    assert result.status is ProviderStatus.ISSUED and result.transaction_id == "12345"
