"""Quidax client: request shape and mapping of provider failures to UpstreamFailure."""

import json
from decimal import Decimal

import httpx
import pytest

from trustbank.errors import UpstreamFailure
from trustbank.exchange import QuidaxClient


def _client(handler) -> QuidaxClient:
    return QuidaxClient(
        base_url="https://quidax.test/api/v1",
        secret_key="sk_test",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_transfer_posts_withdrawal_to_sub_account() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "success", "data": {"id": "wd-1", "status": "submitted"}})

    data = await _client(handler).transfer("escrow-wallet", "qdx-seller", "USDT", Decimal("40"), note="trade t1")
    assert data == {"id": "wd-1", "status": "submitted"}
    assert seen["method"] == "POST"
    assert seen["url"] == "https://quidax.test/api/v1/users/escrow-wallet/withdraws"
    assert seen["auth"] == "Bearer sk_test"
    assert seen["body"] == {
        "currency": "usdt",
        "amount": "40",
        "fund_uid": "qdx-seller",
        "transaction_note": "trade t1",
        "narration": "P2P trade settlement",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"status": "error", "message": "maintenance"}),
        httpx.Response(200, json={"status": "error", "message": "Insufficient balance"}),
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=["unexpected"]),
    ],
)
async def test_transfer_failures_raise_upstream_failure(response) -> None:
    with pytest.raises(UpstreamFailure):
        await _client(lambda request: response).transfer("escrow-wallet", "qdx-seller", "USDT", Decimal("1"), note="n")


@pytest.mark.asyncio
async def test_transfer_network_error_raises_upstream_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamFailure, match="unreachable"):
        await _client(handler).transfer("escrow-wallet", "qdx-seller", "USDT", Decimal("1"), note="n")
