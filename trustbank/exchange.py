import logging
from decimal import Decimal
from typing import Optional

import httpx

from .errors import UpstreamFailure
from .settings import PROVIDER_TIMEOUT_SECONDS, QUIDAX_API_URL, QUIDAX_SECRET_KEY

logger = logging.getLogger(__name__)


class QuidaxClient:
    """Custodial exchange account operations against the Quidax REST API."""

    def __init__(
        self,
        base_url: str = QUIDAX_API_URL,
        secret_key: str = QUIDAX_SECRET_KEY,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, headers=headers, transport=self._transport
            ) as client:
                r = await client.request(method, path, json=payload, timeout=self.timeout)
                r.raise_for_status()
                body = r.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Quidax {method} {path} failed with HTTP {e.response.status_code}")
            raise UpstreamFailure(f"Quidax returned HTTP {e.response.status_code}") from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.error(f"Quidax {method} {path} unreachable: {e!r}")
            raise UpstreamFailure("Quidax unreachable") from e
        except ValueError as e:
            raise UpstreamFailure("Invalid response format from Quidax") from e

        if not isinstance(body, dict):
            raise UpstreamFailure("Invalid response format from Quidax")
        if body.get("status") != "success":
            raise UpstreamFailure(body.get("message") or "Quidax request failed")
        return body.get("data") or {}

    async def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        currency: str,
        amount: Decimal,
        note: str,
        narration: str = "P2P trade settlement",
    ) -> dict:
        """Move funds between two custodial sub-accounts (a withdrawal with fund_uid set)."""
        return await self._request(
            "POST",
            f"/users/{from_user_id}/withdraws",
            {
                "currency": currency.lower(),
                "amount": str(amount),
                "fund_uid": to_user_id,
                "transaction_note": note,
                "narration": narration,
            },
        )


def get_exchange() -> QuidaxClient:
    return QuidaxClient()
