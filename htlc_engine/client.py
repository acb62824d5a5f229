"""HTTP client for the swap service."""

from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from .config import config
from .errors import HTLCError, error_for_code
from .models import SwapRecord, SwapStatus

logger = structlog.get_logger()

CALLER_HEADER = "X-HTLC-Caller"


def _segment(value: str) -> str:
    """Quote a value for use as one URL path segment."""
    return quote(value, safe="")


class HTLCClient:
    """
    Talks to a running swap service as one caller.

    Service errors come back as the same typed exceptions the engine
    raises, so callers can tell ``InvalidPreimage`` from ``Expired``.
    """

    def __init__(
        self,
        caller: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if caller:
            headers[CALLER_HEADER] = caller

        self.client = httpx.Client(
            base_url=base_url or config.api_url,
            timeout=config.request_timeout,
            headers=headers,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        response = self.client.request(method, path, **kwargs)
        if response.is_success:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise

        code = body.get("error", "")
        logger.debug("Service rejected request", path=path, error=code)
        error = error_for_code(code, body.get("message"))
        if type(error) is HTLCError:
            response.raise_for_status()
        raise error

    def initiate(
        self,
        sender: str,
        receiver: str,
        asset: str,
        amount: int,
        hashlock: bytes,
        timelock: int,
    ) -> SwapRecord:
        """Open a swap; the caller must be ``sender``."""
        body = self._request(
            "POST",
            "/swaps",
            json={
                "sender": sender,
                "receiver": receiver,
                "asset": asset,
                "amount": str(amount),
                "hashlock": hashlock.hex(),
                "timelock": timelock,
            },
        )
        return SwapRecord.model_validate(body)

    def claim(self, swap_id: str, preimage: bytes) -> SwapRecord:
        body = self._request(
            "POST",
            f"/swaps/{_segment(swap_id)}/claim",
            json={"preimage": preimage.hex()},
        )
        return SwapRecord.model_validate(body)

    def refund(self, swap_id: str) -> SwapRecord:
        body = self._request("POST", f"/swaps/{_segment(swap_id)}/refund")
        return SwapRecord.model_validate(body)

    def get_swap(self, swap_id: str) -> SwapRecord:
        body = self._request("GET", f"/swaps/{_segment(swap_id)}")
        return SwapRecord.model_validate(body)

    def list_swaps(
        self, status: Optional[SwapStatus] = None, limit: int = 50
    ) -> list[SwapRecord]:
        params: dict[str, Any] = {"limit": limit}
        if status is not None:
            params["status"] = status.value
        body = self._request("GET", "/swaps", params=params)
        return [SwapRecord.model_validate(item) for item in body["swaps"]]

    def balance(self, account: str, asset: str) -> int:
        path = f"/balances/{_segment(account)}/{_segment(asset)}"
        return self._request("GET", path)["balance"]

    def close(self):
        """Close the HTTP client."""
        self.client.close()
