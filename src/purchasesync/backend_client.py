"""Async HTTP client for the receipt-validation backend."""

from __future__ import annotations

import base64
from typing import Any
from urllib.parse import quote

import httpx

from purchasesync.errors import BackendError, NetworkError, ServerError


def _error_description(response: httpx.Response) -> str:
    """Pull a caller-facing message out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return response.text or f"HTTP {response.status_code}"


class BackendClient:
    """Async client for the receipt service.

    Constructor accepts explicit params — no env-var loading. One request
    per call; retry policy lives in ``ReceiptValidator``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
    ) -> None:
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    # -- internal request dispatcher -----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and map errors to the validation exception hierarchy.

        Transport failures, 5xx and 2xx bodies that are not a JSON object
        raise ``NetworkError`` (retryable); 4xx raises ``BackendError``
        (definitive).
        """
        try:
            response = await self._client.request(method, endpoint, json=json_data)
        except httpx.TransportError as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 500:
            raise ServerError(
                _error_description(response), status_code=response.status_code
            )
        if response.status_code >= 400:
            raise BackendError(
                _error_description(response), status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ServerError(
                "Backend returned a non-JSON body.", status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise ServerError(
                "Backend returned a non-object body.", status_code=response.status_code
            )
        return data

    # -- public API methods ---------------------------------------------------

    async def post_receipt(
        self,
        app_user_id: str,
        receipt_payload: bytes,
        product_identifier: str,
        quantity: int,
        transaction_id: str,
        is_restore: bool = False,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        """POST /validate-receipt — idempotent on ``transaction_id``.

        ``api_key`` names the session the receipt is validated for; the
        client's own key (also sent as the bearer token) is used when omitted.
        """
        payload: dict[str, Any] = {
            "api_key": api_key or self._api_key,
            "app_user_id": app_user_id,
            "receipt_payload": base64.b64encode(receipt_payload).decode("ascii"),
            "product_identifier": product_identifier,
            "quantity": quantity,
            "transaction_id": transaction_id,
            "is_restore": is_restore,
        }
        return await self._request("POST", "/validate-receipt", json_data=payload)

    async def get_subscriber(self, app_user_id: str) -> dict[str, Any]:
        """GET /subscribers/{app_user_id} — current purchaser info."""
        return await self._request("GET", f"/subscribers/{quote(app_user_id, safe='')}")

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> BackendClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
