from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from errors import ParsingError, PaymentError, TransportError

logger = logging.getLogger("photobook-orders")

SUBMIT_ORDER_ENDPOINT = "/v4.0/print/"
ORDER_STATUS_ENDPOINT = "/v4.0/order/{order_id}"


@dataclass
class OrderStatus:
    status: str
    order_id: Optional[str] = None

    @property
    def normalized(self) -> str:
        return normalize_status(self.status)


def normalize_status(value: Any) -> str:
    return str(value or "").strip().lower().replace("_", "").replace(" ", "")


def _error_message(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, list) and message:
            return str(message[-1])
        if message:
            return str(message)
    return ""


class CommerceClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Accept-Encoding": "gzip"}
        if self.api_key:
            headers["Authorization"] = f"ApiKey {self.api_key}:"
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url}: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 500:
            raise TransportError(
                _error_message(data) or f"Server error {response.status_code}",
                code=response.status_code,
            )
        if response.status_code == 402:
            raise PaymentError(_error_message(data))
        if response.status_code >= 400:
            raise ParsingError(
                _error_message(data) or f"Request rejected with status {response.status_code}"
            )
        if not isinstance(data, dict):
            raise ParsingError(f"Bad data for {url}: {response.text[:200]}")
        message = _error_message(data)
        if message:
            raise ParsingError(message)
        return data

    async def submit_order(self, params: Dict[str, Any]) -> str:
        data = await self._request("POST", SUBMIT_ORDER_ENDPOINT, json=params)
        order_id = data.get("order_id") or data.get("print_order_id")
        if not order_id:
            raise ParsingError("Submission response has no order id")
        logger.info("Order submitted order_id=%s", order_id)
        return str(order_id)

    async def check_status(self, order_id: str) -> OrderStatus:
        data = await self._request("GET", ORDER_STATUS_ENDPOINT.format(order_id=order_id))
        status = data.get("status")
        if not status:
            raise ParsingError(f"Status response for {order_id} has no status")
        return OrderStatus(status=str(status), order_id=data.get("order_id") or order_id)
