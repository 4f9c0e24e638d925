# gateway.py
import logging
import os
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from errors import GatewayError, TransientError
from models import InitializeResponse, VerifyResponse

PAYMENT_API_URL = os.getenv("PAYMENT_API_URL", "http://localhost:5001/api")   # backend base, includes /api
PAYMENT_API_TIMEOUT = float(os.getenv("PAYMENT_API_TIMEOUT", "15"))

logger = logging.getLogger(__name__)


def _error_message(payload: Dict[str, Any], default: str) -> str:
    return payload.get("message") or payload.get("error") or default


class PaymentGateway:
    """
    Client for the three payment endpoints the checkout flow consumes.

    Every call opens its own AsyncClient, so one gateway can be shared by any
    number of sessions. Network and parse failures surface as TransientError;
    explicit rejections surface as GatewayError.
    """

    def __init__(
        self,
        base_url: str = PAYMENT_API_URL,
        timeout: float = PAYMENT_API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_store=None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.token_store = token_store

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.token_store.get() if self.token_store else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Tuple[int, Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

        if r.status_code in (401, 403) and self.token_store:
            logger.warning("Backend returned %s for %s; dropping stored auth token", r.status_code, path)
            self.token_store.clear()

        try:
            payload = r.json() if r.content else {}
        except ValueError as e:
            raise TransientError(f"{method} {path} returned unparseable body (HTTP {r.status_code})") from e
        if not isinstance(payload, dict):
            raise TransientError(f"{method} {path} returned a non-object body")
        return r.status_code, payload

    async def initialize(self, body: dict) -> InitializeResponse:
        code, payload = await self._request("POST", "/payments/initialize", json=body)
        if code >= 400:
            raise GatewayError(_error_message(payload, f"HTTP {code}"), status_code=code, payload=payload)
        if payload.get("status") != "success":
            raise GatewayError(_error_message(payload, "Payment initialization failed"), status_code=code, payload=payload)
        try:
            resp = InitializeResponse.model_validate(payload)
        except ValidationError as e:
            raise GatewayError("Initialization response is malformed", status_code=code, payload=payload) from e
        if resp.data is None:
            raise GatewayError("Initialization response carries no tx_ref", status_code=code, payload=payload)
        return resp

    async def verify(self, tx_ref: str) -> VerifyResponse:
        code, payload = await self._request("GET", f"/payments/verify/{quote(tx_ref, safe='')}")
        if code >= 400:
            # 404 usually means the backend has not indexed the transaction yet
            raise TransientError(f"verify {tx_ref}: HTTP {code} {_error_message(payload, '')}".rstrip())
        try:
            return VerifyResponse.model_validate(payload)
        except ValidationError as e:
            raise TransientError(f"verify {tx_ref}: malformed response") from e

    async def verify_registration(self, body: dict) -> Dict[str, Any]:
        code, payload = await self._request("POST", "/payments/verify-registration", json=body)
        if code >= 400 or payload.get("status") != "success":
            raise GatewayError(
                _error_message(payload, f"Registration verification failed (HTTP {code})"),
                status_code=code,
                payload=payload,
            )
        return payload
