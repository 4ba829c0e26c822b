"""
Base gateway client implementing shared concerns: http client lifecycle,
timeouts, raw error mapping, logging.

Adapters never retry: every failure is surfaced once, in raw form
(GatewayResponseError / GatewayTransportError), and the creator decides.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from core.logging_config import get_logger
from application.ports.payment_gateway import GatewayResponseError, GatewayTransportError


logger = get_logger(__name__)


class BaseGatewayClient:
    provider: str = "base"

    def __init__(
        self,
        base_url: str,
        *,
        timeouts: Optional[dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeouts_cfg = {"connect": 2.0, "read": 5.0, "write": 5.0, "total": 10.0}
        self._timeouts_cfg.update(timeouts or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeouts,
                transport=self._transport,
            )
        # Keep open for reuse; explicit aclose() will close.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        bearer: Optional[str] = None,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        try:
            async with self.client() as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            self._log("gateway_request_timeout", method=method, path=path)
            raise GatewayTransportError(f"{method} {path} timed out", timeout=True) from exc
        except httpx.TransportError as exc:
            self._log("gateway_transport_error", method=method, path=path, error=str(exc))
            raise GatewayTransportError(f"{method} {path} failed: {exc}") from exc

        self._log("gateway_response", method=method, path=path, status_code=response.status_code)
        if response.status_code >= 400:
            raise self._error_from(response)

        try:
            return response.json()
        except ValueError as exc:
            # the call went through but its result cannot be read
            raise GatewayTransportError(f"{method} {path} returned an unreadable body") from exc

    @staticmethod
    def _error_from(response: httpx.Response) -> GatewayResponseError:
        try:
            body = response.json()
        except ValueError:
            body = response.text
        error_type = None
        messages = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            err = body["error"]
            error_type = err.get("type")
            messages = err.get("messages", err.get("reason"))
        return GatewayResponseError(
            response.status_code,
            error_type=error_type,
            messages=messages,
            body=body,
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
