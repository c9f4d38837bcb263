"""
Async HTTP client wrapper for the logger backend.
Includes retry logic, timeout management, metrics, and error mapping onto
the logger error taxonomy.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.errors import TransportError, ValidationError
from shared.utils.logging import get_logger
from shared.utils.metrics import TRANSPORT_LATENCY

logger = get_logger(__name__)

# Client errors carrying a validation body rather than a transport fault
VALIDATION_STATUSES = frozenset({400, 409, 422})


def extract_field_errors(body: Any) -> tuple[str, dict[str, str]]:
    """
    Pull a message and field-level reasons out of an error body.

    Accepts FastAPI-style `{"detail": [{"loc": [...], "msg": ...}]}`,
    `{"detail": "text"}` and `{"detail": {"message": ..., "field_errors": {...}}}`.
    """
    if not isinstance(body, dict):
        return (str(body) if body else "Request rejected", {})
    detail = body.get("detail", body)
    if isinstance(detail, str):
        return detail, {}
    if isinstance(detail, list):
        fields: dict[str, str] = {}
        for item in detail:
            if not isinstance(item, dict):
                continue
            loc = [str(p) for p in item.get("loc", []) if p not in ("body", "query", "path")]
            fields[".".join(loc) or "__root__"] = str(item.get("msg", "invalid"))
        return "Validation failed", fields
    if isinstance(detail, dict):
        message = str(detail.get("message") or detail.get("error") or "Request rejected")
        raw_fields = detail.get("field_errors") or detail.get("errors") or {}
        fields = {str(k): str(v) for k, v in raw_fields.items()} if isinstance(raw_fields, dict) else {}
        return message, fields
    return "Request rejected", {}


class LoggerHTTPClient:
    """
    Async HTTP client for the logger REST API.
    Retries timeouts, connection failures and 5xx; never retries validation errors.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._token = token if token is not None else settings.api_token
        self._timeout = timeout_s or settings.request_timeout_s
        self._max_retries = max(1, max_retries if max_retries is not None else settings.max_retries)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        operation: str = "request",
    ) -> Any:
        """
        Perform a request and return the decoded JSON body (None for 204).

        Raises:
            TransportError: timeouts, connection failures, 5xx and 429 once retries are exhausted.
            ValidationError: 400/409/422 with field-level reasons from the body.
        """
        if not self._client:
            raise RuntimeError("LoggerHTTPClient not started. Call start() first.")

        last_exc: Optional[TransportError] = None
        for attempt in range(1, self._max_retries + 1):
            start_time = time.perf_counter()
            try:
                resp = await self._client.request(method, path, json=json, params=params)
            except httpx.TimeoutException:
                last_exc = TransportError(f"{operation} timed out")
                logger.warning("backend_timeout", operation=operation, path=path, attempt=attempt)
            except httpx.TransportError as exc:
                last_exc = TransportError(f"{operation} failed: {exc}")
                logger.warning(
                    "backend_connection_error",
                    operation=operation,
                    path=path,
                    error=str(exc),
                    attempt=attempt,
                )
            else:
                TRANSPORT_LATENCY.labels(operation=operation).observe(time.perf_counter() - start_time)

                if resp.status_code in VALIDATION_STATUSES:
                    message, fields = extract_field_errors(_safe_json(resp))
                    logger.warning(
                        "backend_rejected",
                        operation=operation,
                        path=path,
                        status=resp.status_code,
                        fields=list(fields),
                    )
                    raise ValidationError(message, fields)

                if resp.status_code == 429 or resp.status_code >= 500:
                    last_exc = TransportError(
                        f"{operation} failed with {resp.status_code}", status=resp.status_code
                    )
                    logger.warning(
                        "backend_server_error",
                        operation=operation,
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                elif resp.status_code >= 400:
                    raise TransportError(
                        f"{operation} failed with {resp.status_code}",
                        retryable=False,
                        status=resp.status_code,
                    )
                else:
                    logger.debug(
                        "backend_request_success",
                        operation=operation,
                        path=path,
                        status=resp.status_code,
                        latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                    )
                    if resp.status_code == 204 or not resp.content:
                        return None
                    return resp.json()

            if attempt < self._max_retries:
                await asyncio.sleep(0.5 * attempt)

        raise last_exc or TransportError(f"{operation} was not attempted", retryable=False)

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
