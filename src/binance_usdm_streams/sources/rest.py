from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from binance_usdm_streams.auth.signing import (
    ApiCredentials,
    ParameterPosition,
    SignedRequest,
    build_request,
)
from binance_usdm_streams.core.config import Settings
from binance_usdm_streams.core.errors import BinanceAPIError, ServerError
from binance_usdm_streams.core.time_sync import INVALID_TIMESTAMP_CODE, TimeSyncState, local_time_ms

logger = logging.getLogger(__name__)


class BinanceRESTClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 5,
        *,
        credentials: ApiCredentials | None = None,
        time_sync: TimeSyncState | None = None,
        recv_window_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._credentials = credentials
        self._time_sync = time_sync or TimeSyncState()
        self._recv_window_ms = recv_window_ms
        self._retries = max(1, retries)
        self._min_retry_delay_seconds = 1.0
        self._max_backoff_seconds = 60.0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        time_sync: TimeSyncState | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> BinanceRESTClient:
        return cls(
            base_url=settings.rest_base_url,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
            credentials=settings.credentials(),
            time_sync=time_sync
            or TimeSyncState(
                auto_timestamp=settings.auto_timestamp,
                recalculation_interval=timedelta(seconds=settings.timestamp_recalculation_interval_seconds),
            ),
            recv_window_ms=settings.recv_window_ms,
            transport=transport,
        )

    @property
    def time_sync(self) -> TimeSyncState:
        return self._time_sync

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BinanceRESTClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def send_request(
        self,
        path: str,
        method: str = "GET",
        params: Mapping[str, Any] | None = None,
        *,
        signed: bool = False,
        parameter_position: ParameterPosition | None = None,
    ) -> Any:
        request_params = dict(params or {})
        generation: int | None = None

        if signed:
            snapshot = await self._time_sync.ensure_synced(self.get_server_time)
            generation = snapshot.generation
            request_params["timestamp"] = int(local_time_ms() + snapshot.offset_ms)
            if self._recv_window_ms is not None:
                request_params.setdefault("recvWindow", self._recv_window_ms)

        prepared = build_request(
            method,
            request_params,
            signed=signed,
            parameter_position=parameter_position,
            credentials=self._credentials,
        )
        try:
            return await self._send(path, prepared)
        except BinanceAPIError as exc:
            if signed and exc.code == INVALID_TIMESTAMP_CODE and self._time_sync.auto_timestamp:
                if self._time_sync.invalidate(generation):
                    logger.debug("Received invalid timestamp error, triggering new time sync", extra={"path": path})
            raise

    async def _send(self, path: str, prepared: SignedRequest) -> Any:
        url = path
        if prepared.query_params:
            url = f"{path}?{prepared.query_string}"
        content = prepared.body if prepared.body_params else None
        last_transport_error: httpx.TransportError | None = None

        for attempt in range(1, self._retries + 1):
            try:
                response = await self._client.request(
                    prepared.method,
                    url,
                    content=content,
                    headers=prepared.headers,
                )
            except httpx.TransportError as exc:
                last_transport_error = exc
                if attempt >= self._retries:
                    raise
                await self._sleep_before_retry(attempt=attempt, path=path, status_code=None, reason=exc.__class__.__name__)
                continue

            if response.status_code < 400:
                if not response.content:
                    return {}
                return response.json()

            if self._is_retryable_status(response.status_code) and attempt < self._retries:
                retry_after_seconds = self._parse_retry_after_seconds(response=response)
                await self._sleep_before_retry(
                    attempt=attempt,
                    path=path,
                    status_code=response.status_code,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=retry_after_seconds,
                )
                continue

            raise self._api_error(response)

        if last_transport_error is not None:
            raise last_transport_error
        raise RuntimeError("REST call exhausted retries without a concrete error")

    @staticmethod
    def _api_error(response: httpx.Response) -> BinanceAPIError:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and "msg" in payload:
            error = ServerError.from_payload(payload)
            return BinanceAPIError(error.code, error.message, status_code=response.status_code)
        return BinanceAPIError(None, response.text or response.reason_phrase, status_code=response.status_code)

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    @staticmethod
    def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
        raw_value = response.headers.get("Retry-After")
        if raw_value is None:
            return None

        raw_value = raw_value.strip()
        try:
            return max(0.0, float(raw_value))
        except ValueError:
            pass

        try:
            parsed = parsedate_to_datetime(raw_value)
        except (TypeError, ValueError):
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        delay_seconds = float((parsed.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds())
        return max(0.0, delay_seconds)

    async def _sleep_before_retry(
        self,
        *,
        attempt: int,
        path: str,
        status_code: int | None,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is not None:
            delay = retry_after_seconds
        else:
            delay = min(
                self._max_backoff_seconds,
                self._min_retry_delay_seconds * (2 ** max(attempt - 1, 0)),
            )
        # add small jitter to desynchronize from exchange rate limits
        delay += random.uniform(0.0, 0.3)  # noqa: S311

        logger.warning(
            "Retrying Binance REST request",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": self._retries,
                "status_code": status_code,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        await asyncio.sleep(delay)

    async def get_server_time(self) -> int:
        payload = await self.send_request("/fapi/v1/time")
        return int(payload["serverTime"])

    async def start_user_stream(self) -> str:
        payload = await self.send_request("/fapi/v1/listenKey", "POST")
        return str(payload["listenKey"])

    async def keep_alive_user_stream(self, listen_key: str) -> None:
        await self.send_request("/fapi/v1/listenKey", "PUT", {"listenKey": listen_key})

    async def stop_user_stream(self, listen_key: str) -> None:
        await self.send_request("/fapi/v1/listenKey", "DELETE", {"listenKey": listen_key})
