from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any

from binance_usdm_streams.core.errors import SubscriptionTimeoutError
from binance_usdm_streams.sockets.protocol import ControlAck, ControlRequest, frame_request_id, parse_ack

logger = logging.getLogger(__name__)


class ControlFrameCorrelator:
    """Pairs outbound control requests with the reply frame carrying the same id.

    The read path calls :meth:`resolve` for every inbound frame; waiters sit in
    :meth:`send_and_wait` and are woken through their own future, so a slow or
    missing acknowledgement only delays the coroutine that asked for it.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[ControlAck]] = {}
        self._lock = threading.RLock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    @property
    def pending_ids(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(self._pending)

    async def send_and_wait(
        self,
        send: Callable[[str], Awaitable[None]],
        request: ControlRequest,
        timeout_seconds: float,
    ) -> ControlAck:
        future: asyncio.Future[ControlAck] = asyncio.get_running_loop().create_future()
        with self._lock:
            if request.id in self._pending:
                raise ValueError(f"Control request id {request.id} is already awaiting a reply")
            self._pending[request.id] = future

        try:
            await send(request.encode())
            logger.debug(
                "Sent control frame",
                extra={"request_id": request.id, "method": request.verb.value, "topics": list(request.topics)},
            )
            return await asyncio.wait_for(future, timeout=timeout_seconds)
        except TimeoutError as exc:
            raise SubscriptionTimeoutError(request.id, timeout_seconds) from exc
        finally:
            self._discard(request.id, future)

    def resolve(self, frame: Any) -> bool:
        """Consume ``frame`` if it is a control reply; return ``True`` when consumed."""
        request_id = frame_request_id(frame)
        if request_id is None:
            return False

        with self._lock:
            future = self._pending.pop(request_id, None)

        if future is None:
            logger.debug("Dropping reply for unknown control request", extra={"request_id": request_id})
            return True
        if not future.done():
            future.set_result(parse_ack(frame, request_id))
        return True

    def fail_all(self, exc: BaseException) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    def _discard(self, request_id: int, future: asyncio.Future[ControlAck]) -> None:
        with self._lock:
            if self._pending.get(request_id) is future:
                del self._pending[request_id]
