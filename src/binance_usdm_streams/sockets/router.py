from __future__ import annotations

import logging
from typing import Any

from binance_usdm_streams.sockets.protocol import frame_stream
from binance_usdm_streams.sockets.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class StreamRouter:
    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry

    def route(self, frame: Any, arrival_time_ms: int) -> bool:
        """Hand ``frame`` to the one active subscription owning its stream.

        Returns ``False`` for frames without a ``stream`` field or whose stream
        no active subscription holds; those are left to the caller to log.
        """
        stream = frame_stream(frame)
        if stream is None:
            return False

        subscription = self._registry.match(stream)
        if subscription is None:
            return False

        try:
            subscription.handler(frame, arrival_time_ms)
        except Exception:
            logger.exception(
                "Subscription handler failed",
                extra={"stream": stream, "subscription_id": subscription.id},
            )
        return True
