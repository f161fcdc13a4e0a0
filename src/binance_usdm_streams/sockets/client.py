from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from binance_usdm_streams.core.config import Settings
from binance_usdm_streams.core.errors import (
    ConnectionClosedError,
    DecodeError,
    SubscriptionCancelledError,
    SubscriptionRejectedError,
    SubscriptionTimeoutError,
)
from binance_usdm_streams.sockets import market, topics
from binance_usdm_streams.sockets.connection import SocketConnection, WebSocketConnection
from binance_usdm_streams.sockets.correlator import ControlFrameCorrelator
from binance_usdm_streams.sockets.payloads import DataEvent, now_ms, payload_to_json
from binance_usdm_streams.sockets.protocol import ControlRequest, ControlVerb, decode_frame, frame_stream
from binance_usdm_streams.sockets.registry import FrameHandler, Subscription, SubscriptionRegistry, SubscriptionState
from binance_usdm_streams.sockets.router import StreamRouter
from binance_usdm_streams.sockets.user_data import (
    AccountUpdateEvent,
    ConfigUpdateEvent,
    ListenKeyExpiredEvent,
    MarginCallEvent,
    OrderUpdateEvent,
    UserDataDispatcher,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ConnectionFactory = Callable[[str], Awaitable[SocketConnection]]
EventCallback = Callable[[DataEvent[T]], None]


class BinanceUsdFuturesSocketClient:
    """Many logical subscriptions multiplexed over one combined-stream connection.

    Frames are read by a single task and routed in arrival order. Subscribe and
    unsubscribe calls wait on their own acknowledgement without holding up the
    read loop.
    """

    def __init__(
        self,
        base_url: str = "wss://fstream.binance.com/",
        *,
        response_timeout_seconds: float = 10.0,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._stream_url = base_url.rstrip("/") + "/stream"
        self._response_timeout_seconds = response_timeout_seconds
        self._connection_factory = connection_factory or WebSocketConnection.open
        self._registry = SubscriptionRegistry()
        self._correlator = ControlFrameCorrelator()
        self._router = StreamRouter(self._registry)
        self._connection: SocketConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        connection_factory: ConnectionFactory | None = None,
    ) -> BinanceUsdFuturesSocketClient:
        return cls(
            settings.websocket_base_url,
            response_timeout_seconds=settings.socket_response_timeout_seconds,
            connection_factory=connection_factory,
        )

    @property
    def stream_url(self) -> str:
        return self._stream_url

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_open

    async def __aenter__(self) -> BinanceUsdFuturesSocketClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            connection = await self._connection_factory(self._stream_url)
            self._connection = connection
            self._reader = asyncio.create_task(self._read_loop(connection), name="binance-usdm-stream-reader")

    async def close(self) -> None:
        connection, reader = self._connection, self._reader
        self._connection = None
        self._reader = None
        if connection is not None:
            await connection.close()
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

    async def _read_loop(self, connection: SocketConnection) -> None:
        try:
            while True:
                raw = await connection.recv()
                try:
                    self.handle_message(raw, now_ms())
                except Exception:
                    logger.exception("Failed to handle inbound frame", extra={"url": self._stream_url})
        except ConnectionClosedError as exc:
            logger.info("Stream connection ended", extra={"url": self._stream_url, "reason": str(exc)})
        finally:
            self._correlator.fail_all(ConnectionClosedError(f"Connection to {self._stream_url} ended"))
            for subscription in self._registry.snapshot():
                self._registry.remove(subscription)

    def handle_message(self, raw: str | bytes, arrival_time_ms: int) -> None:
        """Consume one inbound frame: control reply, routed stream data, or drop."""
        try:
            frame = decode_frame(raw)
        except DecodeError as exc:
            logger.warning("Dropping undecodable frame", extra={"error": str(exc), "payload": str(raw)[:1000]})
            return

        if frame_stream(frame) is None and self._correlator.resolve(frame):
            return
        if self._router.route(frame, arrival_time_ms):
            return
        logger.debug(
            "Dropping frame with no matching subscription",
            extra={"stream": frame_stream(frame), "payload": payload_to_json(frame)[:1000]},
        )

    async def subscribe(self, stream_topics: Iterable[str], handler: FrameHandler) -> Subscription:
        """Subscribe ``handler`` to raw frames of ``stream_topics``.

        Returns once the exchange acknowledged the request. Raises
        ``SubscriptionRejectedError``, ``SubscriptionTimeoutError``,
        ``SubscriptionCancelledError`` or ``ConnectionClosedError``; in every
        failure case the subscription never becomes active.
        """
        topic_list = tuple(dict.fromkeys(stream_topics))
        if not topic_list:
            raise ValueError("At least one topic is required")

        await self.connect()
        connection = self._connection
        if connection is None:
            raise ConnectionClosedError(f"Connection to {self._stream_url} is closed")

        request = ControlRequest(id=self._correlator.next_id(), verb=ControlVerb.SUBSCRIBE, topics=topic_list)
        subscription = self._registry.add_pending(topic_list, handler, request.id)
        try:
            ack = await self._correlator.send_and_wait(connection.send, request, self._response_timeout_seconds)
        except BaseException:
            self._registry.remove(subscription)
            raise

        if ack.error is not None:
            self._registry.reject(subscription)
            logger.warning(
                "Subscription rejected",
                extra={"topics": list(topic_list), "code": ack.error.code, "error": ack.error.message},
            )
            raise SubscriptionRejectedError(topic_list, ack.error)

        if not self._registry.activate(subscription):
            raise SubscriptionCancelledError(f"Subscription to {list(topic_list)} was removed before it was confirmed")

        logger.info("Subscription active", extra={"subscription_id": subscription.id, "topics": list(topic_list)})
        return subscription

    async def unsubscribe(self, subscription: Subscription | int) -> bool:
        """Stop delivery for ``subscription`` and ask the exchange to drop its topics.

        Local teardown always happens first, so no frame reaches the handler
        afterwards. Returns ``False`` only when the exchange explicitly
        refused the request; a missing acknowledgement or a closed connection
        still counts as success.
        """
        if isinstance(subscription, int):
            found = self._registry.get(subscription)
            if found is None:
                return True
            subscription = found

        if not self._registry.remove(subscription):
            return True

        connection = self._connection
        if connection is None or not connection.is_open:
            return True

        request = ControlRequest(
            id=self._correlator.next_id(),
            verb=ControlVerb.UNSUBSCRIBE,
            topics=subscription.topics,
        )
        try:
            ack = await self._correlator.send_and_wait(connection.send, request, self._response_timeout_seconds)
        except SubscriptionTimeoutError:
            logger.warning(
                "No acknowledgement for unsubscribe; local subscription removed anyway",
                extra={"subscription_id": subscription.id, "topics": list(subscription.topics)},
            )
            return True
        except ConnectionClosedError:
            return True

        if ack.error is not None:
            logger.warning(
                "Unsubscribe rejected by server",
                extra={"subscription_id": subscription.id, "code": ack.error.code, "error": ack.error.message},
            )
            return False
        logger.info("Unsubscribed", extra={"subscription_id": subscription.id, "topics": list(subscription.topics)})
        return True

    async def unsubscribe_all(self) -> None:
        live = [
            subscription
            for subscription in self._registry.snapshot()
            if subscription.state in (SubscriptionState.PENDING, SubscriptionState.ACTIVE)
        ]
        await asyncio.gather(*(self.unsubscribe(subscription) for subscription in live))

    def _typed_handler(
        self,
        decoder: Callable[..., T],
        on_message: EventCallback[T],
        *,
        pass_stream: bool = False,
    ) -> FrameHandler:
        def handle(frame: dict[str, Any], arrival_time_ms: int) -> None:
            stream = str(frame.get("stream"))
            try:
                data = decoder(frame.get("data"), stream=stream) if pass_stream else decoder(frame.get("data"))
            except DecodeError as exc:
                logger.warning(
                    "Couldn't decode stream payload",
                    extra={"stream": stream, "error": str(exc), "payload": payload_to_json(frame)[:1000]},
                )
                return
            symbol = getattr(data, "symbol", None) or getattr(data, "token_name", None)
            on_message(DataEvent(stream=stream, data=data, arrival_time_ms=arrival_time_ms, symbol=symbol))

        return handle

    async def subscribe_to_kline_updates(
        self,
        symbols: str | Iterable[str],
        intervals: str | Iterable[str],
        on_message: EventCallback[market.KlineUpdate],
    ) -> Subscription:
        return await self.subscribe(
            topics.kline_topics(symbols, intervals),
            self._typed_handler(market.decode_kline, on_message),
        )

    async def subscribe_to_mark_price_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.MarkPriceUpdate],
        *,
        update_interval: int | None = None,
    ) -> Subscription:
        return await self.subscribe(
            topics.mark_price_topics(symbols, update_interval),
            self._typed_handler(market.decode_mark_price, on_message),
        )

    async def subscribe_to_all_mark_price_updates(
        self,
        on_message: EventCallback[tuple[market.MarkPriceUpdate, ...]],
        *,
        update_interval: int | None = None,
    ) -> Subscription:
        return await self.subscribe(
            [topics.all_mark_price_topic(update_interval)],
            self._typed_handler(market.decode_mark_price_list, on_message),
        )

    async def subscribe_to_mini_ticker_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.MiniTicker],
    ) -> Subscription:
        return await self.subscribe(
            topics.market_topics(symbols, topics.MINI_TICKER),
            self._typed_handler(market.decode_mini_ticker, on_message),
        )

    async def subscribe_to_all_mini_ticker_updates(
        self,
        on_message: EventCallback[tuple[market.MiniTicker, ...]],
    ) -> Subscription:
        return await self.subscribe(
            [topics.ALL_MINI_TICKER],
            self._typed_handler(market.decode_mini_ticker_list, on_message),
        )

    async def subscribe_to_ticker_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.Ticker],
    ) -> Subscription:
        return await self.subscribe(
            topics.market_topics(symbols, topics.TICKER),
            self._typed_handler(market.decode_ticker, on_message),
        )

    async def subscribe_to_all_ticker_updates(
        self,
        on_message: EventCallback[tuple[market.Ticker, ...]],
    ) -> Subscription:
        return await self.subscribe(
            [topics.ALL_TICKER],
            self._typed_handler(market.decode_ticker_list, on_message),
        )

    async def subscribe_to_aggregated_trade_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.AggregatedTrade],
    ) -> Subscription:
        return await self.subscribe(
            topics.market_topics(symbols, topics.AGG_TRADE),
            self._typed_handler(market.decode_agg_trade, on_message),
        )

    async def subscribe_to_book_ticker_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.BookTicker],
    ) -> Subscription:
        return await self.subscribe(
            topics.market_topics(symbols, topics.BOOK_TICKER),
            self._typed_handler(market.decode_book_ticker, on_message),
        )

    async def subscribe_to_all_book_ticker_updates(
        self,
        on_message: EventCallback[market.BookTicker],
    ) -> Subscription:
        return await self.subscribe(
            [topics.ALL_BOOK_TICKER],
            self._typed_handler(market.decode_book_ticker, on_message),
        )

    async def subscribe_to_liquidation_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.Liquidation],
    ) -> Subscription:
        return await self.subscribe(
            topics.market_topics(symbols, topics.LIQUIDATION),
            self._typed_handler(market.decode_liquidation, on_message),
        )

    async def subscribe_to_all_liquidation_updates(
        self,
        on_message: EventCallback[market.Liquidation],
    ) -> Subscription:
        return await self.subscribe(
            [topics.ALL_LIQUIDATION],
            self._typed_handler(market.decode_liquidation, on_message),
        )

    async def subscribe_to_partial_order_book_updates(
        self,
        symbols: str | Iterable[str],
        levels: int,
        on_message: EventCallback[market.OrderBookUpdate],
        *,
        update_interval: int | None = None,
    ) -> Subscription:
        return await self.subscribe(
            topics.partial_depth_topics(symbols, levels, update_interval),
            self._typed_handler(market.decode_order_book, on_message, pass_stream=True),
        )

    async def subscribe_to_order_book_updates(
        self,
        symbols: str | Iterable[str],
        on_message: EventCallback[market.OrderBookUpdate],
        *,
        update_interval: int | None = None,
    ) -> Subscription:
        return await self.subscribe(
            topics.diff_depth_topics(symbols, update_interval),
            self._typed_handler(market.decode_order_book, on_message, pass_stream=True),
        )

    async def subscribe_to_composite_index_updates(
        self,
        symbol: str,
        on_message: EventCallback[market.CompositeIndexUpdate],
    ) -> Subscription:
        return await self.subscribe(
            [topics.composite_index_topic(symbol)],
            self._typed_handler(market.decode_composite_index, on_message),
        )

    async def subscribe_to_blvt_info_updates(
        self,
        tokens: str | Iterable[str],
        on_message: EventCallback[market.TokenNavUpdate],
    ) -> Subscription:
        return await self.subscribe(
            topics.token_topics(tokens, topics.TOKEN_NAV),
            self._typed_handler(market.decode_token_nav, on_message),
        )

    async def subscribe_to_blvt_kline_updates(
        self,
        tokens: str | Iterable[str],
        interval: str,
        on_message: EventCallback[market.KlineUpdate],
    ) -> Subscription:
        return await self.subscribe(
            topics.token_nav_kline_topics(tokens, interval),
            self._typed_handler(market.decode_kline, on_message),
        )

    async def subscribe_to_user_data_updates(
        self,
        listen_key: str,
        *,
        on_config_update: EventCallback[ConfigUpdateEvent] | None = None,
        on_margin_update: EventCallback[MarginCallEvent] | None = None,
        on_account_update: EventCallback[AccountUpdateEvent] | None = None,
        on_order_update: EventCallback[OrderUpdateEvent] | None = None,
        on_listen_key_expired: EventCallback[ListenKeyExpiredEvent] | None = None,
    ) -> Subscription:
        if not listen_key:
            raise ValueError("listen_key must not be empty")
        dispatcher = UserDataDispatcher(
            listen_key,
            on_config_update=on_config_update,
            on_margin_update=on_margin_update,
            on_account_update=on_account_update,
            on_order_update=on_order_update,
            on_listen_key_expired=on_listen_key_expired,
        )
        subscription = await self.subscribe([listen_key], dispatcher)
        dispatcher.mark_subscribed()
        return subscription
