from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from binance_usdm_streams.core.errors import (
    ConnectionClosedError,
    DuplicateTopicError,
    SubscriptionCancelledError,
    SubscriptionRejectedError,
    SubscriptionTimeoutError,
)
from binance_usdm_streams.sockets.client import BinanceUsdFuturesSocketClient
from binance_usdm_streams.sockets.market import AggregatedTrade, KlineUpdate
from binance_usdm_streams.sockets.payloads import DataEvent
from binance_usdm_streams.sockets.registry import SubscriptionState
from binance_usdm_streams.sockets.user_data import AccountChannelState

KLINE_DATA = {
    "e": "kline",
    "E": 1638747660000,
    "s": "BTCUSDT",
    "k": {
        "t": 1638747660000,
        "T": 1638747719999,
        "s": "BTCUSDT",
        "i": "1m",
        "o": "43000.1",
        "c": "43010.2",
        "h": "43020.0",
        "l": "42990.0",
        "v": "12.5",
        "n": 42,
        "x": True,
    },
}

AGG_TRADE_DATA = {
    "e": "aggTrade",
    "E": 123456789,
    "s": "BTCUSDT",
    "a": 5933014,
    "p": "43000.10",
    "q": "0.010",
    "f": 100,
    "l": 105,
    "T": 123456785,
    "m": True,
}


class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.urls: list[str] = []
        self._inbox: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, message: str) -> None:
        if not self._open:
            raise ConnectionClosedError("fake connection closed")
        self.sent.append(json.loads(message))

    async def recv(self) -> str | bytes:
        item = await self._inbox.get()
        if item is None:
            self._open = False
            raise ConnectionClosedError("fake connection closed")
        return item

    async def close(self) -> None:
        if self._open:
            self._open = False
            self._inbox.put_nowait(None)

    def feed(self, frame: Any) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def feed_raw(self, raw: bytes) -> None:
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        self._inbox.put_nowait(None)


def _client(connection: FakeConnection, timeout_seconds: float = 1.0) -> BinanceUsdFuturesSocketClient:
    async def factory(url: str) -> FakeConnection:
        connection.urls.append(url)
        return connection

    return BinanceUsdFuturesSocketClient(
        "wss://fstream.binance.com/",
        response_timeout_seconds=timeout_seconds,
        connection_factory=factory,
    )


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _wait_for_sent(connection: FakeConnection, count: int) -> None:
    for _ in range(200):
        if len(connection.sent) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} control frames, saw {connection.sent}")


def test_kline_subscription_end_to_end() -> None:
    received: list[DataEvent[KlineUpdate]] = []

    async def scenario() -> FakeConnection:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe_to_kline_updates("BTCUSDT", "1m", received.append))
        await _wait_for_sent(connection, 1)
        assert connection.sent[0] == {"method": "SUBSCRIBE", "params": ["btcusdt@kline_1m"], "id": 1}

        connection.feed({"result": None, "id": 1})
        subscription = await task
        assert subscription.state is SubscriptionState.ACTIVE

        connection.feed({"stream": "btcusdt@kline_1m", "data": KLINE_DATA})
        await _settle()
        await client.close()
        return connection

    connection = asyncio.run(scenario())

    assert connection.urls == ["wss://fstream.binance.com/stream"]
    assert len(received) == 1
    event = received[0]
    assert event.stream == "btcusdt@kline_1m"
    assert event.symbol == "BTCUSDT"
    assert event.data.kline.close == pytest.approx(43010.2)
    assert event.data.kline.is_final is True
    assert event.arrival_time_ms > 0


def test_disjoint_subscriptions_share_one_connection() -> None:
    btc: list[DataEvent[AggregatedTrade]] = []
    eth: list[DataEvent[AggregatedTrade]] = []

    async def scenario() -> FakeConnection:
        connection = FakeConnection()
        client = _client(connection)

        first = asyncio.create_task(client.subscribe_to_aggregated_trade_updates("BTCUSDT", btc.append))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        await first

        second = asyncio.create_task(client.subscribe_to_aggregated_trade_updates("ETHUSDT", eth.append))
        await _wait_for_sent(connection, 2)
        connection.feed({"result": None, "id": 2})
        await second

        connection.feed({"stream": "ethusdt@aggTrade", "data": {**AGG_TRADE_DATA, "s": "ETHUSDT"}})
        connection.feed({"stream": "btcusdt@aggTrade", "data": AGG_TRADE_DATA})
        connection.feed({"stream": "btcusdt@aggTrade", "data": {**AGG_TRADE_DATA, "a": 5933015}})
        await _settle()
        await client.close()
        return connection

    connection = asyncio.run(scenario())

    assert len(connection.urls) == 1
    assert [event.data.agg_trade_id for event in btc] == [5933014, 5933015]
    assert [event.symbol for event in eth] == ["ETHUSDT"]


def test_unsubscribe_before_ack_cancels_subscription() -> None:
    calls: list[dict[str, Any]] = []

    async def scenario() -> tuple[FakeConnection, bool]:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe(["btcusdt@aggTrade"], lambda frame, arrival: calls.append(frame)))
        await _wait_for_sent(connection, 1)

        (pending,) = client.registry.snapshot()
        assert pending.state is SubscriptionState.PENDING
        unsubscribe = asyncio.create_task(client.unsubscribe(pending))
        await _wait_for_sent(connection, 2)
        assert connection.sent[1] == {"method": "UNSUBSCRIBE", "params": ["btcusdt@aggTrade"], "id": 2}

        connection.feed({"result": None, "id": 1})
        connection.feed({"stream": "btcusdt@aggTrade", "data": AGG_TRADE_DATA})
        connection.feed({"result": None, "id": 2})

        with pytest.raises(SubscriptionCancelledError):
            await task
        result = await unsubscribe
        await client.close()
        return connection, result

    connection, result = asyncio.run(scenario())

    assert result is True
    assert calls == []
    assert len(connection.sent) == 2


def test_rejected_subscription_never_activates() -> None:
    async def scenario() -> tuple[SubscriptionRejectedError, int]:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe(["btcusdt@nope"], lambda frame, arrival: None))
        await _wait_for_sent(connection, 1)
        connection.feed({"error": {"code": 2, "msg": "Invalid request: unknown stream"}, "id": 1})
        try:
            await task
        except SubscriptionRejectedError as exc:
            error = exc
        else:
            raise AssertionError("subscription should have been rejected")
        remaining = len(client.registry)
        await client.close()
        return error, remaining

    error, remaining = asyncio.run(scenario())

    assert error.topics == ("btcusdt@nope",)
    assert error.error.code == 2
    assert remaining == 0


def test_missing_ack_times_out_and_releases_topic() -> None:
    async def scenario() -> BinanceUsdFuturesSocketClient:
        connection = FakeConnection()
        client = _client(connection, timeout_seconds=0.05)
        with pytest.raises(SubscriptionTimeoutError):
            await client.subscribe(["btcusdt@bookTicker"], lambda frame, arrival: None)
        await client.close()
        return client

    client = asyncio.run(scenario())

    assert len(client.registry) == 0


def test_cancelled_subscribe_sends_no_teardown() -> None:
    calls: list[dict[str, Any]] = []

    async def scenario() -> FakeConnection:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe(["btcusdt@markPrice"], lambda frame, arrival: calls.append(frame)))
        await _wait_for_sent(connection, 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(client.registry) == 0

        # late acknowledgement and data for the cancelled request are ignored
        connection.feed({"result": None, "id": 1})
        connection.feed({"stream": "btcusdt@markPrice", "data": {"e": "markPriceUpdate"}})
        await _settle()
        await client.close()
        return connection

    connection = asyncio.run(scenario())

    assert len(connection.sent) == 1
    assert calls == []


def test_duplicate_topic_fails_without_sending() -> None:
    async def scenario() -> FakeConnection:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe(["btcusdt@depth"], lambda frame, arrival: None))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        await task

        with pytest.raises(DuplicateTopicError):
            await client.subscribe(["btcusdt@depth"], lambda frame, arrival: None)
        await client.close()
        return connection

    connection = asyncio.run(scenario())

    assert len(connection.sent) == 1


def test_connection_loss_fails_pending_and_clears_registry() -> None:
    async def scenario() -> tuple[FakeConnection, BinanceUsdFuturesSocketClient, bool]:
        connection = FakeConnection()
        client = _client(connection)

        active = asyncio.create_task(client.subscribe(["btcusdt@ticker"], lambda frame, arrival: None))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        subscription = await active

        pending = asyncio.create_task(client.subscribe(["ethusdt@ticker"], lambda frame, arrival: None))
        await _wait_for_sent(connection, 2)
        connection.drop()
        with pytest.raises(ConnectionClosedError):
            await pending

        result = await client.unsubscribe(subscription)
        await client.close()
        return connection, client, result

    connection, client, result = asyncio.run(scenario())

    assert result is True
    assert len(connection.sent) == 2
    assert len(client.registry) == 0


def test_unsubscribe_sends_frame_and_stops_delivery() -> None:
    calls: list[dict[str, Any]] = []

    async def scenario() -> tuple[FakeConnection, bool]:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe(["btcusdt@aggTrade"], lambda frame, arrival: calls.append(frame)))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        subscription = await task

        unsubscribe = asyncio.create_task(client.unsubscribe(subscription.id))
        await _wait_for_sent(connection, 2)
        connection.feed({"stream": "btcusdt@aggTrade", "data": AGG_TRADE_DATA})
        connection.feed({"result": None, "id": 2})
        result = await unsubscribe
        await client.close()
        return connection, result

    connection, result = asyncio.run(scenario())

    assert result is True
    assert connection.sent[1] == {"method": "UNSUBSCRIBE", "params": ["btcusdt@aggTrade"], "id": 2}
    assert calls == []


def test_rejected_unsubscribe_reports_failure_but_tears_down_locally() -> None:
    async def scenario() -> tuple[bool, int]:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe(["btcusdt@aggTrade"], lambda frame, arrival: None))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        subscription = await task

        unsubscribe = asyncio.create_task(client.unsubscribe(subscription))
        await _wait_for_sent(connection, 2)
        connection.feed({"error": {"code": 3, "msg": "Invalid JSON"}, "id": 2})
        result = await unsubscribe
        remaining = len(client.registry)
        await client.close()
        return result, remaining

    result, remaining = asyncio.run(scenario())

    assert result is False
    assert remaining == 0


def test_malformed_frames_do_not_stop_the_read_loop() -> None:
    received: list[DataEvent[AggregatedTrade]] = []

    async def scenario() -> tuple[bool, int]:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe_to_aggregated_trade_updates("BTCUSDT", received.append))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        await task

        connection.feed("{definitely not json")
        connection.feed_raw(b"\xff\xfe{}")
        connection.feed('{"id": 1e999, "result": null}')
        connection.feed({"stream": "btcusdt@aggTrade", "data": {"e": "aggTrade", "s": "BTCUSDT"}})
        connection.feed({"stream": "unknown@stream", "data": {}})
        connection.feed({"stream": "btcusdt@aggTrade", "data": AGG_TRADE_DATA})
        await _settle()
        state = (client.is_connected, len(client.registry))
        await client.close()
        return state

    is_connected, registered = asyncio.run(scenario())

    assert len(received) == 1
    assert received[0].data.price == pytest.approx(43000.10)
    assert is_connected is True
    assert registered == 1


def test_handler_failure_does_not_stop_the_read_loop() -> None:
    received: list[DataEvent[AggregatedTrade]] = []

    def flaky(event: DataEvent[AggregatedTrade]) -> None:
        received.append(event)
        if len(received) == 1:
            raise RuntimeError("handler bug")

    async def scenario() -> None:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(client.subscribe_to_aggregated_trade_updates("BTCUSDT", flaky))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        await task

        connection.feed({"stream": "btcusdt@aggTrade", "data": AGG_TRADE_DATA})
        connection.feed({"stream": "btcusdt@aggTrade", "data": {**AGG_TRADE_DATA, "a": 5933015}})
        await _settle()
        await client.close()

    asyncio.run(scenario())

    assert [event.data.agg_trade_id for event in received] == [5933014, 5933015]


def test_unsubscribe_without_ack_still_tears_down_locally() -> None:
    calls: list[dict[str, Any]] = []

    async def scenario() -> tuple[FakeConnection, bool, int]:
        connection = FakeConnection()
        client = _client(connection, timeout_seconds=0.05)
        task = asyncio.create_task(client.subscribe(["btcusdt@aggTrade"], lambda frame, arrival: calls.append(frame)))
        await _wait_for_sent(connection, 1)
        connection.feed({"result": None, "id": 1})
        subscription = await task

        result = await client.unsubscribe(subscription)
        connection.feed({"stream": "btcusdt@aggTrade", "data": AGG_TRADE_DATA})
        await _settle()
        remaining = len(client.registry)
        await client.close()
        return connection, result, remaining

    connection, result, remaining = asyncio.run(scenario())

    assert result is True
    assert remaining == 0
    assert connection.sent[1] == {"method": "UNSUBSCRIBE", "params": ["btcusdt@aggTrade"], "id": 2}
    assert calls == []


def test_user_data_subscription_dispatches_account_events() -> None:
    margin_calls: list[DataEvent[Any]] = []
    order_updates: list[DataEvent[Any]] = []
    listen_key = "listen-key-123"

    async def scenario() -> AccountChannelState:
        connection = FakeConnection()
        client = _client(connection)
        task = asyncio.create_task(
            client.subscribe_to_user_data_updates(
                listen_key,
                on_margin_update=margin_calls.append,
                on_order_update=order_updates.append,
            )
        )
        await _wait_for_sent(connection, 1)
        assert connection.sent[0]["params"] == [listen_key]
        connection.feed({"result": None, "id": 1})
        subscription = await task

        connection.feed(
            {
                "stream": listen_key,
                "data": {"e": "MARGIN_CALL", "E": 1, "cw": "3.1", "p": []},
            }
        )
        connection.feed({"stream": listen_key, "data": {"e": "listenKeyExpired", "E": 2}})
        await _settle()
        state = subscription.handler.state
        await client.close()
        return state

    state = asyncio.run(scenario())

    assert len(margin_calls) == 1
    assert order_updates == []
    assert state is AccountChannelState.EXPIRED


def test_subscribe_requires_topics() -> None:
    async def scenario() -> None:
        client = _client(FakeConnection())
        await client.subscribe([], lambda frame, arrival: None)

    with pytest.raises(ValueError):
        asyncio.run(scenario())
