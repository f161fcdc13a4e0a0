from __future__ import annotations

from typing import Any

import pytest

from binance_usdm_streams.core.errors import DuplicateTopicError
from binance_usdm_streams.sockets.registry import SubscriptionRegistry, SubscriptionState
from binance_usdm_streams.sockets.router import StreamRouter


def _recorder() -> tuple[list[tuple[str, int]], Any]:
    seen: list[tuple[str, int]] = []

    def handler(frame: dict[str, Any], arrival_time_ms: int) -> None:
        seen.append((frame["stream"], arrival_time_ms))

    return seen, handler


def test_frames_reach_only_the_owning_active_subscription() -> None:
    registry = SubscriptionRegistry()
    router = StreamRouter(registry)
    btc_seen, btc_handler = _recorder()
    eth_seen, eth_handler = _recorder()

    btc = registry.add_pending(["btcusdt@aggTrade", "btcusdt@bookTicker"], btc_handler, request_id=1)
    eth = registry.add_pending(["ethusdt@aggTrade"], eth_handler, request_id=2)
    assert registry.activate(btc) is True
    assert registry.activate(eth) is True

    assert router.route({"stream": "btcusdt@bookTicker", "data": {}}, 10) is True
    assert router.route({"stream": "ethusdt@aggTrade", "data": {}}, 11) is True
    assert router.route({"stream": "solusdt@aggTrade", "data": {}}, 12) is False
    assert router.route({"result": None, "id": 3}, 13) is False

    assert btc_seen == [("btcusdt@bookTicker", 10)]
    assert eth_seen == [("ethusdt@aggTrade", 11)]


def test_pending_and_removed_subscriptions_receive_nothing() -> None:
    registry = SubscriptionRegistry()
    router = StreamRouter(registry)
    seen, handler = _recorder()

    subscription = registry.add_pending(["btcusdt@markPrice"], handler, request_id=1)
    assert router.route({"stream": "btcusdt@markPrice", "data": {}}, 1) is False

    assert registry.remove(subscription) is True
    assert registry.activate(subscription) is False
    assert subscription.state is SubscriptionState.REMOVED
    assert router.route({"stream": "btcusdt@markPrice", "data": {}}, 2) is False
    assert registry.remove(subscription) is False
    assert seen == []
    assert len(registry) == 0


def test_duplicate_topic_is_rejected_until_released() -> None:
    registry = SubscriptionRegistry()
    _, handler = _recorder()

    first = registry.add_pending(["btcusdt@depth", "btcusdt@depth"], handler, request_id=1)
    assert first.topics == ("btcusdt@depth",)

    with pytest.raises(DuplicateTopicError) as exc_info:
        registry.add_pending(["ethusdt@depth", "btcusdt@depth"], handler, request_id=2)
    assert exc_info.value.topics == ("btcusdt@depth",)
    assert len(registry) == 1

    registry.reject(first)
    assert first.state is SubscriptionState.REJECTED
    second = registry.add_pending(["btcusdt@depth"], handler, request_id=3)
    assert second.id != first.id


def test_empty_topic_list_is_rejected() -> None:
    registry = SubscriptionRegistry()
    _, handler = _recorder()

    with pytest.raises(ValueError):
        registry.add_pending([], handler, request_id=1)


def test_failing_handler_does_not_stop_routing() -> None:
    registry = SubscriptionRegistry()
    router = StreamRouter(registry)
    seen, good_handler = _recorder()
    calls = 0

    def bad_handler(frame: dict[str, Any], arrival_time_ms: int) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("handler bug")

    registry.activate(registry.add_pending(["btcusdt@ticker"], bad_handler, request_id=1))
    registry.activate(registry.add_pending(["ethusdt@ticker"], good_handler, request_id=2))

    assert router.route({"stream": "btcusdt@ticker", "data": {}}, 1) is True
    assert router.route({"stream": "ethusdt@ticker", "data": {}}, 2) is True
    assert router.route({"stream": "btcusdt@ticker", "data": {}}, 3) is True

    assert calls == 2
    assert seen == [("ethusdt@ticker", 2)]


def test_snapshot_filters_by_state() -> None:
    registry = SubscriptionRegistry()
    _, handler = _recorder()

    active = registry.add_pending(["a@aggTrade"], handler, request_id=1)
    registry.activate(active)
    pending = registry.add_pending(["b@aggTrade"], handler, request_id=2)

    assert registry.snapshot(SubscriptionState.ACTIVE) == (active,)
    assert registry.snapshot(SubscriptionState.PENDING) == (pending,)
    assert registry.get(active.id) is active
