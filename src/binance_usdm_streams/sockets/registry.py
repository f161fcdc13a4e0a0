from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from binance_usdm_streams.core.errors import DuplicateTopicError

FrameHandler = Callable[[dict[str, Any], int], None]


class SubscriptionState(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    REMOVED = "removed"


@dataclass(eq=False, slots=True)
class Subscription:
    id: int
    topics: tuple[str, ...]
    handler: FrameHandler = field(repr=False)
    request_id: int
    state: SubscriptionState = SubscriptionState.PENDING

    @property
    def is_active(self) -> bool:
        return self.state is SubscriptionState.ACTIVE


class SubscriptionRegistry:
    """Live subscriptions and the topic index used for routing.

    A topic belongs to at most one pending or active subscription at a time.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        self._by_topic: dict[str, Subscription] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def add_pending(self, topics: Iterable[str], handler: FrameHandler, request_id: int) -> Subscription:
        topic_list = tuple(dict.fromkeys(topics))
        if not topic_list:
            raise ValueError("A subscription needs at least one topic")

        with self._lock:
            taken = tuple(topic for topic in topic_list if topic in self._by_topic)
            if taken:
                raise DuplicateTopicError(taken)
            subscription = Subscription(
                id=next(self._ids),
                topics=topic_list,
                handler=handler,
                request_id=request_id,
            )
            self._subscriptions[subscription.id] = subscription
            for topic in topic_list:
                self._by_topic[topic] = subscription
        return subscription

    def activate(self, subscription: Subscription) -> bool:
        """Promote a pending subscription; ``False`` if it was removed meanwhile."""
        with self._lock:
            if subscription.state is not SubscriptionState.PENDING:
                return False
            if self._subscriptions.get(subscription.id) is not subscription:
                return False
            subscription.state = SubscriptionState.ACTIVE
            return True

    def reject(self, subscription: Subscription) -> None:
        with self._lock:
            self._drop(subscription)
            if subscription.state is SubscriptionState.PENDING:
                subscription.state = SubscriptionState.REJECTED

    def remove(self, subscription: Subscription) -> bool:
        """Detach ``subscription`` so no further frames reach its handler."""
        with self._lock:
            present = self._drop(subscription)
            subscription.state = SubscriptionState.REMOVED
            return present

    def get(self, subscription_id: int) -> Subscription | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def match(self, stream: str) -> Subscription | None:
        with self._lock:
            subscription = self._by_topic.get(stream)
            if subscription is None or not subscription.is_active:
                return None
            return subscription

    def snapshot(self, state: SubscriptionState | None = None) -> tuple[Subscription, ...]:
        with self._lock:
            return tuple(
                subscription
                for subscription in self._subscriptions.values()
                if state is None or subscription.state is state
            )

    def _drop(self, subscription: Subscription) -> bool:
        if self._subscriptions.get(subscription.id) is not subscription:
            return False
        del self._subscriptions[subscription.id]
        for topic in subscription.topics:
            if self._by_topic.get(topic) is subscription:
                del self._by_topic[topic]
        return True
