from __future__ import annotations

from typing import Any


class BinanceStreamsError(Exception):
    """Base class for every error raised by this package."""


class ServerError(BinanceStreamsError):
    """Structured failure reported by the exchange: an error code plus a message."""

    def __init__(self, code: int | None, message: str) -> None:
        super().__init__(f"[{code}] {message}" if code is not None else message)
        self.code = code
        self.message = message

    @classmethod
    def from_payload(cls, payload: Any) -> ServerError:
        if isinstance(payload, dict) and "msg" in payload:
            raw_code = payload.get("code")
            try:
                code = int(raw_code) if raw_code is not None else None
            except (TypeError, ValueError):
                code = None
            return cls(code, str(payload["msg"]))
        return cls(None, f"Unknown error: {payload}")


class BinanceAPIError(ServerError):
    """REST call rejected by the exchange."""

    def __init__(self, code: int | None, message: str, *, status_code: int) -> None:
        super().__init__(code, message)
        self.status_code = status_code


class ConnectionClosedError(BinanceStreamsError):
    """The shared socket connection is gone."""


class SubscriptionError(BinanceStreamsError):
    pass


class SubscriptionRejectedError(SubscriptionError):
    def __init__(self, topics: tuple[str, ...], error: ServerError) -> None:
        super().__init__(f"Subscription to {list(topics)} rejected: {error}")
        self.topics = topics
        self.error = error


class SubscriptionTimeoutError(SubscriptionError, TimeoutError):
    def __init__(self, request_id: int, timeout_seconds: float) -> None:
        super().__init__(f"No acknowledgement for control request {request_id} within {timeout_seconds}s")
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds


class SubscriptionCancelledError(SubscriptionError):
    """The subscription was removed locally before its acknowledgement arrived."""


class DuplicateTopicError(SubscriptionError, ValueError):
    def __init__(self, topics: tuple[str, ...]) -> None:
        super().__init__(f"Topics already subscribed: {list(topics)}")
        self.topics = topics


class DecodeError(BinanceStreamsError, ValueError):
    """A single inbound payload could not be decoded."""
