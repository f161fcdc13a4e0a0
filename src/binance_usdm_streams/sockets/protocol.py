from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from binance_usdm_streams.core.errors import DecodeError, ServerError


class ControlVerb(StrEnum):
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"


@dataclass(frozen=True, slots=True)
class ControlRequest:
    id: int
    verb: ControlVerb
    topics: tuple[str, ...]

    def to_frame(self) -> dict[str, Any]:
        return {"method": self.verb.value, "params": list(self.topics), "id": self.id}

    def encode(self) -> str:
        return json.dumps(self.to_frame(), separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class ControlAck:
    request_id: int
    error: ServerError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def decode_frame(raw: str | bytes) -> Any:
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        return json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise DecodeError(f"Inbound frame is not valid JSON: {exc}") from exc


def frame_request_id(frame: Any) -> int | None:
    if not isinstance(frame, dict):
        return None
    raw = frame.get("id")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_ack(frame: dict[str, Any], request_id: int) -> ControlAck:
    """Interpret a reply frame already known to carry ``request_id``."""
    if "result" in frame:
        result = frame["result"]
        if result is None:
            return ControlAck(request_id=request_id)
        return ControlAck(request_id=request_id, error=ServerError.from_payload(result))
    if "error" in frame:
        return ControlAck(request_id=request_id, error=ServerError.from_payload(frame["error"]))
    return ControlAck(request_id=request_id, error=ServerError(None, f"Unknown error: {frame}"))


def frame_stream(frame: Any) -> str | None:
    if not isinstance(frame, dict):
        return None
    stream = frame.get("stream")
    return stream if isinstance(stream, str) else None
