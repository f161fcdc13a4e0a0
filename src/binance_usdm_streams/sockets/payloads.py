from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from binance_usdm_streams.core.errors import DecodeError

T = TypeVar("T")


def now_ms() -> int:
    return int(datetime.now(tz=UTC).timestamp() * 1000)


@dataclass(frozen=True, slots=True)
class DataEvent(Generic[T]):
    stream: str
    data: T
    arrival_time_ms: int
    symbol: str | None = None


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return int(normalized)
        except ValueError:
            try:
                return int(float(normalized))
            except ValueError:
                return None
    return None


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return float(normalized)
        except ValueError:
            return None
    return None


def payload_to_json(payload: Any) -> str:
    try:
        return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(payload)


def require_object(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"{name} must be a JSON object, got {type(value).__name__}")
    return value


def require_list(value: Any, name: str) -> list[Any]:
    if not isinstance(value, list):
        raise DecodeError(f"{name} must be a JSON array, got {type(value).__name__}")
    return value


def req_int(payload: dict[str, Any], key: str) -> int:
    value = _coerce_int(payload.get(key))
    if value is None:
        raise DecodeError(f"field {key!r} missing or not an integer")
    return value


def req_float(payload: dict[str, Any], key: str) -> float:
    value = _coerce_float(payload.get(key))
    if value is None:
        raise DecodeError(f"field {key!r} missing or not a number")
    return value


def req_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"field {key!r} missing or not a string")
    return value


def opt_int(payload: dict[str, Any], key: str) -> int | None:
    return _coerce_int(payload.get(key))


def opt_float(payload: dict[str, Any], key: str) -> float | None:
    return _coerce_float(payload.get(key))


def opt_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def opt_bool(payload: dict[str, Any], key: str) -> bool | None:
    value = payload.get(key)
    return value if isinstance(value, bool) else None


def parse_levels(value: Any, name: str) -> tuple[tuple[float, float], ...]:
    levels: list[tuple[float, float]] = []
    for level in require_list(value, name):
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            raise DecodeError(f"{name} level must be a [price, quantity] pair")
        price = _coerce_float(level[0])
        quantity = _coerce_float(level[1])
        if price is None or quantity is None:
            raise DecodeError(f"{name} level has a non-numeric price or quantity")
        levels.append((price, quantity))
    return tuple(levels)
