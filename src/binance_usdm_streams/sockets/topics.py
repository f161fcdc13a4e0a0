from __future__ import annotations

from collections.abc import Iterable
from typing import Final

KLINE_INTERVALS: Final[frozenset[str]] = frozenset(
    {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M"}
)

KLINE = "@kline"
MARK_PRICE = "@markPrice"
ALL_MARK_PRICE = "!markPrice@arr"
MINI_TICKER = "@miniTicker"
ALL_MINI_TICKER = "!miniTicker@arr"
TICKER = "@ticker"
ALL_TICKER = "!ticker@arr"
COMPOSITE_INDEX = "@compositeIndex"
AGG_TRADE = "@aggTrade"
BOOK_TICKER = "@bookTicker"
ALL_BOOK_TICKER = "!bookTicker"
LIQUIDATION = "@forceOrder"
ALL_LIQUIDATION = "!forceOrder@arr"
DEPTH = "@depth"
TOKEN_NAV = "@tokenNav"
TOKEN_NAV_KLINE = "@nav_kline"


def _symbols(symbols: str | Iterable[str], name: str = "symbols") -> list[str]:
    values = [symbols] if isinstance(symbols, str) else list(symbols)
    if not values:
        raise ValueError(f"{name} must not be empty")
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{name} must be non-empty strings")
    return [value.strip() for value in values]


def _validate_interval(interval: str) -> str:
    if interval not in KLINE_INTERVALS:
        raise ValueError(f"Unsupported kline interval {interval!r}")
    return interval


def _validate_choice(value: int | None, name: str, allowed: tuple[int, ...]) -> None:
    if value is not None and value not in allowed:
        raise ValueError(f"{name} must be one of {allowed}, got {value}")


def market_topics(symbols: str | Iterable[str], suffix: str) -> list[str]:
    return [symbol.lower() + suffix for symbol in _symbols(symbols)]


def kline_topics(symbols: str | Iterable[str], intervals: str | Iterable[str]) -> list[str]:
    interval_list = [intervals] if isinstance(intervals, str) else list(intervals)
    if not interval_list:
        raise ValueError("intervals must not be empty")
    checked = [_validate_interval(interval) for interval in interval_list]
    return [f"{symbol.lower()}{KLINE}_{interval}" for symbol in _symbols(symbols) for interval in checked]


def mark_price_topics(symbols: str | Iterable[str], update_interval: int | None = None) -> list[str]:
    _validate_choice(update_interval, "update_interval", (1000, 3000))
    suffix = MARK_PRICE + ("@1s" if update_interval == 1000 else "")
    return market_topics(symbols, suffix)


def all_mark_price_topic(update_interval: int | None = None) -> str:
    _validate_choice(update_interval, "update_interval", (1000, 3000))
    return ALL_MARK_PRICE + ("@1s" if update_interval == 1000 else "")


def partial_depth_topics(symbols: str | Iterable[str], levels: int, update_interval: int | None = None) -> list[str]:
    _validate_choice(levels, "levels", (5, 10, 20))
    _validate_choice(update_interval, "update_interval", (100, 250, 500))
    suffix = f"{DEPTH}{levels}" + (f"@{update_interval}ms" if update_interval is not None else "")
    return market_topics(symbols, suffix)


def diff_depth_topics(symbols: str | Iterable[str], update_interval: int | None = None) -> list[str]:
    _validate_choice(update_interval, "update_interval", (100, 250, 500))
    suffix = DEPTH + (f"@{update_interval}ms" if update_interval is not None else "")
    return market_topics(symbols, suffix)


def composite_index_topic(symbol: str) -> str:
    # composite index symbols are used exactly as given
    return _symbols(symbol, "symbol")[0] + COMPOSITE_INDEX


def token_topics(tokens: str | Iterable[str], suffix: str) -> list[str]:
    return [token.upper() + suffix for token in _symbols(tokens, "tokens")]


def token_nav_kline_topics(tokens: str | Iterable[str], interval: str) -> list[str]:
    return token_topics(tokens, f"{TOKEN_NAV_KLINE}_{_validate_interval(interval)}")
