from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from binance_usdm_streams.core.errors import DecodeError
from binance_usdm_streams.sockets.payloads import (
    opt_bool,
    opt_float,
    opt_int,
    opt_str,
    parse_levels,
    req_float,
    req_int,
    req_str,
    require_list,
    require_object,
)


@dataclass(frozen=True, slots=True)
class Kline:
    open_time: int
    close_time: int
    symbol: str
    interval: str
    first_trade_id: int | None
    last_trade_id: int | None
    open: float
    close: float
    high: float
    low: float
    volume: float
    trade_count: int
    is_final: bool
    quote_volume: float | None
    taker_buy_base_volume: float | None
    taker_buy_quote_volume: float | None


@dataclass(frozen=True, slots=True)
class KlineUpdate:
    event_time: int
    symbol: str
    kline: Kline


@dataclass(frozen=True, slots=True)
class MarkPriceUpdate:
    event_time: int
    symbol: str
    mark_price: float
    index_price: float | None
    estimated_settle_price: float | None
    funding_rate: float | None
    next_funding_time: int | None


@dataclass(frozen=True, slots=True)
class MiniTicker:
    event_time: int
    symbol: str
    close_price: float
    open_price: float
    high_price: float
    low_price: float
    base_volume: float
    quote_volume: float


@dataclass(frozen=True, slots=True)
class Ticker:
    event_time: int
    symbol: str
    price_change: float
    price_change_percent: float
    weighted_average_price: float
    last_price: float
    last_quantity: float
    open_price: float
    high_price: float
    low_price: float
    base_volume: float
    quote_volume: float
    open_time: int
    close_time: int
    first_trade_id: int | None
    last_trade_id: int | None
    trade_count: int


@dataclass(frozen=True, slots=True)
class AggregatedTrade:
    event_time: int
    symbol: str
    agg_trade_id: int
    price: float
    quantity: float
    first_trade_id: int
    last_trade_id: int
    trade_time: int
    is_buyer_maker: bool


@dataclass(frozen=True, slots=True)
class BookTicker:
    update_id: int
    event_time: int | None
    transaction_time: int | None
    symbol: str
    best_bid_price: float
    best_bid_quantity: float
    best_ask_price: float
    best_ask_quantity: float


@dataclass(frozen=True, slots=True)
class Liquidation:
    event_time: int
    symbol: str
    side: str
    order_type: str | None
    time_in_force: str | None
    quantity: float
    price: float
    average_price: float | None
    status: str | None
    last_filled_quantity: float | None
    filled_quantity: float | None
    trade_time: int | None


@dataclass(frozen=True, slots=True)
class OrderBookUpdate:
    event_time: int
    transaction_time: int | None
    symbol: str
    first_update_id: int | None
    last_update_id: int
    previous_last_update_id: int | None
    bids: tuple[tuple[float, float], ...]
    asks: tuple[tuple[float, float], ...]


@dataclass(frozen=True, slots=True)
class CompositeIndexComponent:
    base_asset: str
    quote_asset: str | None
    weight_in_quantity: float | None
    weight_in_percentage: float | None
    index_price: float | None


@dataclass(frozen=True, slots=True)
class CompositeIndexUpdate:
    event_time: int
    symbol: str
    price: float
    components: tuple[CompositeIndexComponent, ...]


@dataclass(frozen=True, slots=True)
class TokenNavUpdate:
    event_time: int
    token_name: str
    tokens_issued: float | None
    baskets: tuple[tuple[str, float], ...]
    nav: float
    real_leverage: float | None
    target_leverage: float | None
    funding_ratio: float | None


def decode_kline(payload: Any) -> KlineUpdate:
    data = require_object(payload, "kline payload")
    raw = require_object(data.get("k"), "kline body")
    kline = Kline(
        open_time=req_int(raw, "t"),
        close_time=req_int(raw, "T"),
        symbol=req_str(raw, "s"),
        interval=req_str(raw, "i"),
        first_trade_id=opt_int(raw, "f"),
        last_trade_id=opt_int(raw, "L"),
        open=req_float(raw, "o"),
        close=req_float(raw, "c"),
        high=req_float(raw, "h"),
        low=req_float(raw, "l"),
        volume=req_float(raw, "v"),
        trade_count=opt_int(raw, "n") or 0,
        is_final=bool(opt_bool(raw, "x")),
        quote_volume=opt_float(raw, "q"),
        taker_buy_base_volume=opt_float(raw, "V"),
        taker_buy_quote_volume=opt_float(raw, "Q"),
    )
    return KlineUpdate(event_time=req_int(data, "E"), symbol=opt_str(data, "s") or kline.symbol, kline=kline)


def decode_mark_price(payload: Any) -> MarkPriceUpdate:
    data = require_object(payload, "mark price payload")
    return MarkPriceUpdate(
        event_time=req_int(data, "E"),
        symbol=req_str(data, "s"),
        mark_price=req_float(data, "p"),
        index_price=opt_float(data, "i"),
        estimated_settle_price=opt_float(data, "P"),
        funding_rate=opt_float(data, "r"),
        next_funding_time=opt_int(data, "T"),
    )


def decode_mark_price_list(payload: Any) -> tuple[MarkPriceUpdate, ...]:
    return tuple(decode_mark_price(item) for item in require_list(payload, "mark price array"))


def decode_mini_ticker(payload: Any) -> MiniTicker:
    data = require_object(payload, "mini ticker payload")
    return MiniTicker(
        event_time=req_int(data, "E"),
        symbol=req_str(data, "s"),
        close_price=req_float(data, "c"),
        open_price=req_float(data, "o"),
        high_price=req_float(data, "h"),
        low_price=req_float(data, "l"),
        base_volume=req_float(data, "v"),
        quote_volume=req_float(data, "q"),
    )


def decode_mini_ticker_list(payload: Any) -> tuple[MiniTicker, ...]:
    return tuple(decode_mini_ticker(item) for item in require_list(payload, "mini ticker array"))


def decode_ticker(payload: Any) -> Ticker:
    data = require_object(payload, "ticker payload")
    return Ticker(
        event_time=req_int(data, "E"),
        symbol=req_str(data, "s"),
        price_change=req_float(data, "p"),
        price_change_percent=req_float(data, "P"),
        weighted_average_price=req_float(data, "w"),
        last_price=req_float(data, "c"),
        last_quantity=req_float(data, "Q"),
        open_price=req_float(data, "o"),
        high_price=req_float(data, "h"),
        low_price=req_float(data, "l"),
        base_volume=req_float(data, "v"),
        quote_volume=req_float(data, "q"),
        open_time=req_int(data, "O"),
        close_time=req_int(data, "C"),
        first_trade_id=opt_int(data, "F"),
        last_trade_id=opt_int(data, "L"),
        trade_count=opt_int(data, "n") or 0,
    )


def decode_ticker_list(payload: Any) -> tuple[Ticker, ...]:
    return tuple(decode_ticker(item) for item in require_list(payload, "ticker array"))


def decode_agg_trade(payload: Any) -> AggregatedTrade:
    data = require_object(payload, "aggTrade payload")
    return AggregatedTrade(
        event_time=req_int(data, "E"),
        symbol=req_str(data, "s"),
        agg_trade_id=req_int(data, "a"),
        price=req_float(data, "p"),
        quantity=req_float(data, "q"),
        first_trade_id=req_int(data, "f"),
        last_trade_id=req_int(data, "l"),
        trade_time=req_int(data, "T"),
        is_buyer_maker=bool(opt_bool(data, "m")),
    )


def decode_book_ticker(payload: Any) -> BookTicker:
    data = require_object(payload, "bookTicker payload")
    return BookTicker(
        update_id=req_int(data, "u"),
        event_time=opt_int(data, "E"),
        transaction_time=opt_int(data, "T"),
        symbol=req_str(data, "s"),
        best_bid_price=req_float(data, "b"),
        best_bid_quantity=req_float(data, "B"),
        best_ask_price=req_float(data, "a"),
        best_ask_quantity=req_float(data, "A"),
    )


def decode_liquidation(payload: Any) -> Liquidation:
    data = require_object(payload, "forceOrder payload")
    order = require_object(data.get("o"), "forceOrder order")
    return Liquidation(
        event_time=req_int(data, "E"),
        symbol=req_str(order, "s"),
        side=req_str(order, "S").upper(),
        order_type=opt_str(order, "o"),
        time_in_force=opt_str(order, "f"),
        quantity=req_float(order, "q"),
        price=req_float(order, "p"),
        average_price=opt_float(order, "ap"),
        status=opt_str(order, "X"),
        last_filled_quantity=opt_float(order, "l"),
        filled_quantity=opt_float(order, "z"),
        trade_time=opt_int(order, "T"),
    )


def decode_order_book(payload: Any, *, stream: str | None = None) -> OrderBookUpdate:
    data = require_object(payload, "depth payload")
    symbol = opt_str(data, "s")
    if symbol is None and stream:
        # partial depth frames may omit the symbol; the stream prefix carries it
        symbol = stream.split("@", maxsplit=1)[0].upper()
    if not symbol:
        raise DecodeError("depth payload carries no symbol")
    return OrderBookUpdate(
        event_time=req_int(data, "E"),
        transaction_time=opt_int(data, "T"),
        symbol=symbol,
        first_update_id=opt_int(data, "U"),
        last_update_id=req_int(data, "u"),
        previous_last_update_id=opt_int(data, "pu"),
        bids=parse_levels(data.get("b"), "bids"),
        asks=parse_levels(data.get("a"), "asks"),
    )


def decode_composite_index(payload: Any) -> CompositeIndexUpdate:
    data = require_object(payload, "compositeIndex payload")
    components = []
    for item in require_list(data.get("c", []), "composition"):
        component = require_object(item, "composition entry")
        components.append(
            CompositeIndexComponent(
                base_asset=req_str(component, "b"),
                quote_asset=opt_str(component, "q"),
                weight_in_quantity=opt_float(component, "w"),
                weight_in_percentage=opt_float(component, "W"),
                index_price=opt_float(component, "i"),
            )
        )
    return CompositeIndexUpdate(
        event_time=req_int(data, "E"),
        symbol=req_str(data, "s"),
        price=req_float(data, "p"),
        components=tuple(components),
    )


def decode_token_nav(payload: Any) -> TokenNavUpdate:
    data = require_object(payload, "token nav payload")
    baskets = []
    for item in require_list(data.get("b", []), "baskets"):
        basket = require_object(item, "basket entry")
        baskets.append((req_str(basket, "s"), req_float(basket, "n")))
    return TokenNavUpdate(
        event_time=req_int(data, "E"),
        token_name=req_str(data, "s"),
        tokens_issued=opt_float(data, "m"),
        baskets=tuple(baskets),
        nav=req_float(data, "n"),
        real_leverage=opt_float(data, "l"),
        target_leverage=opt_float(data, "t"),
        funding_ratio=opt_float(data, "f"),
    )
