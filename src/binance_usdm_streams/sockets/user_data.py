"""Private account channel: envelope unwrapping and per-event decoding.

Frames on the listen-key stream look like ``{"stream": key, "data": {"e": tag, ...}}``.
Each known tag has its own decoder so one malformed event type never affects
another; unknown tags decode to :class:`UnknownUserDataEvent` and are skipped.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

from binance_usdm_streams.core.errors import DecodeError
from binance_usdm_streams.sockets.payloads import (
    DataEvent,
    opt_bool,
    opt_float,
    opt_int,
    opt_str,
    payload_to_json,
    req_float,
    req_int,
    req_str,
    require_list,
    require_object,
)

logger = logging.getLogger(__name__)

CONFIG_UPDATE_EVENT: Final = "ACCOUNT_CONFIG_UPDATE"
MARGIN_CALL_EVENT: Final = "MARGIN_CALL"
ACCOUNT_UPDATE_EVENT: Final = "ACCOUNT_UPDATE"
ORDER_UPDATE_EVENT: Final = "ORDER_TRADE_UPDATE"
LISTEN_KEY_EXPIRED_EVENT: Final = "listenKeyExpired"


@dataclass(frozen=True, slots=True)
class LeverageUpdate:
    symbol: str
    leverage: int


@dataclass(frozen=True, slots=True)
class ConfigUpdateEvent:
    event_time: int
    transaction_time: int | None
    leverage_update: LeverageUpdate | None
    multi_assets_mode: bool | None


@dataclass(frozen=True, slots=True)
class MarginCallPosition:
    symbol: str
    position_side: str | None
    position_amount: float
    margin_type: str | None
    isolated_wallet: float | None
    mark_price: float
    unrealized_pnl: float | None
    maintenance_margin_required: float


@dataclass(frozen=True, slots=True)
class MarginCallEvent:
    event_time: int
    cross_wallet_balance: float | None
    positions: tuple[MarginCallPosition, ...]


@dataclass(frozen=True, slots=True)
class BalanceUpdate:
    asset: str
    wallet_balance: float
    cross_wallet_balance: float | None
    balance_change: float | None


@dataclass(frozen=True, slots=True)
class PositionUpdate:
    symbol: str
    position_amount: float
    entry_price: float
    break_even_price: float | None
    accumulated_realized: float | None
    unrealized_pnl: float | None
    margin_type: str | None
    isolated_wallet: float | None
    position_side: str | None


@dataclass(frozen=True, slots=True)
class AccountUpdateEvent:
    event_time: int
    transaction_time: int | None
    reason: str | None
    balances: tuple[BalanceUpdate, ...]
    positions: tuple[PositionUpdate, ...]


@dataclass(frozen=True, slots=True)
class OrderUpdate:
    symbol: str
    client_order_id: str
    side: str
    order_type: str
    time_in_force: str | None
    quantity: float
    price: float
    average_price: float | None
    stop_price: float | None
    execution_type: str
    status: str
    order_id: int
    last_filled_quantity: float | None
    accumulated_filled_quantity: float | None
    last_filled_price: float | None
    commission_asset: str | None
    commission: float | None
    trade_time: int | None
    trade_id: int | None
    is_maker: bool | None
    reduce_only: bool | None
    position_side: str | None
    realized_profit: float | None


@dataclass(frozen=True, slots=True)
class OrderUpdateEvent:
    event_time: int
    transaction_time: int | None
    order: OrderUpdate


@dataclass(frozen=True, slots=True)
class ListenKeyExpiredEvent:
    event_time: int
    listen_key: str | None


@dataclass(frozen=True, slots=True)
class UnknownUserDataEvent:
    event_type: str
    payload: dict[str, Any]


UserDataEvent = (
    ConfigUpdateEvent
    | MarginCallEvent
    | AccountUpdateEvent
    | OrderUpdateEvent
    | ListenKeyExpiredEvent
    | UnknownUserDataEvent
)


def decode_config_update(data: dict[str, Any]) -> ConfigUpdateEvent:
    leverage_update = None
    if "ac" in data:
        raw = require_object(data["ac"], "ac")
        leverage_update = LeverageUpdate(symbol=req_str(raw, "s"), leverage=req_int(raw, "l"))
    multi_assets_mode = None
    if "ai" in data:
        multi_assets_mode = opt_bool(require_object(data["ai"], "ai"), "j")
    return ConfigUpdateEvent(
        event_time=req_int(data, "E"),
        transaction_time=opt_int(data, "T"),
        leverage_update=leverage_update,
        multi_assets_mode=multi_assets_mode,
    )


def decode_margin_call(data: dict[str, Any]) -> MarginCallEvent:
    positions = []
    for item in require_list(data.get("p"), "p"):
        raw = require_object(item, "margin call position")
        positions.append(
            MarginCallPosition(
                symbol=req_str(raw, "s"),
                position_side=opt_str(raw, "ps"),
                position_amount=req_float(raw, "pa"),
                margin_type=opt_str(raw, "mt"),
                isolated_wallet=opt_float(raw, "iw"),
                mark_price=req_float(raw, "mp"),
                unrealized_pnl=opt_float(raw, "up"),
                maintenance_margin_required=req_float(raw, "mm"),
            )
        )
    return MarginCallEvent(
        event_time=req_int(data, "E"),
        cross_wallet_balance=opt_float(data, "cw"),
        positions=tuple(positions),
    )


def decode_account_update(data: dict[str, Any]) -> AccountUpdateEvent:
    body = require_object(data.get("a"), "a")
    balances = tuple(
        BalanceUpdate(
            asset=req_str(raw, "a"),
            wallet_balance=req_float(raw, "wb"),
            cross_wallet_balance=opt_float(raw, "cw"),
            balance_change=opt_float(raw, "bc"),
        )
        for raw in (require_object(item, "balance") for item in require_list(body.get("B", []), "B"))
    )
    positions = tuple(
        PositionUpdate(
            symbol=req_str(raw, "s"),
            position_amount=req_float(raw, "pa"),
            entry_price=req_float(raw, "ep"),
            break_even_price=opt_float(raw, "bep"),
            accumulated_realized=opt_float(raw, "cr"),
            unrealized_pnl=opt_float(raw, "up"),
            margin_type=opt_str(raw, "mt"),
            isolated_wallet=opt_float(raw, "iw"),
            position_side=opt_str(raw, "ps"),
        )
        for raw in (require_object(item, "position") for item in require_list(body.get("P", []), "P"))
    )
    return AccountUpdateEvent(
        event_time=req_int(data, "E"),
        transaction_time=opt_int(data, "T"),
        reason=opt_str(body, "m"),
        balances=balances,
        positions=positions,
    )


def decode_order_update(data: dict[str, Any]) -> OrderUpdateEvent:
    raw = require_object(data.get("o"), "o")
    order = OrderUpdate(
        symbol=req_str(raw, "s"),
        client_order_id=req_str(raw, "c"),
        side=req_str(raw, "S"),
        order_type=req_str(raw, "o"),
        time_in_force=opt_str(raw, "f"),
        quantity=req_float(raw, "q"),
        price=req_float(raw, "p"),
        average_price=opt_float(raw, "ap"),
        stop_price=opt_float(raw, "sp"),
        execution_type=req_str(raw, "x"),
        status=req_str(raw, "X"),
        order_id=req_int(raw, "i"),
        last_filled_quantity=opt_float(raw, "l"),
        accumulated_filled_quantity=opt_float(raw, "z"),
        last_filled_price=opt_float(raw, "L"),
        commission_asset=opt_str(raw, "N"),
        commission=opt_float(raw, "n"),
        trade_time=opt_int(raw, "T"),
        trade_id=opt_int(raw, "t"),
        is_maker=opt_bool(raw, "m"),
        reduce_only=opt_bool(raw, "R"),
        position_side=opt_str(raw, "ps"),
        realized_profit=opt_float(raw, "rp"),
    )
    return OrderUpdateEvent(event_time=req_int(data, "E"), transaction_time=opt_int(data, "T"), order=order)


def decode_listen_key_expired(data: dict[str, Any]) -> ListenKeyExpiredEvent:
    return ListenKeyExpiredEvent(event_time=req_int(data, "E"), listen_key=opt_str(data, "listenKey"))


_DECODERS: Final[dict[str, Callable[[dict[str, Any]], UserDataEvent]]] = {
    CONFIG_UPDATE_EVENT: decode_config_update,
    MARGIN_CALL_EVENT: decode_margin_call,
    ACCOUNT_UPDATE_EVENT: decode_account_update,
    ORDER_UPDATE_EVENT: decode_order_update,
    LISTEN_KEY_EXPIRED_EVENT: decode_listen_key_expired,
}


def decode_user_data_event(data: Any) -> UserDataEvent:
    """Decode the inner ``data`` object of an account frame.

    Raises :class:`DecodeError` when the tag is missing or the tagged payload
    is malformed.
    """
    body = require_object(data, "user data payload")
    event_type = body.get("e")
    if not isinstance(event_type, str):
        raise DecodeError("user data payload has no event type")
    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return UnknownUserDataEvent(event_type=event_type, payload=body)
    return decoder(body)


class AccountChannelState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    SUBSCRIBED = "subscribed"
    EXPIRED = "expired"


class UserDataDispatcher:
    def __init__(
        self,
        listen_key: str,
        *,
        on_config_update: Callable[[DataEvent[ConfigUpdateEvent]], None] | None = None,
        on_margin_update: Callable[[DataEvent[MarginCallEvent]], None] | None = None,
        on_account_update: Callable[[DataEvent[AccountUpdateEvent]], None] | None = None,
        on_order_update: Callable[[DataEvent[OrderUpdateEvent]], None] | None = None,
        on_listen_key_expired: Callable[[DataEvent[ListenKeyExpiredEvent]], None] | None = None,
    ) -> None:
        self._listen_key = listen_key
        self._on_config_update = on_config_update
        self._on_margin_update = on_margin_update
        self._on_account_update = on_account_update
        self._on_order_update = on_order_update
        self._on_listen_key_expired = on_listen_key_expired
        self._state = AccountChannelState.UNAUTHENTICATED
        self._warned_after_expiry = False
        self._lock = threading.RLock()

    @property
    def listen_key(self) -> str:
        return self._listen_key

    @property
    def state(self) -> AccountChannelState:
        with self._lock:
            return self._state

    def mark_subscribed(self) -> None:
        with self._lock:
            self._state = AccountChannelState.SUBSCRIBED
            self._warned_after_expiry = False

    def __call__(self, frame: dict[str, Any], arrival_time_ms: int) -> None:
        self.dispatch(frame, arrival_time_ms)

    def dispatch(self, frame: dict[str, Any], arrival_time_ms: int) -> UserDataEvent | None:
        stream = frame.get("stream") if isinstance(frame.get("stream"), str) else self._listen_key
        try:
            event = decode_user_data_event(frame.get("data"))
        except DecodeError as exc:
            logger.warning(
                "Couldn't decode user data event",
                extra={"stream": stream, "error": str(exc), "payload": payload_to_json(frame)},
            )
            return None

        if isinstance(event, UnknownUserDataEvent):
            logger.debug(
                "Received unknown user data event",
                extra={"stream": stream, "event_type": event.event_type, "payload": payload_to_json(frame)},
            )
            return event

        with self._lock:
            if self._state is AccountChannelState.EXPIRED and not self._warned_after_expiry:
                self._warned_after_expiry = True
                logger.warning("User data frame received after listen key expiry", extra={"stream": stream})

        if isinstance(event, ConfigUpdateEvent):
            symbol = event.leverage_update.symbol if event.leverage_update is not None else None
            self._invoke(self._on_config_update, DataEvent(stream, event, arrival_time_ms, symbol))
        elif isinstance(event, MarginCallEvent):
            self._invoke(self._on_margin_update, DataEvent(stream, event, arrival_time_ms))
        elif isinstance(event, AccountUpdateEvent):
            self._invoke(self._on_account_update, DataEvent(stream, event, arrival_time_ms))
        elif isinstance(event, OrderUpdateEvent):
            self._invoke(self._on_order_update, DataEvent(stream, event, arrival_time_ms, event.order.symbol))
        elif isinstance(event, ListenKeyExpiredEvent):
            logger.info("Listen key expired", extra={"stream": stream})
            try:
                self._invoke(self._on_listen_key_expired, DataEvent(stream, event, arrival_time_ms))
            finally:
                with self._lock:
                    self._state = AccountChannelState.EXPIRED
        return event

    @staticmethod
    def _invoke(callback: Callable[[DataEvent[Any]], None] | None, event: DataEvent[Any]) -> None:
        if callback is not None:
            callback(event)
