from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import typer
from rich.console import Console

from binance_usdm_streams.core.config import Settings
from binance_usdm_streams.core.logging import configure_logging
from binance_usdm_streams.core.time_sync import local_time_ms
from binance_usdm_streams.sockets.client import BinanceUsdFuturesSocketClient
from binance_usdm_streams.sockets.payloads import DataEvent
from binance_usdm_streams.sources.rest import BinanceRESTClient

app = typer.Typer(help="Binance USD-M futures streaming CLI")
console = Console()
logger = logging.getLogger(__name__)

LISTEN_KEY_KEEPALIVE_SECONDS = 30 * 60


def _normalize_topics(values: Iterable[str]) -> list[str]:
    topics: list[str] = []
    for value in values:
        for part in value.split(","):
            topic = part.strip()
            if topic and topic not in topics:
                topics.append(topic)
    if not topics:
        raise typer.BadParameter("Provide at least one topic, e.g. btcusdt@aggTrade")
    return topics


def _format_server_time(server_time_ms: int, offset_ms: float) -> str:
    stamp = datetime.fromtimestamp(server_time_ms / 1000, tz=UTC).isoformat(timespec="milliseconds")
    return f"server time {stamp} ({server_time_ms} ms), local offset {offset_ms:+.1f} ms"


def _frame_summary(frame: dict[str, Any], arrival_time_ms: int, max_length: int = 240) -> str:
    data = json.dumps(frame.get("data"), separators=(",", ":"), default=str)
    if len(data) > max_length:
        data = data[: max_length - 3] + "..."
    return f"[dim]{arrival_time_ms}[/dim] [cyan]{frame.get('stream')}[/cyan] {data}"


def _user_event_summary(label: str, event: DataEvent[Any]) -> str:
    symbol = f" {event.symbol}" if event.symbol else ""
    return f"[dim]{event.arrival_time_ms}[/dim] [magenta]{label}[/magenta]{symbol} {event.data}"


async def _sleep_or_forever(duration_seconds: float | None) -> None:
    if duration_seconds is None:
        await asyncio.Event().wait()
    else:
        await asyncio.sleep(duration_seconds)


@app.command("server-time")
def server_time() -> None:
    """Fetch exchange time and show the local clock offset."""
    settings = Settings()
    configure_logging(settings.log_level)

    async def run() -> None:
        async with BinanceRESTClient.from_settings(settings) as client:
            before = local_time_ms()
            server_ms = await client.get_server_time()
            after = local_time_ms()
            console.print(_format_server_time(server_ms, server_ms - (before + after) / 2))

    asyncio.run(run())


@app.command("stream")
def stream(
    topics: list[str] = typer.Argument(..., help="Stream topics, e.g. btcusdt@aggTrade btcusdt@kline_1m"),
    duration_seconds: float | None = typer.Option(None, "--duration", min=0.1, help="Stop after N seconds"),
) -> None:
    """Subscribe to raw topics on one connection and print each frame."""
    settings = Settings()
    configure_logging(settings.log_level)
    topic_list = _normalize_topics(topics)

    def on_frame(frame: dict[str, Any], arrival_time_ms: int) -> None:
        console.print(_frame_summary(frame, arrival_time_ms))

    async def run() -> None:
        async with BinanceUsdFuturesSocketClient.from_settings(settings) as client:
            subscription = await client.subscribe(topic_list, on_frame)
            console.print(f"[green]Subscribed[/green] id={subscription.id} topics={', '.join(subscription.topics)}")
            try:
                await _sleep_or_forever(duration_seconds)
            finally:
                await client.unsubscribe(subscription)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run())


@app.command("user-stream")
def user_stream(
    duration_seconds: float | None = typer.Option(None, "--duration", min=0.1, help="Stop after N seconds"),
) -> None:
    """Open a listen key and print account events as they arrive."""
    settings = Settings()
    configure_logging(settings.log_level)
    if settings.credentials() is None:
        console.print("[red]BUS_API_KEY and BUS_API_SECRET must be set for the user data stream.[/red]")
        raise typer.Exit(code=1)

    async def keep_alive(rest: BinanceRESTClient, listen_key: str) -> None:
        while True:
            await asyncio.sleep(LISTEN_KEY_KEEPALIVE_SECONDS)
            await rest.keep_alive_user_stream(listen_key)
            logger.info("Listen key kept alive")

    async def run() -> None:
        async with BinanceRESTClient.from_settings(settings) as rest:
            listen_key = await rest.start_user_stream()
            keeper = asyncio.create_task(keep_alive(rest, listen_key))
            try:
                async with BinanceUsdFuturesSocketClient.from_settings(settings) as client:
                    await client.subscribe_to_user_data_updates(
                        listen_key,
                        on_config_update=lambda event: console.print(_user_event_summary("config", event)),
                        on_margin_update=lambda event: console.print(_user_event_summary("margin-call", event)),
                        on_account_update=lambda event: console.print(_user_event_summary("account", event)),
                        on_order_update=lambda event: console.print(_user_event_summary("order", event)),
                        on_listen_key_expired=lambda event: console.print(
                            _user_event_summary("[red]listen-key-expired[/red]", event)
                        ),
                    )
                    console.print("[green]Listening for account events[/green]")
                    await _sleep_or_forever(duration_seconds)
            finally:
                keeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keeper
                await rest.stop_user_stream(listen_key)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run())


if __name__ == "__main__":
    app()
