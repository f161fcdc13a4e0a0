from __future__ import annotations

import logging

from rich.logging import RichHandler

_HANDLER_NAME = "binance_usdm_streams"


def configure_logging(level: str = "INFO") -> None:
    """Install a single rich handler on the root logger.

    Safe to call from every CLI command; the handler is only added once.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            handler.setLevel(level.upper())
            return

    handler = RichHandler(rich_tracebacks=True, show_path=False, log_time_format="[%X]")
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(level.upper())
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)

    # httpx logs every request at INFO; keep it out of stream output
    logging.getLogger("httpx").setLevel(logging.WARNING)
