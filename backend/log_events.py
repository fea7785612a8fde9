"""
One-line lifecycle events for the relay (`session.init`, `upstream.connected`,
`sse.closed`, ...) written as `EVENT name | key=value ...` on the
`Relay.events` logger, so they can be filtered apart from debug chatter.
"""

import logging
import time
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("Relay.events")

_DEDUPE_MAX_KEYS = 1024
_last_emitted: "OrderedDict[str, float]" = OrderedDict()


def _format_field(value: Any, *, max_len: int = 96) -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".")
    if isinstance(value, int):
        return str(value)
    text = " ".join(str(value).split())
    if not text:
        return "-"
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def _suppressed(token: str, window_s: float) -> bool:
    now = time.monotonic()
    last = _last_emitted.get(token)
    if last is not None and now - last < window_s:
        return True
    _last_emitted[token] = now
    _last_emitted.move_to_end(token)
    while len(_last_emitted) > _DEDUPE_MAX_KEYS:
        _last_emitted.popitem(last=False)
    return False


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    """Emit one relay event. With `dedupe_key`, repeats inside the window are dropped."""
    try:
        name = _format_field(event, max_len=64)
        if dedupe_key and dedupe_window_s > 0 and _suppressed(f"{name}|{dedupe_key}", float(dedupe_window_s)):
            return
        line = f"EVENT {name}"
        if fields:
            line += " | " + " ".join(f"{k}={_format_field(v)}" for k, v in sorted(fields.items()))
        event_logger.log(level, line)
    except Exception:
        logger.exception("Failed to emit relay event")
