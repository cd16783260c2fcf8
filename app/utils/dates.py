"""Time helpers: epoch seconds, timezone checks, natural-language parsing."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateparser

UTC = timezone.utc
DISPLAY_FORMAT = "%Y-%m-%d %H:%M"


def unix_now() -> int:
    return int(time.time())


def is_valid_tz(tz: str) -> bool:
    if not tz or not isinstance(tz, str):
        return False
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def format_tz(ts: int, tz: str, fmt: str = DISPLAY_FORMAT) -> str:
    """Render epoch seconds as wall-clock time in ``tz``."""
    return datetime.fromtimestamp(ts, tz=ZoneInfo(tz)).strftime(fmt)


def _parse(text: str, tz: str, now: int) -> datetime | None:
    base = datetime.fromtimestamp(now, tz=ZoneInfo(tz)).replace(tzinfo=None)
    return dateparser.parse(
        text,
        settings={
            "TIMEZONE": tz,
            "TO_TIMEZONE": "UTC",
            "RETURN_AS_TIMEZONE_AWARE": True,
            "PREFER_DATES_FROM": "future",
            "RELATIVE_BASE": base,
        },
    )


def parse_due_time(text: str, tz: str, now: int | None = None) -> int | None:
    """Parse ``text`` as a moment in ``tz``; epoch seconds or ``None``.

    Bare weekday or time phrases ("friday", "9am") are retried as
    "next <text>" when the first attempt fails.
    """
    text = text.strip()
    if not text:
        return None
    now = unix_now() if now is None else now
    parsed = _parse(text, tz, now) or _parse(f"next {text}", tz, now)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp())
