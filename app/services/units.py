"""Conversions between canonical units and device notation.

Rates are bits per second and timeouts are seconds internally. The device
writes rates as ``10M`` or ``512k`` (upload/download pairs as ``10M/20M``)
and timeouts as ``1d2h30m``.

Bandwidth formatting truncates: ``format_bandwidth(1_500_000)`` is ``"1M"``
and parsing that back gives ``1_000_000``. This is a known precision loss
kept for compatibility with profiles already on devices; it is not rounded.
"""

from __future__ import annotations

import logging
import re
import warnings

from app.services.exceptions import ParseWarning

logger = logging.getLogger(__name__)

_BANDWIDTH_RE = re.compile(r"^(\d+)\s*([kmg])?$", re.IGNORECASE)
_DURATION_RE = re.compile(
    r"^(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$", re.IGNORECASE
)
_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "g": 1_000_000_000}
_UNITS = (("G", 1_000_000_000), ("M", 1_000_000), ("k", 1_000))


def _warn(message: str) -> None:
    logger.warning(message)
    warnings.warn(message, ParseWarning, stacklevel=3)


def _bandwidth_or_none(text: str) -> int | None:
    match = _BANDWIDTH_RE.match(text.strip())
    if not match:
        return None
    value = int(match.group(1))
    suffix = match.group(2)
    if suffix:
        value *= _MULTIPLIERS[suffix.lower()]
    return value


def parse_bandwidth(text: str | None) -> int:
    """Parse ``10M``/``512k``/``1G``/``2048`` into bits per second.

    Empty input is 0. Malformed input is 0 plus a ParseWarning.
    """
    if text is None or not str(text).strip():
        return 0
    value = _bandwidth_or_none(str(text))
    if value is None:
        _warn(f"Unparsable bandwidth value: {text!r}")
        return 0
    return value


def format_bandwidth(bits_per_second: int | None) -> str:
    """Format bits per second in the largest whole unit (truncating)."""
    if not bits_per_second or bits_per_second <= 0:
        return "0"
    value = int(bits_per_second)
    for suffix, divisor in _UNITS:
        whole = value // divisor
        if whole >= 1:
            return f"{whole}{suffix}"
    return str(value)


def parse_rate_limit(text: str | None) -> tuple[int, int]:
    """Parse a rate-limit string into ``(upload_bps, download_bps)``.

    Only the first token counts; burst settings after whitespace are ignored.
    """
    if not text or not str(text).strip():
        return 0, 0
    first = str(text).split()[0]
    halves = first.split("/")
    if len(halves) != 2:
        _warn(f"Unparsable rate limit: {text!r}")
        return 0, 0
    upload = _bandwidth_or_none(halves[0])
    download = _bandwidth_or_none(halves[1])
    if upload is None or download is None:
        _warn(f"Unparsable rate limit: {text!r}")
        return 0, 0
    return upload, download


def format_rate_limit(upload_bps: int | None, download_bps: int | None) -> str:
    return f"{format_bandwidth(upload_bps)}/{format_bandwidth(download_bps)}"


def parse_duration(text: str | None) -> int:
    """Parse ``1d2h30m`` style durations into seconds (``w`` as in uptime too).

    A bare number is seconds. Empty input is 0. Malformed input is 0 plus a
    ParseWarning.
    """
    if text is None:
        return 0
    raw = str(text).strip()
    if not raw:
        return 0
    if raw.isdigit():
        return int(raw)
    match = _DURATION_RE.match(raw)
    if not match or not any(match.groups()):
        _warn(f"Unparsable duration: {text!r}")
        return 0
    weeks, days, hours, minutes, seconds = (
        int(part) if part else 0 for part in match.groups()
    )
    return weeks * 604800 + days * 86400 + hours * 3600 + minutes * 60 + seconds


def format_duration(seconds: int | None) -> str:
    if not seconds or seconds <= 0:
        return "0s"
    remaining = int(seconds)
    parts = []
    for suffix, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount}{suffix}")
    return "".join(parts)


def sanitize_comment(text: str | None) -> str:
    """Make free text safe for a device comment field."""
    if not text:
        return ""
    cleaned = (
        text.replace("#", "Nr")
        .replace("\r", "")
        .replace("\n", " ")
        .replace('"', "'")
    )
    return cleaned.strip()
