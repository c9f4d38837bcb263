"""
Match clock strings: "mm:ss.mmm" parsing, formatting and collision handling.
Nothing here raises; unparseable input resolves to None.
"""
from __future__ import annotations

import math
import re
from typing import Iterable, Optional

CLOCK_PATTERN = re.compile(r"^(\d+):(\d{2})(?:\.(\d{1,3}))?$")
LOOSE_PATTERN = re.compile(r"^\d{1,3}:\d{2}(\.\d{1,3})?$")


def parse_clock_to_ms(clock: Optional[str]) -> Optional[int]:
    """"12:03.5" -> 723500. Returns None for anything that is not a clock string."""
    if not clock:
        return None
    match = CLOCK_PATTERN.match(str(clock).strip())
    if not match:
        return None
    minutes = int(match.group(1))
    seconds = int(match.group(2))
    millis = int((match.group(3) or "0").ljust(3, "0"))
    return (minutes * 60 + seconds) * 1000 + millis


def parse_clock_to_seconds(clock: Optional[str]) -> Optional[float]:
    ms = parse_clock_to_ms(clock)
    return None if ms is None else ms / 1000.0


def format_ms(ms: int) -> str:
    """Format milliseconds as "mm:ss.mmm". Minutes are not capped at 99."""
    ms = max(0, int(ms))
    total_seconds, millis = divmod(ms, 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}.{millis:03d}"


def format_seconds(seconds: Optional[float]) -> str:
    if seconds is None or not math.isfinite(seconds):
        return format_ms(0)
    return format_ms(int(math.floor(max(0.0, seconds) * 1000)))


def format_display(seconds: Optional[float]) -> str:
    """Operator display without milliseconds: "mm:ss"."""
    return format_seconds(seconds)[:-4]


def normalize_match_clock(raw: Optional[str]) -> Optional[str]:
    """
    Canonicalise operator input to "mm:ss.mmm".

    Accepts "m:ss", "mm:ss.m" and a fractional seconds part ("12:3.5" -> "12:03.500").
    Returns None when the input cannot be interpreted.
    """
    if not raw:
        return None
    text = str(raw).strip()
    if LOOSE_PATTERN.match(text):
        ms = parse_clock_to_ms(text)
        return None if ms is None else format_ms(ms)
    parts = text.split(":")
    if len(parts) == 2:
        try:
            minutes = int(parts[0])
            seconds = float(parts[1])
        except ValueError:
            return None
        if minutes < 0 or seconds < 0 or not math.isfinite(seconds):
            return None
        return format_ms(int(round((minutes * 60 + seconds) * 1000)))
    return None


def offset_clock(clock: str, delta_ms: int) -> str:
    """Shift a clock string by delta_ms. Invalid clocks are treated as 00:00.000."""
    return format_ms((parse_clock_to_ms(clock) or 0) + delta_ms)


def allocate_clock(requested: str, occupied: Iterable[str]) -> str:
    """
    Return the first free instant at or after `requested`, stepping by 1 ms.

    `occupied` holds the clocks already used in the same period. Two events at
    the same display clock stay distinguishable without changing their meaning.
    """
    requested_ms = parse_clock_to_ms(requested)
    if requested_ms is None:
        return requested
    taken = {ms for ms in (parse_clock_to_ms(c) for c in occupied) if ms is not None}
    candidate = requested_ms
    while candidate in taken:
        candidate += 1
    return format_ms(candidate)
