from __future__ import annotations

from datetime import datetime, timezone
import re
import time


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso8601(ts: str) -> datetime:
    """Parse a strict ISO-8601 timestamp with optional 'Z'; naive values are taken as UTC."""
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def clamp_int(v: int, lo: int, hi: int) -> int:
    return int(min(hi, max(lo, v)))


_UNSAFE = re.compile(r"[^a-z0-9_.+-]+")


def safe_filename(name: str) -> str:
    """
    Lower-case file stem: spaces -> '_', parentheses dropped, anything else
    outside [a-z0-9_.+-] collapsed to '_'.
    """
    s = name.strip().lower().replace(" ", "_").replace("(", "").replace(")", "")
    s = _UNSAFE.sub("_", s).strip("_")
    return s or "target"


class Stopwatch:
    """
    Elapsed-time helper for per-tile timings.

    Usage:
        sw = Stopwatch()
        ...
        ms = sw.ms
    """

    __slots__ = ("_t0",)

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    @property
    def ms(self) -> int:
        return int((time.perf_counter() - self._t0) * 1e3)
