from __future__ import annotations

from typing import Optional

# Leading bytes of the containers a tile source may serve.
_SIGNATURES = (
    ("jpg", b"\xff\xd8\xff"),
    ("png", b"\x89PNG\r\n\x1a\n"),
    ("gif", b"GIF8"),
    ("fits", b"SIMPLE  ="),
)

_ALIASES = {"jpeg": "jpg", "fit": "fits", "fts": "fits"}

DEFAULT_MIN_SIZE = 1024


def normalize_format(fmt: str) -> str:
    f = fmt.lower().lstrip(".")
    return _ALIASES.get(f, f)


def sniff_format(data: bytes) -> Optional[str]:
    """Container type from magic bytes, or None if unrecognized."""
    if not data:
        return None
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    for name, sig in _SIGNATURES:
        if data.startswith(sig):
            return name
    return None


def looks_valid(data: Optional[bytes], fmt: str, min_size: int = DEFAULT_MIN_SIZE) -> bool:
    """Non-empty, at least `min_size` bytes, and carrying the signature of `fmt`."""
    if not data or len(data) < int(min_size):
        return False
    return sniff_format(data) == normalize_format(fmt)


def describe_invalid(data: Optional[bytes], fmt: str, min_size: int = DEFAULT_MIN_SIZE) -> str:
    """Human-readable reason why looks_valid() said no."""
    if not data:
        return "empty blob"
    if len(data) < int(min_size):
        return f"blob too small ({len(data)} < {min_size} bytes)"
    got = sniff_format(data)
    return f"signature mismatch (expected {normalize_format(fmt)}, got {got or 'unknown'})"
