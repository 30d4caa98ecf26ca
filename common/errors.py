from __future__ import annotations

from typing import Any, Dict, Optional


class MosaicError(RuntimeError):
    """
    Base of the mosaic error taxonomy.

    `context` carries whatever is needed to reproduce the failing query
    (grid cell, pixel, order, url, coordinates).
    """

    recoverable = False

    def __init__(self, message: str, **context: Any) -> None:
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{base} ({ctx})"


class IndexingError(MosaicError):
    """Forward/inverse pixel mapping failed numerically. Fatal."""


class NeighborAmbiguity(MosaicError):
    """Two non-fallback cells of the 3x3 grid resolved to the same pixel. Fatal."""


class TileFetchFailure(MosaicError):
    """A single tile could not be obtained or decoded. Degrades that cell only."""

    recoverable = True


class FetchTimeout(TileFetchFailure):
    def __init__(self, url: str, timeout_s: float) -> None:
        super().__init__(f"timed out after {timeout_s:.1f}s", url=url, timeout_s=timeout_s)


class FetchNetworkError(TileFetchFailure):
    def __init__(self, url: str, detail: str) -> None:
        self.detail = detail
        super().__init__(f"network error: {detail}", url=url)


class FetchHttpStatus(TileFetchFailure):
    def __init__(self, url: str, code: int) -> None:
        self.code = int(code)
        super().__init__(f"HTTP {code}", url=url, status=int(code))


class FetchEmptyBody(TileFetchFailure):
    def __init__(self, url: str) -> None:
        super().__init__("empty response body", url=url)


class CacheCorruption(MosaicError):
    """Cached blob failed validation; the entry is dropped and the tile refetched."""

    recoverable = True


class AssemblyFailure(MosaicError):
    """No tile could be downloaded; no output is produced."""


class RunCancelled(MosaicError):
    """The caller abandoned the run between two tile attempts."""


class CropOutOfBounds(MosaicError):
    """Requested output larger than the raw canvas; the crop is clamped."""

    recoverable = True

    def __init__(self, requested: int, available: int, message: Optional[str] = None) -> None:
        self.requested = int(requested)
        self.available = int(available)
        super().__init__(
            message or f"output size {requested} exceeds canvas {available}; clamped",
            requested=int(requested),
            available=int(available),
        )
