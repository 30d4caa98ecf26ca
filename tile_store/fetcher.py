from __future__ import annotations

"""
Single-shot HiPS tile downloader.

Usage:
    fetcher = TileFetcher(timeout=15.0)
    data = fetcher.fetch("http://alasky.u-strasbg.fr/DSS/DSSColor/Norder8/Dir0/Npix1234.jpg")

`fetch` performs exactly one GET and raises a TileFetchFailure subclass on
any problem; retry/skip policy belongs to the caller. The timeout is a
wall-clock deadline for the whole transfer: the GET and body read run in a
worker thread, and the caller stops waiting when the deadline passes even if
the server keeps trickling bytes under the per-read socket timeout.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Dict, List, Optional

import requests

from common.errors import FetchEmptyBody, FetchHttpStatus, FetchNetworkError, FetchTimeout
from common.utils import Stopwatch


log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SkyMosaic/1.0 (HiPS tile mosaic builder)"
DEFAULT_TIMEOUT_S = 15.0


class _Transfer:
    """State shared between the caller and the worker doing one GET."""

    __slots__ = ("response", "cancelled", "_lock")

    def __init__(self) -> None:
        self.response: Optional[requests.Response] = None
        self.cancelled = threading.Event()
        self._lock = threading.Lock()

    def attach(self, r: requests.Response) -> None:
        with self._lock:
            self.response = r
            if self.cancelled.is_set():
                r.close()

    def cancel(self) -> None:
        with self._lock:
            self.cancelled.set()
            if self.response is not None:
                self.response.close()


class TileFetcher:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
        chunk_size: int = 64 * 1024,
    ):
        """
        Params:
            session: optional requests.Session for connection reuse
            timeout: default deadline (seconds) for one fetch
            user_agent: descriptive client identifier sent to the tile server
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.session = session or requests.Session()
        self.timeout = float(timeout)
        self.chunk_size = int(chunk_size)
        self.headers: Dict[str, str] = {
            "User-Agent": user_agent,
            "Accept": "image/*",
        }

    # ----------------------------
    # Public API
    # ----------------------------
    def fetch(self, url: str, timeout: Optional[float] = None) -> bytes:
        """
        GET `url` and return the body.

        Raises:
            FetchTimeout: deadline exceeded (connect, first byte or full body)
            FetchNetworkError: connection/transport failure
            FetchHttpStatus: any status other than 200
            FetchEmptyBody: 200 with no content
        """
        limit = float(timeout if timeout is not None else self.timeout)
        if limit <= 0:
            raise ValueError("timeout must be > 0")
        sw = Stopwatch()
        transfer = _Transfer()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tile-fetch")
        try:
            future = pool.submit(self._transfer, url, limit, transfer)
            try:
                data = future.result(timeout=limit)
            except FutureTimeout:
                transfer.cancel()
                log.warning("Tile fetch deadline exceeded",
                            extra={"extra": {"url": url, "timeout_s": limit, "elapsed_ms": sw.ms}})
                raise FetchTimeout(url, limit) from None
        finally:
            pool.shutdown(wait=False)

        if not data:
            raise FetchEmptyBody(url)
        log.debug("Fetched tile", extra={"extra": {"url": url, "bytes": len(data), "latency_ms": sw.ms}})
        return data

    def close(self) -> None:
        self.session.close()

    # ----------------------------
    # Worker
    # ----------------------------
    def _transfer(self, url: str, limit: float, transfer: _Transfer) -> bytes:
        deadline = time.monotonic() + limit
        try:
            r = self.session.get(url, headers=self.headers, timeout=limit, stream=True)
        except requests.Timeout as e:
            raise FetchTimeout(url, limit) from e
        except requests.RequestException as e:
            raise FetchNetworkError(url, str(e)) from e

        transfer.attach(r)
        try:
            if r.status_code != 200:
                raise FetchHttpStatus(url, r.status_code)
            chunks: List[bytes] = []
            for chunk in r.iter_content(chunk_size=self.chunk_size):
                if transfer.cancelled.is_set() or time.monotonic() > deadline:
                    raise FetchTimeout(url, limit)
                if chunk:
                    chunks.append(chunk)
            return b"".join(chunks)
        except requests.Timeout as e:
            raise FetchTimeout(url, limit) from e
        except requests.RequestException as e:
            if transfer.cancelled.is_set():
                raise FetchTimeout(url, limit) from e
            raise FetchNetworkError(url, str(e)) from e
        finally:
            r.close()
