# quarry/modules/fetcher.py
"""
fetcher.py - Downloader for quarry package sources

Features:
- Protocol support: http(s) via requests (streamed), file:// and bare paths (chunked copy)
- Downloads land in `<sources>/<name>_<version><ext>` via a `.part` file renamed on completion
- Retries transient failures (timeouts, connection errors, 408/425/429/5xx) with exponential backoff;
  the wait after failed attempt n (1-based) is backoff * 2**(n-1)
- Any other requests error is reported as UnreachableError without retrying
- Malformed payloads (empty body, short body) fail immediately
- Progress reported through the events hub as ProgressEvent(package, downloaded, total)
- Bounded concurrency: a semaphore caps simultaneous transfers; fetch_many() streams
  results in completion order from a thread pool
- Never verifies content: digest helpers live here, verification is the pipeline's job
"""

from __future__ import annotations

import os
import time
import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union
from urllib.parse import unquote, urlparse

import requests

from quarry.modules import config
from quarry.modules.errors import DownloadError, MalformedResponseError, UnreachableError
from quarry.modules.events import PROGRESS, EventHub, ProgressEvent
from quarry.modules.logging import get_logger
from quarry.modules.spec import PackageSpec

logger = get_logger("fetcher")

RETRY_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})
_ARCHIVE_SUFFIXES = (".tar.gz", ".tar.bz2", ".tar.xz", ".tar.zst", ".tgz", ".tbz2", ".txz", ".tar", ".zip")

# -----------------------
# Digest helpers
# -----------------------
def digest_of_file(path: Union[str, Path], algorithm: str = "sha512", chunk_size: int = 65536) -> str:
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def _archive_suffix(source: str) -> str:
    base = os.path.basename(urlparse(source).path or source).lower()
    for suffix in _ARCHIVE_SUFFIXES:
        if base.endswith(suffix):
            return suffix
    return Path(base).suffix


def _local_path(source: str) -> Path:
    parsed = urlparse(source)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(source).expanduser()


@dataclass(frozen=True)
class FetchResult:
    spec: PackageSpec
    path: Optional[Path]
    error: Optional[DownloadError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

# -----------------------
# Downloader
# -----------------------
class Downloader:
    def __init__(
        self,
        sources_dir: Optional[Union[str, Path]] = None,
        workers: Optional[int] = None,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
        events: Optional[EventHub] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        cfg = config.get_fetcher_config()
        self.sources_dir = Path(sources_dir) if sources_dir is not None else config.get_directories()["sources"]
        self.workers = max(1, int(workers if workers is not None else cfg.get("workers", 4)))
        self.retries = max(0, int(retries if retries is not None else cfg.get("retries", 3)))
        self.backoff = float(backoff if backoff is not None else cfg.get("backoff", 0.5))
        self.timeout = float(timeout if timeout is not None else cfg.get("timeout", 30))
        self.chunk_size = int(chunk_size if chunk_size is not None else cfg.get("chunk_size", 65536))
        self.events = events or EventHub()
        self._session = session or requests.Session()
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(self.workers)
        self._count_lock = threading.Lock()
        self.transfers = 0  # transfers started, including retries

    def destination(self, spec: PackageSpec) -> Path:
        return self.sources_dir / f"{spec.name}_{spec.version}{_archive_suffix(spec.source)}"

    def fetch(self, spec: PackageSpec) -> Path:
        """Download the source of `spec` and return the local artifact path."""
        dest = self.destination(spec)
        dest.parent.mkdir(parents=True, exist_ok=True)
        scheme = urlparse(spec.source).scheme.lower()
        with self._slots:
            logger.info("fetcher: fetching %s from %s", spec.key, spec.source)
            if scheme in ("http", "https"):
                self._fetch_http(spec, dest)
            elif scheme in ("", "file"):
                self._fetch_local(spec, dest)
            else:
                raise UnreachableError(spec.source, 0, f"unsupported scheme '{scheme}'")
        logger.info("fetcher: %s saved to %s", spec.key, dest)
        return dest

    def fetch_many(self, specs: Iterable[PackageSpec]) -> Iterator[FetchResult]:
        """Fetch concurrently; yields results as they complete."""
        specs = list(specs)
        if not specs:
            return
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="quarry-fetch") as ex:
            futures = {ex.submit(self.fetch, s): s for s in specs}
            for fut in as_completed(futures):
                spec = futures[fut]
                try:
                    yield FetchResult(spec, fut.result())
                except DownloadError as e:
                    logger.error("fetcher: %s failed: %s", spec.key, e)
                    yield FetchResult(spec, None, e)

    # -----------------------
    # Transports
    # -----------------------
    def _count(self):
        with self._count_lock:
            self.transfers += 1

    def _progress(self, spec: PackageSpec, downloaded: int, total: Optional[int]):
        self.events.emit(PROGRESS, ProgressEvent(spec.name, downloaded, total))

    def _fetch_http(self, spec: PackageSpec, dest: Path):
        url = spec.source
        attempt = 0
        while True:
            attempt += 1
            self._count()
            try:
                resp = self._session.get(url, stream=True, timeout=self.timeout)
                try:
                    status = resp.status_code
                    if 200 <= status < 300:
                        self._stream(spec, resp, dest)
                        return
                    if status not in RETRY_STATUSES:
                        raise UnreachableError(url, attempt, f"HTTP {status}")
                    reason = f"HTTP {status}"
                finally:
                    resp.close()
            except (requests.Timeout, requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
                reason = str(e) or type(e).__name__
            except requests.RequestException as e:
                # not transient
                logger.error("fetcher: %s failed: %s", url, e)
                raise UnreachableError(url, attempt, str(e) or type(e).__name__) from e
            if attempt > self.retries:
                logger.error("fetcher: giving up on %s after %d attempt(s): %s", url, attempt, reason)
                raise UnreachableError(url, attempt, reason)
            delay = self.backoff * (2 ** (attempt - 1))
            logger.warning("fetcher: %s attempt %d/%d failed (%s), retrying in %.2fs",
                           url, attempt, self.retries + 1, reason, delay)
            self._sleep(delay)

    def _stream(self, spec: PackageSpec, resp, dest: Path):
        url = spec.source
        length = resp.headers.get("Content-Length")
        total = int(length) if length and str(length).isdigit() else None
        # decoded size differs from Content-Length for encoded bodies
        check_length = total is not None and not resp.headers.get("Content-Encoding")
        part = dest.with_name(dest.name + ".part")
        downloaded = 0
        self._progress(spec, 0, total)
        try:
            with open(part, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=self.chunk_size):
                    if not chunk:
                        continue
                    fh.write(chunk)
                    downloaded += len(chunk)
                    self._progress(spec, downloaded, total)
            if downloaded == 0:
                raise MalformedResponseError(url, "empty body")
            if check_length and downloaded != total:
                raise MalformedResponseError(url, f"expected {total} bytes, received {downloaded}")
            os.replace(part, dest)
        except BaseException:
            part.unlink(missing_ok=True)
            raise

    def _fetch_local(self, spec: PackageSpec, dest: Path):
        src = _local_path(spec.source)
        self._count()
        if not src.is_file():
            raise UnreachableError(spec.source, 1, "no such file")
        total = src.stat().st_size
        if total == 0:
            raise MalformedResponseError(spec.source, "empty file")
        part = dest.with_name(dest.name + ".part")
        copied = 0
        self._progress(spec, 0, total)
        try:
            with open(src, "rb") as fin, open(part, "wb") as fout:
                for chunk in iter(lambda: fin.read(self.chunk_size), b""):
                    fout.write(chunk)
                    copied += len(chunk)
                    self._progress(spec, copied, total)
            os.replace(part, dest)
        except OSError as e:
            part.unlink(missing_ok=True)
            raise UnreachableError(spec.source, 1, str(e)) from e
