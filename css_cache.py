"""On-disk stylesheet cache with HTTP conditional revalidation.

Layout under ``cache_dir``:
  - {md5(url)}.css        raw stylesheet bytes
  - {md5(url)}.meta.json  {url, cached_at, etag, last_modified, revalidated_at}

Both files are always written together; a lone file counts as no cache.
"""

import hashlib
import json
import logging
import os
import time
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from pydantic import BaseModel

from errors import CssFetchError
from file_utils import atomic_write
from request_context import RequestContext

logger = logging.getLogger("html2png_service.css_cache")

CSS_CACHE_TTL = 3600
MAX_CSS_BYTES = 1024 * 1024
MAX_REDIRECTS = 5
CONNECT_TIMEOUT = 10.0
READ_TIMEOUT = 30.0
USER_AGENT = "html2png/1.0"
CHUNK_SIZE = 64 * 1024


class CssCacheEntry(BaseModel):
    url: str
    cached_at: int
    etag: Optional[str] = None
    last_modified: Optional[int] = None
    revalidated_at: Optional[int] = None


class CssResolution(BaseModel):
    text: str
    cached: bool
    source: str
    fallback: bool = False
    etag: Optional[str] = None
    last_modified: Optional[int] = None
    cache_path: Optional[str] = None
    cache_age: Optional[int] = None

    def summary(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"text"}, exclude_none=True)
        data["content_length"] = len(self.text)
        return data


def _parse_http_date(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(parsedate_to_datetime(value).timestamp())
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def default_session(max_redirects: int = MAX_REDIRECTS) -> requests.Session:
    session = requests.Session()
    session.max_redirects = max_redirects
    session.headers["User-Agent"] = USER_AGENT
    return session


class CssFetchCache:
    def __init__(
        self,
        cache_dir: Path,
        *,
        session: Optional[Any] = None,
        ttl: int = CSS_CACHE_TTL,
        max_bytes: int = MAX_CSS_BYTES,
        connect_timeout: float = CONNECT_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
        max_redirects: int = MAX_REDIRECTS,
        revalidate: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.session = session if session is not None else default_session(max_redirects)
        self.ttl = ttl
        self.max_bytes = max_bytes
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.revalidate = revalidate
        self.clock = clock

    @staticmethod
    def cache_key(url: str) -> str:
        return hashlib.md5(url.encode("utf-8"), usedforsecurity=False).hexdigest()

    def paths(self, url: str) -> Tuple[Path, Path]:
        key = self.cache_key(url)
        return self.cache_dir / f"{key}.css", self.cache_dir / f"{key}.meta.json"

    def load_entry(self, url: str) -> Optional[CssCacheEntry]:
        css_path, meta_path = self.paths(url)
        if not css_path.is_file() or not meta_path.is_file():
            return None
        try:
            return CssCacheEntry.model_validate(json.loads(meta_path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable CSS cache sidecar %s: %s", meta_path, exc)
            return None

    def resolve(self, url: str, ctx: Optional[RequestContext] = None) -> CssResolution:
        ctx = ctx or RequestContext()
        entry = self.load_entry(url)
        if entry is None:
            logger.info("CSS cache miss for %s", url)
            return self._fetch(url, None, ctx)

        if self.revalidate:
            verdict = self._revalidate(url, entry, ctx)
            if verdict == "valid":
                self._mark_revalidated(url, entry)
                return self._cached_resolution(url, entry, source="revalidated")
            if verdict == "stale":
                logger.info("CSS for %s changed upstream; refetching", url)
                return self._fetch(url, entry, ctx)

        if self._within_ttl(url):
            return self._cached_resolution(url, entry, source="ttl")
        logger.info("CSS cache for %s is older than %ss; refetching", url, self.ttl)
        return self._fetch(url, entry, ctx)

    def _timeouts(self, ctx: RequestContext, stage: str) -> Tuple[float, float]:
        return (
            ctx.bound_timeout(self.connect_timeout, stage=stage),
            ctx.bound_timeout(self.read_timeout, stage=stage),
        )

    def _revalidate(self, url: str, entry: CssCacheEntry, ctx: RequestContext) -> str:
        headers = {"User-Agent": USER_AGENT}
        if entry.etag:
            headers["If-None-Match"] = entry.etag
        if entry.last_modified is not None:
            headers["If-Modified-Since"] = formatdate(entry.last_modified, usegmt=True)
        if len(headers) == 1:
            return "unknown"

        timeout = self._timeouts(ctx, "CSS revalidation")
        try:
            response = self.session.head(url, headers=headers, timeout=timeout, allow_redirects=True)
        except requests.RequestException as exc:
            logger.warning("Conditional request for %s failed: %s", url, exc)
            return "unknown"
        try:
            status = response.status_code
        finally:
            response.close()

        if status == 304:
            return "valid"
        if status == 200:
            return "stale"
        logger.warning("Conditional request for %s returned HTTP %s; using TTL", url, status)
        return "unknown"

    def _within_ttl(self, url: str) -> bool:
        css_path, _ = self.paths(url)
        try:
            age = self.clock() - css_path.stat().st_mtime
        except OSError:
            return False
        return age <= self.ttl

    def _cache_age(self, css_path: Path) -> Optional[int]:
        try:
            return max(0, int(self.clock() - css_path.stat().st_mtime))
        except OSError:
            return None

    def _cached_resolution(self, url: str, entry: CssCacheEntry, *, source: str, fallback: bool = False) -> CssResolution:
        css_path, _ = self.paths(url)
        return CssResolution(
            text=css_path.read_bytes().decode("utf-8", errors="replace"),
            cached=True,
            source=source,
            fallback=fallback,
            etag=entry.etag,
            last_modified=entry.last_modified,
            cache_path=str(css_path),
            cache_age=self._cache_age(css_path),
        )

    def _mark_revalidated(self, url: str, entry: CssCacheEntry) -> None:
        css_path, meta_path = self.paths(url)
        now = int(self.clock())
        os.utime(css_path, (now, now))
        entry.revalidated_at = now
        atomic_write(meta_path, entry.model_dump_json(indent=2).encode("utf-8"))

    def _store(self, url: str, body: bytes, etag: Optional[str], last_modified: Optional[int]) -> CssCacheEntry:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        css_path, meta_path = self.paths(url)
        entry = CssCacheEntry(url=url, cached_at=int(self.clock()), etag=etag, last_modified=last_modified)
        atomic_write(css_path, body)
        atomic_write(meta_path, entry.model_dump_json(indent=2).encode("utf-8"))
        return entry

    def _read_body(self, url: str, response: Any, ctx: RequestContext) -> bytes:
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise CssFetchError(
                "CSS file exceeds maximum size",
                {"css_url": url, "content_length": int(declared), "max_bytes": self.max_bytes},
                reason="too_large",
            )
        chunks = []
        received = 0
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if not chunk:
                continue
            received += len(chunk)
            if received > self.max_bytes:
                raise CssFetchError(
                    "CSS file exceeds maximum size",
                    {"css_url": url, "received_bytes": received, "max_bytes": self.max_bytes},
                    reason="too_large",
                )
            chunks.append(chunk)
            if ctx.expired():
                raise CssFetchError(
                    "Timed out loading CSS file",
                    {
                        "css_url": url,
                        "received_bytes": received,
                        "elapsed_seconds": round(ctx.elapsed(), 3),
                        "timeout_seconds": ctx.timeout,
                    },
                    reason="timeout",
                )
        return b"".join(chunks)

    def _fetch(self, url: str, entry: Optional[CssCacheEntry], ctx: RequestContext) -> CssResolution:
        timeout = self._timeouts(ctx, "CSS fetch")
        try:
            response = self.session.get(
                url,
                headers={"User-Agent": USER_AGENT},
                timeout=timeout,
                stream=True,
                allow_redirects=True,
                verify=True,
            )
        except requests.Timeout as exc:
            raise CssFetchError(
                "Timed out loading CSS file",
                {"css_url": url, "error": str(exc), "timeout": list(timeout)},
                reason="timeout",
            ) from exc
        except requests.TooManyRedirects as exc:
            raise CssFetchError(
                "Too many redirects loading CSS file",
                {"css_url": url, "error": str(exc)},
                reason="too_many_redirects",
            ) from exc
        except requests.RequestException as exc:
            raise CssFetchError(
                "Failed to load CSS file",
                {"css_url": url, "error": str(exc), "exception": type(exc).__name__},
                reason="network",
            ) from exc

        try:
            status = response.status_code
            if status == 304 and entry is not None:
                self._mark_revalidated(url, entry)
                return self._cached_resolution(url, entry, source="revalidated")
            if status != 200:
                if status >= 500 and entry is not None:
                    logger.warning("CSS upstream for %s returned HTTP %s; serving stale cache", url, status)
                    return self._cached_resolution(url, entry, source="stale-fallback", fallback=True)
                raise CssFetchError(
                    "CSS file returned non-200 status code",
                    {"css_url": url, "http_code": status},
                    reason="http_status",
                )
            try:
                body = self._read_body(url, response, ctx)
            except requests.RequestException as exc:
                raise CssFetchError(
                    "Failed to read CSS response body",
                    {"css_url": url, "error": str(exc)},
                    reason="network",
                ) from exc
            etag = response.headers.get("ETag")
            last_modified = _parse_http_date(response.headers.get("Last-Modified"))
        finally:
            response.close()

        if not body:
            raise CssFetchError(
                "CSS file is empty or could not be read",
                {"css_url": url, "content_length": 0},
                reason="empty_body",
            )

        stored = self._store(url, body, etag, last_modified)
        css_path, _ = self.paths(url)
        logger.info("Fetched %s (%s bytes, etag=%s)", url, len(body), etag)
        return CssResolution(
            text=body.decode("utf-8", errors="replace"),
            cached=False,
            source="fresh",
            etag=stored.etag,
            last_modified=stored.last_modified,
            cache_path=str(css_path),
            cache_age=0,
        )
