from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import requests
from urllib3.exceptions import ReadTimeoutError
from urllib3.util.retry import Retry

from models import CancelToken, CrawlCancelled, CrawlerError, InvalidURL
from transport import AbortableAdapter, build_session, configure_session


CHUNK_SIZE = 64 * 1024
ALLOWED_SCHEMES = ("http", "https")
# a missing content type is left to the analyzer's own sniffing
HTML_CONTENT_TYPES = ("", "text/html", "application/xhtml+xml")

logger = logging.getLogger("fetcher")


class FetchError(CrawlerError):
    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class NetworkError(FetchError):
    pass


class InvalidTarget(NetworkError):
    pass


class FetchTimeout(FetchError):
    pass


class TooManyRedirects(FetchError):
    pass


class NonSuccessStatus(FetchError):
    def __init__(self, message: str, response: "FetchResponse") -> None:
        super().__init__(message, url=response.url, status_code=response.status_code)
        self.response = response


@dataclass
class FetchResponse:
    url: str
    final_url: str
    status_code: int
    body: bytes
    content_type: str
    redirects: int = 0
    truncated: bool = False
    seconds: float = 0.0

    @property
    def is_html(self) -> bool:
        return self.content_type in HTML_CONTENT_TYPES


def normalize_url(raw: str) -> str:
    url = (raw or "").strip()
    if not url:
        raise InvalidURL("URL is required")
    if "://" not in url:
        url = "https://" + url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as exc:
        raise InvalidURL(f"Invalid URL: {raw}") from exc

    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidURL(f"Unsupported URL scheme: {parsed.scheme or '(none)'}")
    host = (parsed.hostname or "").strip()
    if not host or any(ch.isspace() for ch in parsed.netloc):
        raise InvalidURL(f"Invalid URL: {raw}")

    netloc = host.lower()
    if ":" in netloc and not netloc.startswith("["):
        netloc = f"[{netloc}]"
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        userinfo = parsed.username if parsed.password is None else f"{parsed.username}:{parsed.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parsed.path
    if path.endswith("/"):
        path = path[:-1]
    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))


class Fetcher:
    """Single HTTP GET with a total timeout, a redirect bound and no retries.

    ``timeout`` bounds the whole fetch, headers and body included. Each fetch
    gets its own session so a cancel or an expired deadline can cut the request
    off wherever it is blocked.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        max_redirects: int = 10,
        max_body_bytes: int = 5 * 1024 * 1024,
        user_agent: str = "site-crawler",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.connect_timeout = min(connect_timeout, timeout)
        self.max_redirects = max_redirects
        self.max_body_bytes = max_body_bytes
        self.user_agent = user_agent
        if session is not None:
            configure_session(session, max_redirects, user_agent)
        self.session = session

    def _open_session(self) -> Tuple[requests.Session, Optional[AbortableAdapter]]:
        if self.session is not None:
            return self.session, None
        return build_session(Retry(total=0, read=False), self.max_redirects, self.user_agent)

    def fetch(self, url: str, cancel: Optional[CancelToken] = None) -> FetchResponse:
        cancel = cancel or CancelToken()
        try:
            target = normalize_url(url)
        except InvalidURL as exc:
            raise InvalidTarget(str(exc), url=url) from exc

        cancel.raise_if_cancelled()
        started = time.monotonic()
        deadline = started + self.timeout
        session, adapter = self._open_session()
        expired = threading.Event()
        response: Optional[requests.Response] = None

        def abort() -> None:
            if adapter is not None:
                adapter.abort()
            elif response is not None:
                response.close()

        def expire() -> None:
            expired.set()
            abort()

        watchdog = threading.Timer(self.timeout, expire)
        watchdog.daemon = True
        unregister = cancel.on_cancel(abort)
        watchdog.start()
        try:
            response = self._send(session, target, cancel, expired)
            body, truncated = self._read_body(response, target, deadline, cancel, expired)
        finally:
            watchdog.cancel()
            unregister()
            if response is not None:
                response.close()
            if adapter is not None:
                session.close()

        status_code = int(response.status_code)
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        result = FetchResponse(
            url=target,
            final_url=str(response.url or target),
            status_code=status_code,
            body=body,
            content_type=content_type,
            redirects=len(response.history),
            truncated=truncated,
            seconds=round(time.monotonic() - started, 3),
        )
        if result.redirects:
            logger.debug(f"{target} redirected {result.redirects}x to {result.final_url}")
        if status_code >= 400:
            raise NonSuccessStatus(f"HTTP error: {status_code}", result)
        return result

    def _timed_out(self, target: str) -> FetchTimeout:
        return FetchTimeout(f"Timed out after {self.timeout:g}s fetching {target}", url=target)

    def _send(
        self,
        session: requests.Session,
        target: str,
        cancel: CancelToken,
        expired: threading.Event,
    ) -> requests.Response:
        try:
            return session.get(
                target,
                timeout=(self.connect_timeout, self.timeout),
                stream=True,
                allow_redirects=True,
            )
        except requests.exceptions.TooManyRedirects as exc:
            raise TooManyRedirects(f"Exceeded {self.max_redirects} redirects", url=target) from exc
        except requests.exceptions.Timeout as exc:
            if cancel.cancelled:
                raise CrawlCancelled(cancel.reason) from exc
            raise self._timed_out(target) from exc
        except (requests.exceptions.InvalidURL, requests.exceptions.InvalidSchema, requests.exceptions.MissingSchema) as exc:
            raise InvalidTarget(f"Invalid URL: {exc}", url=target) from exc
        except requests.RequestException as exc:
            if cancel.cancelled:
                raise CrawlCancelled(cancel.reason) from exc
            if expired.is_set():
                raise self._timed_out(target) from exc
            raise NetworkError(f"Failed to fetch URL: {exc}", url=target) from exc

    def _read_body(
        self,
        response: requests.Response,
        target: str,
        deadline: float,
        cancel: CancelToken,
        expired: threading.Event,
    ) -> Tuple[bytes, bool]:
        chunks: List[bytes] = []
        size = 0
        truncated = False
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                cancel.raise_if_cancelled()
                if expired.is_set() or time.monotonic() > deadline:
                    raise self._timed_out(target)
                if not chunk:
                    continue
                remaining = self.max_body_bytes - size
                if len(chunk) > remaining:
                    chunks.append(chunk[:remaining])
                    size += remaining
                    truncated = True
                    break
                chunks.append(chunk)
                size += len(chunk)
        except (FetchError, CrawlCancelled):
            raise
        except Exception as exc:
            if cancel.cancelled:
                raise CrawlCancelled(cancel.reason) from exc
            if expired.is_set() or isinstance(exc, requests.exceptions.Timeout) or (
                isinstance(exc, requests.exceptions.ConnectionError) and exc.args and isinstance(exc.args[0], ReadTimeoutError)
            ):
                raise self._timed_out(target) from exc
            if isinstance(exc, (requests.RequestException, OSError)):
                raise NetworkError(f"Failed to read response body: {exc}", url=target) from exc
            raise
        cancel.raise_if_cancelled()
        if expired.is_set():
            raise self._timed_out(target)
        return b"".join(chunks), truncated
