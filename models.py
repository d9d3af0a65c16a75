from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple


STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERROR = "error"
STATUS_STOPPED = "stopped"

ALL_STATUSES = (STATUS_QUEUED, STATUS_RUNNING, STATUS_DONE, STATUS_ERROR, STATUS_STOPPED)
TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_ERROR, STATUS_STOPPED})

ACTION_STOP = "stop"
ACTION_DELETE = "delete"
ACTION_RECRAWL = "recrawl"
BULK_ACTIONS = (ACTION_STOP, ACTION_DELETE, ACTION_RECRAWL)

# status_code recorded for a link check that never got an HTTP response
NO_RESPONSE = 0

logger = logging.getLogger("crawler")


class CrawlerError(RuntimeError):
    pass


class InvalidURL(CrawlerError, ValueError):
    pass


class NotFound(CrawlerError, LookupError):
    pass


class CrawlCancelled(CrawlerError):
    pass


class ClaimLost(CrawlerError):
    """The store refused a write because this worker no longer owns the job."""


@dataclass
class CrawlJob:
    id: int
    url: str
    status: str
    title: str = ""
    error_message: Optional[str] = None
    claim_token: Optional[str] = None
    attempts: int = 0
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class BrokenLink:
    url: str
    status_code: int
    error_message: Optional[str] = None
    id: Optional[int] = None
    crawl_result_id: Optional[int] = None
    created_at: int = 0


@dataclass
class CrawlResult:
    job_id: int
    html_version: str
    title: str
    h1_count: int = 0
    h2_count: int = 0
    h3_count: int = 0
    h4_count: int = 0
    h5_count: int = 0
    h6_count: int = 0
    internal_links: int = 0
    external_links: int = 0
    broken_links: int = 0
    has_login_form: bool = False
    error_message: Optional[str] = None
    id: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0
    broken_urls: List[BrokenLink] = field(default_factory=list)

    @property
    def headings(self) -> Tuple[int, int, int, int, int, int]:
        return (self.h1_count, self.h2_count, self.h3_count, self.h4_count, self.h5_count, self.h6_count)


@dataclass(frozen=True)
class AnalysisFacts:
    """Structural facts extracted from one HTML document.

    Link tuples hold distinct absolute URLs in sorted order so two analyses of
    the same bytes compare equal.
    """

    html_version: str
    title: str
    headings: Tuple[int, int, int, int, int, int]
    internal_links: Tuple[str, ...]
    external_links: Tuple[str, ...]
    has_login_form: bool

    @property
    def links(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self.internal_links) | set(self.external_links)))

    def heading_count(self, level: int) -> int:
        if level < 1 or level > 6:
            raise ValueError(f"Heading level out of range: {level}")
        return self.headings[level - 1]


@dataclass(frozen=True)
class LinkCheck:
    url: str
    status_code: int
    error_message: Optional[str] = None

    @property
    def broken(self) -> bool:
        return self.error_message is not None or self.status_code == NO_RESPONSE or self.status_code >= 400


@dataclass(frozen=True)
class ActionOutcome:
    job_id: int
    action: str
    ok: bool
    status: Optional[str] = None
    message: str = ""


class CancelToken:
    """Cooperative cancellation signal shared by every network call of one run.

    Callbacks registered with ``on_cancel`` run once, on the thread that calls
    ``cancel``; they are used to close in-flight responses.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Stopped by user") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.debug(f"Cancel callback failed: {exc}")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()
            return lambda: None

        def _unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unregister

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CrawlCancelled(self.reason or "Stopped by user")
