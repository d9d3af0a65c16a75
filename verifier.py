from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional, Tuple

import requests
from urllib3.util.retry import Retry

from models import NO_RESPONSE, CancelToken, LinkCheck
from transport import AbortableAdapter, build_session, configure_session


# HEAD answers that say nothing about the resource itself
HEAD_FALLBACK_STATUSES = (405, 501)
WAIT_SLICE_SECONDS = 0.2
CANCEL_GRACE_SECONDS = 2.0

logger = logging.getLogger("verifier")


class LinkVerifier:
    """Check discovered links concurrently and classify each as broken or reachable."""

    def __init__(
        self,
        timeout: float = 10.0,
        concurrency_limit: int = 8,
        max_redirects: int = 5,
        user_agent: str = "site-crawler",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.concurrency_limit = max(1, concurrency_limit)
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        if session is not None:
            configure_session(session, max_redirects, user_agent)
        self.session = session

    def _open_session(self, limit: int) -> Tuple[requests.Session, Optional[AbortableAdapter]]:
        if self.session is not None:
            return self.session, None
        retry = Retry(
            total=1,
            connect=1,
            read=0,
            status=0,
            backoff_factor=0.3,
            allowed_methods=("HEAD", "GET"),
        )
        return build_session(retry, self.max_redirects, self.user_agent, pool_maxsize=max(10, limit))

    def verify(
        self,
        links: Iterable[str],
        concurrency_limit: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[LinkCheck]:
        """Return one ``LinkCheck`` per distinct link, in completion order.

        Raises ``CrawlCancelled`` as soon as ``cancel`` fires. Requests still in
        flight are aborted and given ``CANCEL_GRACE_SECONDS`` to unwind before
        this returns; their outcome is discarded.
        """
        cancel = cancel or CancelToken()
        unique = list(dict.fromkeys(links))
        if not unique:
            return []
        cancel.raise_if_cancelled()

        limit = max(1, concurrency_limit or self.concurrency_limit)
        session, adapter = self._open_session(limit)
        unregister = cancel.on_cancel(adapter.abort) if adapter is not None else None
        executor = ThreadPoolExecutor(max_workers=min(limit, len(unique)), thread_name_prefix="link-check")
        results: List[LinkCheck] = []
        futures: Dict[Future, str] = {}
        try:
            for url in unique:
                futures[executor.submit(self._check_isolated, url, cancel, session)] = url
            pending = set(futures)
            while pending:
                cancel.raise_if_cancelled()
                done, pending = wait(pending, timeout=WAIT_SLICE_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    results.append(future.result())
            cancel.raise_if_cancelled()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            if cancel.cancelled:
                _, stuck = wait(futures, timeout=CANCEL_GRACE_SECONDS)
                if stuck:
                    logger.warning(f"{len(stuck)} link checks still running after cancel")
            if unregister is not None:
                unregister()
            if adapter is not None:
                session.close()

        broken = sum(1 for item in results if item.broken)
        logger.info(f"Verified {len(results)} links: {broken} broken")
        return results

    def _check_isolated(self, url: str, cancel: CancelToken, session: requests.Session) -> LinkCheck:
        try:
            return self.check(url, cancel, session)
        except Exception as exc:
            logger.warning(f"Link check for {url} failed unexpectedly: {exc!r}")
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=f"Check failed: {exc}")

    def check(
        self,
        url: str,
        cancel: Optional[CancelToken] = None,
        session: Optional[requests.Session] = None,
    ) -> LinkCheck:
        if cancel is not None and cancel.cancelled:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message="Cancelled")
        if session is None:
            session, adapter = self._open_session(1)
            try:
                return self.check(url, cancel, session)
            finally:
                if adapter is not None:
                    session.close()

        try:
            response = session.head(url, timeout=self.timeout, allow_redirects=True)
            status_code = int(response.status_code)
            response.close()
            if status_code not in HEAD_FALLBACK_STATUSES:
                return LinkCheck(url=url, status_code=status_code)
        except requests.exceptions.Timeout:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=f"Timed out after {self.timeout:g}s")
        except requests.exceptions.TooManyRedirects as exc:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=f"Too many redirects: {exc}")
        except (requests.exceptions.InvalidURL, requests.exceptions.InvalidSchema, requests.exceptions.MissingSchema) as exc:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=f"Invalid URL: {exc}")
        except requests.RequestException:
            if cancel is not None and cancel.cancelled:
                return LinkCheck(url=url, status_code=NO_RESPONSE, error_message="Cancelled")

        try:
            response = session.get(url, timeout=self.timeout, allow_redirects=True, stream=True)
            status_code = int(response.status_code)
            response.close()
            return LinkCheck(url=url, status_code=status_code)
        except requests.exceptions.Timeout:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=f"Timed out after {self.timeout:g}s")
        except requests.exceptions.TooManyRedirects as exc:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=f"Too many redirects: {exc}")
        except requests.RequestException as exc:
            return LinkCheck(url=url, status_code=NO_RESPONSE, error_message=str(exc) or exc.__class__.__name__)
