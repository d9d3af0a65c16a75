from __future__ import annotations

import socket
import threading
import time
import unittest
from typing import Dict, List, Optional, Union

import requests

from models import CancelToken, CrawlCancelled
from verifier import LinkVerifier


Outcome = Union[int, Exception]


class StubResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code

    def close(self) -> None:
        pass


class StubSession:
    """Answers HEAD/GET from canned per-URL outcomes and tracks how many requests overlap."""

    def __init__(self, head: Dict[str, Outcome], get: Optional[Dict[str, Outcome]] = None, delay: float = 0.0) -> None:
        self.headers: dict = {}
        self.max_redirects = 30
        self.head_outcomes = head
        self.get_outcomes = get or {}
        self.delay = delay
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def _answer(self, method: str, url: str, outcomes: Dict[str, Outcome]) -> StubResponse:
        with self._lock:
            self.calls.append((method, url))
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            outcome = outcomes.get(url, 200)
            if isinstance(outcome, Exception):
                raise outcome
            return StubResponse(outcome)
        finally:
            with self._lock:
                self.in_flight -= 1

    def head(self, url: str, **kwargs) -> StubResponse:
        return self._answer("HEAD", url, self.head_outcomes)

    def get(self, url: str, **kwargs) -> StubResponse:
        return self._answer("GET", url, self.get_outcomes)


class SilentServer:
    """Local endpoint that accepts connections and never answers."""

    def __init__(self) -> None:
        self.hangups: List[float] = []
        self._stop = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(16)
        self._sock.settimeout(0.1)
        self.url = f"http://127.0.0.1:{self._sock.getsockname()[1]}/"
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._hold, args=(conn,), daemon=True).start()

    def _hold(self, conn: socket.socket) -> None:
        conn.settimeout(0.1)
        with conn:
            while not self._stop.is_set():
                try:
                    if not conn.recv(4096):
                        break
                except socket.timeout:
                    continue
                except OSError:
                    break
            else:
                return
        self.hangups.append(time.monotonic())

    def wait_for_hangups(self, count: int, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while len(self.hangups) < count and time.monotonic() < deadline:
            time.sleep(0.02)
        return len(self.hangups) >= count

    def close(self) -> None:
        self._stop.set()
        self._sock.close()
        self._thread.join(1.0)


class LinkVerifierTest(unittest.TestCase):
    def test_classifies_each_link(self) -> None:
        session = StubSession(
            head={
                "https://example.com/missing": 404,
                "https://example.com/down": 503,
                "https://slow.example.org/": requests.exceptions.ReadTimeout("slow"),
                "https://gone.example.net/": requests.exceptions.ConnectionError("Name or service not known"),
            },
            get={"https://gone.example.net/": requests.exceptions.ConnectionError("Name or service not known")},
        )
        verifier = LinkVerifier(timeout=2.0, concurrency_limit=4, session=session)
        links = [
            "https://example.com/",
            "https://example.com/missing",
            "https://example.com/down",
            "https://slow.example.org/",
            "https://gone.example.net/",
        ]
        checks = {check.url: check for check in verifier.verify(links)}

        self.assertEqual(set(checks), set(links))
        self.assertFalse(checks["https://example.com/"].broken)
        self.assertEqual(checks["https://example.com/missing"].status_code, 404)
        self.assertTrue(checks["https://example.com/missing"].broken)
        self.assertTrue(checks["https://example.com/down"].broken)
        self.assertEqual(checks["https://slow.example.org/"].status_code, 0)
        self.assertIn("Timed out", checks["https://slow.example.org/"].error_message)
        self.assertEqual(checks["https://gone.example.net/"].status_code, 0)
        self.assertTrue(checks["https://gone.example.net/"].broken)
        # a HEAD timeout is final; no GET retry doubles the wait
        self.assertNotIn(("GET", "https://slow.example.org/"), session.calls)

    def test_head_not_allowed_falls_back_to_get(self) -> None:
        session = StubSession(head={"https://example.com/form": 405}, get={"https://example.com/form": 200})
        check = LinkVerifier(session=session).check("https://example.com/form")
        self.assertFalse(check.broken)
        self.assertEqual(check.status_code, 200)
        self.assertEqual(session.calls, [("HEAD", "https://example.com/form"), ("GET", "https://example.com/form")])

    def test_duplicate_links_are_checked_once(self) -> None:
        session = StubSession(head={})
        checks = LinkVerifier(session=session).verify(["https://example.com/a", "https://example.com/a"])
        self.assertEqual(len(checks), 1)
        self.assertEqual(len(session.calls), 1)

    def test_unexpected_check_failure_is_isolated(self) -> None:
        session = StubSession(head={"https://example.com/weird": ValueError("unexpected")})
        links = ["https://example.com/weird", "https://example.com/fine"]
        checks = {check.url: check for check in LinkVerifier(session=session).verify(links)}
        self.assertTrue(checks["https://example.com/weird"].broken)
        self.assertIn("Check failed", checks["https://example.com/weird"].error_message)
        self.assertFalse(checks["https://example.com/fine"].broken)

    def test_concurrency_limit_is_respected(self) -> None:
        session = StubSession(head={}, delay=0.05)
        links = [f"https://example.com/page-{index}" for index in range(12)]
        checks = LinkVerifier(concurrency_limit=8, session=session).verify(links, concurrency_limit=3)
        self.assertEqual(len(checks), 12)
        self.assertLessEqual(session.peak, 3)

    def test_empty_input(self) -> None:
        self.assertEqual(LinkVerifier(session=StubSession(head={})).verify([]), [])

    def test_cancellation_aborts_verification(self) -> None:
        session = StubSession(head={}, delay=0.2)
        token = CancelToken()
        links = [f"https://example.com/page-{index}" for index in range(20)]
        timer = threading.Timer(0.1, token.cancel, args=("Stopped by user",))
        timer.start()
        started = time.monotonic()
        try:
            with self.assertRaises(CrawlCancelled):
                LinkVerifier(concurrency_limit=2, session=session).verify(links, cancel=token)
        finally:
            timer.cancel()
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertLess(len(session.calls), len(links))


class LinkVerifierSocketTest(unittest.TestCase):
    def test_cancel_aborts_requests_in_flight(self) -> None:
        server = SilentServer()
        self.addCleanup(server.close)
        token = CancelToken()
        timer = threading.Timer(0.3, token.cancel, args=("Stopped by user",))
        timer.start()
        self.addCleanup(timer.cancel)
        links = [f"{server.url}page-{index}" for index in range(3)]
        started = time.monotonic()
        with self.assertRaises(CrawlCancelled):
            LinkVerifier(timeout=5.0, concurrency_limit=4).verify(links, cancel=token)
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertTrue(server.wait_for_hangups(3))


if __name__ == "__main__":
    unittest.main(verbosity=2)
