from __future__ import annotations

import tempfile
import unittest
import uuid
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from db import SQLiteStore
from fetcher import FetchResponse, FetchTimeout, NonSuccessStatus
from jobs import CrawlJobRunner
from models import CancelToken, ClaimLost, CrawlJob, LinkCheck


EXAMPLE_PAGE = b"""<!DOCTYPE html>
<html><head><title>Example Domain</title></head>
<body>
<h1>Example Domain</h1>
<a href="/about">About</a>
<a href="/contact">Contact</a>
<a href="https://www.iana.org/domains/example">More information...</a>
</body></html>
"""


def page(
    url: str,
    body: bytes = EXAMPLE_PAGE,
    final_url: Optional[str] = None,
    status_code: int = 200,
    content_type: str = "text/html",
) -> FetchResponse:
    return FetchResponse(url=url, final_url=final_url or url, status_code=status_code, body=body, content_type=content_type)


class FakeFetcher:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.urls: List[str] = []

    def fetch(self, url: str, cancel: Optional[CancelToken] = None) -> FetchResponse:
        self.urls.append(url)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeVerifier:
    def __init__(self, statuses: Optional[dict] = None, before: Optional[Callable[[], None]] = None) -> None:
        self.statuses = statuses or {}
        self.before = before
        self.seen: List[str] = []

    def verify(self, links: Iterable[str], concurrency_limit: Optional[int] = None, cancel: Optional[CancelToken] = None) -> List[LinkCheck]:
        if self.before is not None:
            self.before()
        self.seen = list(links)
        return [LinkCheck(url=url, status_code=self.statuses.get(url, 200)) for url in self.seen]


class CrawlJobRunnerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory(prefix="crawler-jobs-")
        self.store = SQLiteStore(Path(self._tmp.name) / "jobs.sqlite3")
        self.store.insert_job("https://example.com")
        self.job = self.store.claim_next_queued("test-worker", uuid.uuid4().hex)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, fetcher: FakeFetcher, verifier: FakeVerifier, cancel: Optional[CancelToken] = None) -> str:
        runner = CrawlJobRunner(self.store, fetcher, verifier, link_concurrency=4)
        return runner.run(self.job, cancel or CancelToken())

    def test_successful_crawl_writes_result(self) -> None:
        verifier = FakeVerifier({"https://example.com/contact": 404})
        status = self._run(FakeFetcher(page("https://example.com")), verifier)

        self.assertEqual(status, "done")
        result = self.store.get_latest_result(self.job.id)
        self.assertEqual(result.html_version, "HTML5")
        self.assertEqual((result.internal_links, result.external_links, result.broken_links), (2, 1, 1))
        self.assertEqual([(link.url, link.status_code) for link in result.broken_urls], [("https://example.com/contact", 404)])
        self.assertEqual(self.store.get(self.job.id).title, "Example Domain")
        self.assertEqual(len(verifier.seen), 3)

    def test_links_are_classified_against_the_final_host(self) -> None:
        body = b'<a href="https://www.example.com/a">a</a><a href="https://example.com/b">b</a>'
        fetcher = FakeFetcher(page("https://example.com", body=body, final_url="https://www.example.com/"))
        self.assertEqual(self._run(fetcher, FakeVerifier()), "done")
        result = self.store.get_latest_result(self.job.id)
        self.assertEqual((result.internal_links, result.external_links), (1, 1))

    def test_non_html_content_type_marks_job_error(self) -> None:
        verifier = FakeVerifier()
        fetcher = FakeFetcher(page("https://example.com/logo.png", body=EXAMPLE_PAGE, content_type="image/png"))
        self.assertEqual(self._run(fetcher, verifier), "error")
        job = self.store.get(self.job.id)
        self.assertIn("unsupported content type image/png", job.error_message)
        self.assertIsNone(self.store.get_latest_result(self.job.id))
        self.assertEqual(verifier.seen, [])

    def test_missing_or_xhtml_content_type_is_analyzed(self) -> None:
        for content_type in ("", "application/xhtml+xml"):
            with self.subTest(content_type=content_type):
                self.assertTrue(page("https://example.com", content_type=content_type).is_html)
        self.assertEqual(self._run(FakeFetcher(page("https://example.com", content_type="")), FakeVerifier()), "done")

    def test_fetch_timeout_marks_job_error(self) -> None:
        fetcher = FakeFetcher(FetchTimeout("Timed out after 30s fetching https://example.com", url="https://example.com"))
        self.assertEqual(self._run(fetcher, FakeVerifier()), "error")
        stored = self.store.get(self.job.id)
        self.assertEqual(stored.status, "error")
        self.assertIn("Timed out", stored.error_message)
        self.assertIsNone(self.store.get_latest_result(self.job.id))

    def test_error_status_marks_job_error(self) -> None:
        error = NonSuccessStatus("HTTP error: 500", page("https://example.com", status_code=500))
        self.assertEqual(self._run(FakeFetcher(error), FakeVerifier()), "error")
        self.assertEqual(self.store.get(self.job.id).error_message, "HTTP error: 500")

    def test_unparseable_payload_marks_job_error(self) -> None:
        fetcher = FakeFetcher(page("https://example.com", body=b"\x00\x01\x02binary\x00"))
        self.assertEqual(self._run(fetcher, FakeVerifier()), "error")
        self.assertIn("Failed to parse HTML", self.store.get(self.job.id).error_message)

    def test_stop_racing_verification_writes_nothing(self) -> None:
        def stop_now() -> None:
            self.store.update_status(self.job.id, "stopped", expected=("running",), claim_token=self.job.claim_token)

        status = self._run(FakeFetcher(page("https://example.com")), FakeVerifier(before=stop_now))
        self.assertEqual(status, "stopped")
        self.assertEqual(self.store.get(self.job.id).status, "stopped")
        self.assertIsNone(self.store.get_latest_result(self.job.id))

    def test_recrawl_during_run_leaves_job_queued(self) -> None:
        verifier = FakeVerifier(before=lambda: self.store.reset_to_queued(self.job.id))
        status = self._run(FakeFetcher(page("https://example.com")), verifier)
        self.assertEqual(status, "stopped")
        self.assertEqual(self.store.get(self.job.id).status, "queued")
        self.assertIsNone(self.store.get_latest_result(self.job.id))

    def test_delete_during_run_writes_nothing(self) -> None:
        verifier = FakeVerifier(before=lambda: self.store.delete(self.job.id))
        self.assertEqual(self._run(FakeFetcher(page("https://example.com")), verifier), "stopped")
        self.assertIsNone(self.store.get(self.job.id))
        self.assertIsNone(self.store.get_latest_result(self.job.id))

    def test_cancelled_token_stops_before_fetch(self) -> None:
        token = CancelToken()
        token.cancel("Scheduler shutting down")
        fetcher = FakeFetcher(page("https://example.com"))
        self.assertEqual(self._run(fetcher, FakeVerifier(), token), "stopped")
        self.assertEqual(fetcher.urls, [])
        self.assertEqual(self.store.get(self.job.id).status, "stopped")

    def test_unclaimed_job_is_rejected(self) -> None:
        runner = CrawlJobRunner(self.store, FakeFetcher(page("https://example.com")), FakeVerifier())
        with self.assertRaises(ClaimLost):
            runner.run(CrawlJob(id=self.job.id, url=self.job.url, status="queued"), CancelToken())


if __name__ == "__main__":
    unittest.main(verbosity=2)
