from __future__ import annotations

import logging
from typing import List, Optional

from analyzer import ParseError, analyze
from db import SQLiteStore
from fetcher import Fetcher, FetchError
from models import (
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_RUNNING,
    STATUS_STOPPED,
    BrokenLink,
    CancelToken,
    ClaimLost,
    CrawlCancelled,
    CrawlJob,
)
from verifier import LinkVerifier


logger = logging.getLogger("jobs")


class CrawlJobRunner:
    """Drive one claimed job through fetch, analyze, verify and finalize.

    Every outcome is expressed as a job status; fetch and parse failures never
    escape ``run``. Only unexpected exceptions (bugs, store failures) propagate,
    and the scheduler treats those as a failed attempt.
    """

    def __init__(
        self,
        store: SQLiteStore,
        fetcher: Fetcher,
        verifier: LinkVerifier,
        link_concurrency: Optional[int] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.verifier = verifier
        self.link_concurrency = link_concurrency

    def run(self, job: CrawlJob, cancel: CancelToken) -> str:
        if job.status != STATUS_RUNNING or not job.claim_token:
            raise ClaimLost(f"Job {job.id} was not claimed for running")

        try:
            cancel.raise_if_cancelled()
            response = self.fetcher.fetch(job.url, cancel)
            self._checkpoint(job, cancel)
            if response.truncated:
                logger.warning(f"Job {job.id}: body of {response.final_url} truncated for analysis")
            if not response.is_html:
                raise ParseError(f"Failed to parse HTML: unsupported content type {response.content_type}")

            facts = analyze(response.body, response.final_url)
            self._checkpoint(job, cancel)

            checks = self.verifier.verify(facts.links, self.link_concurrency, cancel)
            self._checkpoint(job, cancel)
        except (CrawlCancelled, ClaimLost) as exc:
            return self._abandon(job, str(exc))
        except (FetchError, ParseError) as exc:
            return self._fail(job, str(exc))

        broken: List[BrokenLink] = [
            BrokenLink(url=check.url, status_code=check.status_code, error_message=check.error_message)
            for check in sorted(checks, key=lambda item: item.url)
            if check.broken
        ]
        result = self.store.write_result(job.id, facts, broken, claim_token=job.claim_token)
        if result is None:
            return self._abandon(job, "claim revoked before the result was written")
        logger.info(
            f"Job {job.id} done: {facts.html_version}, {len(facts.internal_links)} internal, "
            f"{len(facts.external_links)} external, {len(broken)} broken"
        )
        return STATUS_DONE

    def _checkpoint(self, job: CrawlJob, cancel: CancelToken) -> None:
        cancel.raise_if_cancelled()
        current = self.store.get(job.id)
        if current is None:
            raise ClaimLost(f"Job {job.id} was deleted")
        if current.status != STATUS_RUNNING or current.claim_token != job.claim_token:
            raise ClaimLost(f"Job {job.id} is now {current.status}")

    def _fail(self, job: CrawlJob, message: str) -> str:
        logger.warning(f"Job {job.id} failed: {message}")
        if self.store.update_status(
            job.id,
            STATUS_ERROR,
            error_message=message,
            expected=(STATUS_RUNNING,),
            claim_token=job.claim_token,
        ):
            return STATUS_ERROR
        return self._abandon(job, "claim revoked before the error was recorded")

    def _abandon(self, job: CrawlJob, reason: str) -> str:
        # A stop command has usually flipped the row already; this covers a
        # cancellation that came from the scheduler itself (shutdown, preemption).
        stopped = self.store.update_status(
            job.id,
            STATUS_STOPPED,
            expected=(STATUS_RUNNING,),
            claim_token=job.claim_token,
        )
        logger.info(f"Job {job.id} abandoned: {reason}" + (" (marked stopped)" if stopped else ""))
        return STATUS_STOPPED
