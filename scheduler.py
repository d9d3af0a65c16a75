from __future__ import annotations

import logging
import os
import queue
import socket
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import Settings
from db import SQLiteStore
from fetcher import Fetcher, normalize_url
from jobs import CrawlJobRunner
from models import (
    ACTION_DELETE,
    ACTION_RECRAWL,
    ACTION_STOP,
    BULK_ACTIONS,
    STATUS_QUEUED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    ActionOutcome,
    CancelToken,
    CrawlJob,
    CrawlResult,
    NotFound,
)
from verifier import LinkVerifier


STOP_RETRIES = 3

logger = logging.getLogger("scheduler")


@dataclass
class ActiveRun:
    job_id: int
    claim_token: str
    owner: str
    cancel: CancelToken = field(default_factory=CancelToken)
    started_at: float = field(default_factory=time.time)


class CrawlScheduler:
    """Fixed pool of worker threads draining queued jobs from the store.

    Workers sleep on a bounded wake-up queue: in-process submissions and
    recrawls wake them at once, work queued by other processes is picked up
    within ``poll_interval``. However many jobs are queued, at most ``workers``
    of them run at a time.
    """

    def __init__(
        self,
        store: SQLiteStore,
        runner: CrawlJobRunner,
        workers: int = 4,
        poll_interval: float = 2.0,
        max_attempts: int = 3,
        recover_after: float = 0.0,
    ) -> None:
        self.store = store
        self.runner = runner
        self.workers = max(1, workers)
        self.poll_interval = poll_interval
        self.max_attempts = max(1, max_attempts)
        self.recover_after = recover_after
        self._wakeups: "queue.Queue[None]" = queue.Queue(maxsize=self.workers)
        self._active: Dict[int, ActiveRun] = {}
        self._active_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._shutdown = threading.Event()
        self._identity = f"{socket.gethostname()}:{os.getpid()}"

    @classmethod
    def from_settings(cls, settings: Settings, store: Optional[SQLiteStore] = None) -> "CrawlScheduler":
        store = store or SQLiteStore(settings.db_path)
        fetcher = Fetcher(
            timeout=settings.fetch_timeout,
            connect_timeout=settings.connect_timeout,
            max_redirects=settings.max_redirects,
            max_body_bytes=settings.max_body_bytes,
            user_agent=settings.user_agent,
        )
        verifier = LinkVerifier(
            timeout=settings.link_check_timeout,
            concurrency_limit=settings.link_check_concurrency,
            max_redirects=settings.link_check_max_redirects,
            user_agent=settings.user_agent,
        )
        runner = CrawlJobRunner(store, fetcher, verifier, link_concurrency=settings.link_check_concurrency)
        return cls(
            store,
            runner,
            workers=settings.workers,
            poll_interval=settings.poll_interval,
            max_attempts=settings.max_attempts,
            recover_after=settings.recover_after,
        )

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        recovered = self.store.requeue_stale_running(self.recover_after)
        if recovered:
            logger.info(f"Re-queued {recovered} interrupted job(s)")
        self._threads = []
        for index in range(1, self.workers + 1):
            owner = f"{self._identity}:worker-{index}"
            thread = threading.Thread(target=self._worker_loop, args=(owner,), name=f"crawl-worker-{index}", daemon=True)
            self._threads.append(thread)
            thread.start()
        logger.info(f"Scheduler started with {self.workers} workers")

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop the workers; in-flight jobs go back to ``queued`` for the next start."""
        self._shutdown.set()
        with self._active_lock:
            runs = list(self._active.values())
        for run in runs:
            self.store.update_status(run.job_id, STATUS_QUEUED, expected=(STATUS_RUNNING,), claim_token=run.claim_token)
            run.cancel.cancel("Scheduler shutting down")
        self._notify(len(self._threads))
        deadline = time.monotonic() + max(0.0, timeout)
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning(f"Workers still busy after shutdown timeout: {', '.join(alive)}")
        else:
            logger.info("Scheduler stopped")

    def submit(self, url: str) -> int:
        job, _ = self.submit_job(url)
        return job.id

    def submit_job(self, url: str) -> Tuple[CrawlJob, bool]:
        """Validate and enqueue ``url``; an already known URL returns its existing job."""
        normalized = normalize_url(url)
        job, created = self.store.insert_job(normalized)
        if created:
            logger.info(f"Job {job.id} queued for {normalized}")
            self._notify()
        return job, created

    def get_job(self, job_id: int) -> CrawlJob:
        job = self.store.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job

    def get_result(self, job_id: int) -> CrawlResult:
        self.get_job(job_id)
        result = self.store.get_latest_result(job_id)
        if result is None:
            raise NotFound(f"Job {job_id} has no result yet")
        return result

    def list_jobs(self, limit: int = 20, offset: int = 0, search: str = "") -> Tuple[List[Dict[str, Any]], int]:
        return self.store.list_jobs(limit=limit, offset=offset, search=search)

    def bulk_action(self, ids: Iterable[int], action: str) -> Dict[int, ActionOutcome]:
        if action not in BULK_ACTIONS:
            raise ValueError(f"Invalid action: {action}")
        handlers = {
            ACTION_STOP: self._stop,
            ACTION_DELETE: self._delete,
            ACTION_RECRAWL: self._recrawl,
        }
        handler = handlers[action]
        outcomes: Dict[int, ActionOutcome] = {}
        for job_id in dict.fromkeys(int(value) for value in ids):
            try:
                outcomes[job_id] = handler(job_id)
            except sqlite3.Error as exc:
                logger.exception(f"Bulk {action} failed for job {job_id}")
                outcomes[job_id] = ActionOutcome(job_id=job_id, action=action, ok=False, message=f"Store error: {exc}")
        requeued = sum(1 for item in outcomes.values() if item.ok and item.status == STATUS_QUEUED)
        if requeued:
            self._notify(requeued)
        logger.info(f"Bulk {action} on {len(outcomes)} job(s): {sum(1 for o in outcomes.values() if o.ok)} ok")
        return outcomes

    def snapshot(self) -> Dict[str, Any]:
        with self._active_lock:
            active = [
                {
                    "job_id": run.job_id,
                    "owner": run.owner,
                    "elapsed_seconds": max(0, int(time.time() - run.started_at)),
                    "cancelling": run.cancel.cancelled,
                }
                for run in sorted(self._active.values(), key=lambda item: item.job_id)
            ]
        return {
            "workers": self.workers,
            "workers_alive": sum(1 for thread in self._threads if thread.is_alive()),
            "poll_interval": self.poll_interval,
            "active": active,
            "statuses": self.store.status_counts(),
        }

    def _stop(self, job_id: int) -> ActionOutcome:
        for _ in range(STOP_RETRIES):
            job = self.store.get(job_id)
            if job is None:
                return ActionOutcome(job_id=job_id, action=ACTION_STOP, ok=False, message="Job not found")
            if job.is_terminal:
                return ActionOutcome(job_id=job_id, action=ACTION_STOP, ok=True, status=job.status, message="Job is not active")
            if job.status == STATUS_QUEUED:
                if self.store.update_status(job_id, STATUS_STOPPED, expected=(STATUS_QUEUED,)):
                    return ActionOutcome(job_id=job_id, action=ACTION_STOP, ok=True, status=STATUS_STOPPED, message="Stopped before it ran")
                continue
            if job.status == STATUS_RUNNING:
                if self.store.update_status(job_id, STATUS_STOPPED, expected=(STATUS_RUNNING,), claim_token=job.claim_token):
                    self._cancel_active(job_id, "Stopped by user")
                    return ActionOutcome(job_id=job_id, action=ACTION_STOP, ok=True, status=STATUS_STOPPED, message="Stop signalled")
                continue
        return ActionOutcome(job_id=job_id, action=ACTION_STOP, ok=False, message="Job changed state while stopping; try again")

    def _delete(self, job_id: int) -> ActionOutcome:
        job = self.store.get(job_id)
        if job is None:
            return ActionOutcome(job_id=job_id, action=ACTION_DELETE, ok=False, message="Job not found")
        if job.status == STATUS_RUNNING:
            self._stop(job_id)
        self._cancel_active(job_id, "Job deleted")
        if not self.store.delete(job_id):
            return ActionOutcome(job_id=job_id, action=ACTION_DELETE, ok=False, message="Job not found")
        logger.info(f"Job {job_id} deleted")
        return ActionOutcome(job_id=job_id, action=ACTION_DELETE, ok=True, message="Deleted")

    def _recrawl(self, job_id: int) -> ActionOutcome:
        if not self.store.reset_to_queued(job_id):
            return ActionOutcome(job_id=job_id, action=ACTION_RECRAWL, ok=False, message="Job not found")
        # a run still in flight for the old claim is abandoned; its writes fail the claim check
        self._cancel_active(job_id, "Recrawl requested")
        logger.info(f"Job {job_id} re-queued")
        return ActionOutcome(job_id=job_id, action=ACTION_RECRAWL, ok=True, status=STATUS_QUEUED, message="Queued for recrawl")

    def _cancel_active(self, job_id: int, reason: str) -> None:
        with self._active_lock:
            run = self._active.get(job_id)
        if run is not None:
            run.cancel.cancel(reason)

    def _notify(self, count: int = 1) -> None:
        for _ in range(max(1, min(count, self.workers))):
            try:
                self._wakeups.put_nowait(None)
            except queue.Full:
                break

    def _wait_for_work(self) -> None:
        try:
            self._wakeups.get(timeout=self.poll_interval)
        except queue.Empty:
            pass

    def _claim(self, owner: str) -> Optional[Tuple[CrawlJob, ActiveRun]]:
        token = uuid.uuid4().hex
        with self._active_lock:
            # ids still winding down here stay excluded until their old run has exited
            job = self.store.claim_next_queued(owner, token, exclude_ids=list(self._active))
            if job is None:
                return None
            run = ActiveRun(job_id=job.id, claim_token=token, owner=owner)
            self._active[job.id] = run
        logger.info(f"{owner} claimed job {job.id} ({job.url}), attempt {job.attempts}")
        return job, run

    def _worker_loop(self, owner: str) -> None:
        logger.info(f"{owner} started")
        while not self._shutdown.is_set():
            try:
                claimed = self._claim(owner)
            except sqlite3.Error:
                logger.exception(f"{owner} could not claim a job")
                self._shutdown.wait(self.poll_interval)
                continue
            if claimed is None:
                self._wait_for_work()
                continue
            job, run = claimed
            self._process(job, run)
        logger.info(f"{owner} stopped")

    def _process(self, job: CrawlJob, run: ActiveRun) -> None:
        try:
            status = self.runner.run(job, run.cancel)
            logger.info(f"{run.owner} finished job {job.id}: {status}")
        except Exception as exc:
            logger.exception(f"Job {job.id} crashed in {run.owner}")
            try:
                released = self.store.release_claim(job.id, run.claim_token, self.max_attempts, str(exc) or exc.__class__.__name__)
            except sqlite3.Error:
                logger.exception(f"Could not release job {job.id}")
                released = None
            if released == STATUS_QUEUED:
                logger.info(f"Job {job.id} returned to the queue")
                self._notify()
            elif released is not None:
                logger.error(f"Job {job.id} parked as {released} after {job.attempts} attempts")
        finally:
            with self._active_lock:
                self._active.pop(job.id, None)
