"""
Polling unsubscribe queue.

Uses APScheduler to drive the poll loop with:
- A bounded number of jobs in flight at once
- Atomic claims through the job store
- Escalation to the browser pool for confirmation pages
- Retry policy and best-effort status notifications
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobs.notifier import Notifier
from jobs.retry import RetryPolicy
from jobs.store import EmailNotFoundError, JobStore
from models import JobStatus, UnsubscribeJob, UnsubscribeStatus
from unsubscribe.browser import BrowserPool
from unsubscribe.executor import UnsubscribeExecutor, needs_escalation
from unsubscribe.links import find_unsubscribe_url
from unsubscribe.results import NoActionResult, UnsubscribeResult

logger = logging.getLogger(__name__)


# ============================================================================
# Scheduler Configuration
# ============================================================================

POLL_JOB_ID = "unsubscribe-queue-poll"

# Job defaults
job_defaults = {
    'coalesce': True,  # Collapse missed polls into one
    'max_instances': 1,  # Never overlap two polls
    'misfire_grace_time': 30
}


def _job_error_listener(event) -> None:
    logger.error(
        f"Job {event.job_id} failed with error: {event.exception}",
        exc_info=True
    )


# ============================================================================
# Queue
# ============================================================================


class UnsubscribeQueue:
    """
    Claims pending unsubscribe jobs on a timer and runs them concurrently.

    Attributes:
        store: Durable job store
        executor: Runs the HTTP tiers
        notifier: Publishes status updates to the job owner
        concurrency: Maximum number of jobs processed at once
        poll_interval: Seconds between polls
        retry_policy: What happens to a failed job
        browser_pool: Tier 3 pool, or None when browser automation is off

    Example:
        >>> queue = UnsubscribeQueue(store, executor, notifier, concurrency=3)
        >>> await queue.enqueue(email.id, "default_user")
        >>> stats = await queue.get_stats()
    """

    def __init__(
        self,
        store: JobStore,
        executor: UnsubscribeExecutor,
        notifier: Notifier,
        *,
        concurrency: int = 3,
        poll_interval: float = 2.0,
        retry_policy: Optional[RetryPolicy] = None,
        browser_pool: Optional[BrowserPool] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.browser_pool = browser_pool

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._active: Dict[str, asyncio.Task] = {}
        # Jobs handed to the browser pool; these do not hold a queue slot
        self._escalations: Dict[str, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._active)

    @property
    def escalated_job_ids(self) -> List[str]:
        return list(self._escalations)

    # ------------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------------

    async def enqueue(self, email_id: str, user_id: str, priority: int = 0) -> UnsubscribeJob:
        """
        Add an email to the queue and make sure the poll loop is running.

        Returns:
            The new job, or the email's existing pending/processing job
        """
        job = await self.store.create_job(
            email_id,
            user_id,
            priority=priority,
            max_attempts=self.retry_policy.max_attempts,
        )
        logger.info(f"Enqueued job {job.id} for email {email_id} (priority {priority})")

        if not self.is_running:
            self.start()

        return job

    async def enqueue_batch(
        self,
        email_ids: List[str],
        user_id: str,
        priority: int = 0,
    ) -> List[UnsubscribeJob]:
        jobs = []
        for email_id in email_ids:
            jobs.append(await self.enqueue(email_id, user_id, priority))
        return jobs

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def start(self) -> None:
        """Start the poll timer. Must be called from a running event loop."""
        if self.is_running:
            logger.warning("Unsubscribe queue already running")
            return

        logger.info(f"Starting unsubscribe queue (concurrency={self.concurrency})")

        self._scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )
        self._scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)
        self._scheduler.add_job(
            self._poll,
            trigger='interval',
            seconds=self.poll_interval,
            id=POLL_JOB_ID,
            name="Unsubscribe queue poll",
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()

    def stop(self) -> None:
        """
        Stop the poll timer.

        Jobs already in flight keep running; use ``drain`` to wait for them.
        """
        if not self.is_running:
            return

        logger.info("Stopping unsubscribe queue")
        self._scheduler.shutdown(wait=False)
        self._scheduler = None

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight jobs.

        Returns:
            True if nothing is left in flight
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        # Slot tasks may hand jobs to the browser pool while we wait
        while self._active or self._escalations:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(
                [*self._active.values(), *self._escalations.values()],
                timeout=remaining,
            )

        return not self._active and not self._escalations

    # ------------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------------

    async def _poll(self) -> None:
        try:
            await self.poll_once()
        except Exception as e:
            logger.error(f"Error polling unsubscribe queue: {e}", exc_info=True)

    async def poll_once(self) -> List[UnsubscribeJob]:
        """
        Claim as many jobs as there are free slots and dispatch them.

        Returns:
            Jobs claimed by this poll
        """
        slots = self.concurrency - len(self._active)
        if slots <= 0:
            return []

        jobs = await self.store.claim_jobs(slots)

        for job in jobs:
            logger.info(f"Processing job {job.id} (attempt {job.attempts})")
            task = asyncio.create_task(self._process(job), name=f"unsubscribe-job-{job.id}")
            self._active[job.id] = task
            task.add_done_callback(lambda _, job_id=job.id: self._active.pop(job_id, None))

        return jobs

    # ------------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------------

    async def _process(self, job: UnsubscribeJob) -> None:
        try:
            result = await self._run_tiers(job)
            if needs_escalation(result) and self.browser_pool is not None:
                self._hand_off(job, result)
                return
            await self._finalize(job, result)
        except Exception as e:
            await self._record_crash(job, e)

    def _hand_off(self, job: UnsubscribeJob, result: UnsubscribeResult) -> None:
        """
        Move a job to the browser pool.

        The job stays PROCESSING but gives up its queue slot, so jobs waiting
        for a browser never hold back the HTTP tiers.
        """
        logger.info(f"Escalating job {job.id} to browser automation")
        task = asyncio.create_task(self._escalate(job, result), name=f"unsubscribe-browser-{job.id}")
        self._escalations[job.id] = task
        task.add_done_callback(lambda _, job_id=job.id: self._escalations.pop(job_id, None))

    async def _escalate(self, job: UnsubscribeJob, result: UnsubscribeResult) -> None:
        try:
            address = await self.store.get_user_email_address(job.user_id)
            result = await self.browser_pool.unsubscribe(result.url, address)
            await self._finalize(job, result)
        except Exception as e:
            await self._record_crash(job, e)

    async def _record_crash(self, job: UnsubscribeJob, e: Exception) -> None:
        logger.error(f"Job {job.id} crashed: {e}", exc_info=True)
        try:
            await self._handle_failure(job, None, str(e) or e.__class__.__name__)
        except Exception as inner:
            logger.error(f"Could not record failure for job {job.id}: {inner}", exc_info=True)

    async def _run_tiers(self, job: UnsubscribeJob) -> UnsubscribeResult:
        email = await self.store.get_email(job.email_id)
        if email is None:
            return NoActionResult(
                status="failure",
                message="Email not found",
                error=f"Email {job.email_id} does not exist",
            )

        if not email.unsubscribe_url:
            url = find_unsubscribe_url(email.list_unsubscribe, email.body_html)
            if url:
                logger.info(f"Extracted unsubscribe URL for email {email.id}")
                await self.store.set_unsubscribe_url(email.id, url)
                email.unsubscribe_url = url

        return await self.executor.execute(email, job.user_id)

    async def _finalize(self, job: UnsubscribeJob, result: UnsubscribeResult) -> None:
        outcome = result.outcome
        payload = result.to_payload()

        if outcome == "success":
            if await self.store.finish_job(job.id, JobStatus.COMPLETED, payload):
                await self._mark_attempted(job)
                await self.notifier.notify(job.user_id, job.id, "success", result.message)

        elif outcome == "needs_confirmation":
            if await self.store.finish_job(job.id, JobStatus.NEEDS_CONFIRMATION, payload):
                await self._mark_attempted(job)
                await self.notifier.notify(job.user_id, job.id, "needs_confirmation", result.message)

        elif outcome == "no_url":
            # Nothing to retry without a link
            if await self.store.finish_job(job.id, JobStatus.FAILED, payload, error=result.message):
                await self.notifier.notify(job.user_id, job.id, "failed", result.message)

        else:
            error = getattr(result, "error", None) or result.message
            await self._handle_failure(job, payload, error)

    async def _handle_failure(
        self,
        job: UnsubscribeJob,
        payload: Optional[Dict[str, Any]],
        error: str,
    ) -> None:
        run_at = self.retry_policy.next_run_at(job.attempts, job.max_attempts, datetime.utcnow())

        if run_at is not None:
            if await self.store.reschedule_job(job.id, run_at, payload):
                logger.info(f"Job {job.id} failed ({error}), retrying at {run_at.isoformat()}")
            return

        logger.warning(f"Job {job.id} failed: {error}")
        if await self.store.finish_job(job.id, JobStatus.FAILED, payload, error=error):
            await self._mark_attempted(job)
            await self.notifier.notify(job.user_id, job.id, "failed", error)

    async def _mark_attempted(self, job: UnsubscribeJob) -> None:
        try:
            await self.store.set_unsubscribe_status(job.email_id, UnsubscribeStatus.ATTEMPTED)
        except EmailNotFoundError:
            logger.warning(f"Email {job.email_id} for job {job.id} no longer exists")

    # ------------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------------

    async def cancel_job(self, job_id: str) -> UnsubscribeJob:
        """
        Cancel a pending or needs-confirmation job.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is processing or already finished
        """
        job = await self.store.cancel_job(job_id)
        logger.info(f"Cancelled job {job_id}")
        return job

    async def get_job(self, job_id: str) -> Optional[UnsubscribeJob]:
        return await self.store.get_job(job_id)

    async def get_user_jobs(self, user_id: str, limit: int = 50) -> List[UnsubscribeJob]:
        return await self.store.get_user_jobs(user_id, limit)

    async def get_stats(self) -> Dict[str, Any]:
        """
        Queue statistics.

        Returns:
            Dictionary with a count per job status plus:
            - active_jobs: jobs holding a queue slot in this process
            - escalated_jobs: jobs waiting for or running in the browser pool
            - is_running: whether the poll timer is running
        """
        counts = await self.store.count_by_status()
        return {
            "pending": counts[JobStatus.PENDING.value],
            "processing": counts[JobStatus.PROCESSING.value],
            "completed": counts[JobStatus.COMPLETED.value],
            "failed": counts[JobStatus.FAILED.value],
            "needs_confirmation": counts[JobStatus.NEEDS_CONFIRMATION.value],
            "cancelled": counts[JobStatus.CANCELLED.value],
            "active_jobs": len(self._active),
            "escalated_jobs": len(self._escalations),
            "concurrency": self.concurrency,
            "is_running": self.is_running,
        }
