"""
Durable job store backed by SQLAlchemy.

Every operation opens its own session so concurrently running jobs never
share one. State transitions are conditional updates (``WHERE status = ...``)
so two pollers, in this process or another, cannot claim or finish the same
job twice.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    Email,
    GmailCredentials,
    JobStatus,
    TERMINAL_STATUSES,
    UnsubscribeJob,
    UnsubscribeStatus,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Custom Exceptions
# ============================================================================


class JobStoreError(Exception):
    """Base exception for job store errors."""
    pass


class JobNotFoundError(JobStoreError):
    """Raised when a job id does not exist."""
    pass


class JobStateError(JobStoreError):
    """Raised when a transition is not allowed from the job's current status."""
    pass


class EmailNotFoundError(JobStoreError):
    """Raised when an email id does not exist."""
    pass


def _values(statuses) -> List[str]:
    return [status.value for status in statuses]


# ============================================================================
# Job Store
# ============================================================================


class JobStore:
    """
    CRUD and conditional updates for unsubscribe jobs and their emails.

    Attributes:
        session_factory: async_sessionmaker producing AsyncSession objects
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------------

    async def create_job(
        self,
        email_id: str,
        user_id: str,
        priority: int = 0,
        max_attempts: int = 3,
        scheduled_for: Optional[datetime] = None,
    ) -> UnsubscribeJob:
        """
        Create a PENDING job for an email.

        If the email already has a PENDING or PROCESSING job, that job is
        returned instead of creating a second one.
        """
        async with self.session_factory() as session:
            existing = await session.execute(
                select(UnsubscribeJob)
                .where(UnsubscribeJob.email_id == email_id)
                .where(UnsubscribeJob.status.in_(_values(ACTIVE_STATUSES)))
                .limit(1)
            )
            active = existing.scalar_one_or_none()
            if active is not None:
                logger.info(f"Email {email_id} already has active job {active.id}, skipping enqueue")
                return active

            now = datetime.utcnow()
            job = UnsubscribeJob(
                email_id=email_id,
                user_id=user_id,
                priority=priority,
                max_attempts=max_attempts,
                status=JobStatus.PENDING.value,
                scheduled_for=scheduled_for or now,
                created_at=now,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def get_job(self, job_id: str) -> Optional[UnsubscribeJob]:
        async with self.session_factory() as session:
            return await session.get(UnsubscribeJob, job_id)

    async def get_user_jobs(self, user_id: str, limit: int = 50) -> List[UnsubscribeJob]:
        """Most recent jobs first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(UnsubscribeJob)
                .where(UnsubscribeJob.user_id == user_id)
                .order_by(UnsubscribeJob.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim_jobs(self, limit: int, now: Optional[datetime] = None) -> List[UnsubscribeJob]:
        """
        Atomically claim up to ``limit`` eligible PENDING jobs.

        Candidates are ordered by priority (highest first) then creation
        time (oldest first). Each candidate is claimed with a conditional
        update; a job that another poller claimed in between is skipped.

        Returns:
            Claimed jobs, now PROCESSING, in claim order
        """
        if limit <= 0:
            return []

        now = now or datetime.utcnow()
        claimed: List[UnsubscribeJob] = []

        async with self.session_factory() as session:
            candidates = await session.execute(
                select(UnsubscribeJob.id)
                .where(UnsubscribeJob.status == JobStatus.PENDING.value)
                .where(UnsubscribeJob.scheduled_for <= now)
                .order_by(UnsubscribeJob.priority.desc(), UnsubscribeJob.created_at.asc())
                .limit(limit)
            )
            candidate_ids = list(candidates.scalars().all())

            for job_id in candidate_ids:
                result = await session.execute(
                    update(UnsubscribeJob)
                    .where(UnsubscribeJob.id == job_id)
                    .where(UnsubscribeJob.status == JobStatus.PENDING.value)
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempts=UnsubscribeJob.attempts + 1,
                        started_at=func.coalesce(UnsubscribeJob.started_at, now),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                if result.rowcount == 1:
                    job = await session.get(UnsubscribeJob, job_id, populate_existing=True)
                    claimed.append(job)
                else:
                    logger.debug(f"Job {job_id} was claimed elsewhere")

        return claimed

    async def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Move a PROCESSING job to a terminal status.

        ``error`` is only recorded for FAILED.

        Returns:
            True if the job was PROCESSING and has been updated
        """
        if status not in TERMINAL_STATUSES or status == JobStatus.CANCELLED:
            raise ValueError(f"{status} is not a completion status")

        async with self.session_factory() as session:
            updated = await session.execute(
                update(UnsubscribeJob)
                .where(UnsubscribeJob.id == job_id)
                .where(UnsubscribeJob.status == JobStatus.PROCESSING.value)
                .values(
                    status=status.value,
                    completed_at=datetime.utcnow(),
                    result=result,
                    error=error if status == JobStatus.FAILED else None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if updated.rowcount != 1:
            logger.warning(f"Job {job_id} was not PROCESSING, {status.value} not recorded")
            return False
        return True

    async def reschedule_job(
        self,
        job_id: str,
        run_at: datetime,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Return a PROCESSING job to PENDING for a later retry."""
        async with self.session_factory() as session:
            updated = await session.execute(
                update(UnsubscribeJob)
                .where(UnsubscribeJob.id == job_id)
                .where(UnsubscribeJob.status == JobStatus.PROCESSING.value)
                .values(status=JobStatus.PENDING.value, scheduled_for=run_at, result=result)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return updated.rowcount == 1

    async def cancel_job(self, job_id: str) -> UnsubscribeJob:
        """
        Cancel a PENDING or NEEDS_CONFIRMATION job.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is PROCESSING or already finished
        """
        async with self.session_factory() as session:
            updated = await session.execute(
                update(UnsubscribeJob)
                .where(UnsubscribeJob.id == job_id)
                .where(UnsubscribeJob.status.in_(_values(CANCELLABLE_STATUSES)))
                .values(
                    status=JobStatus.CANCELLED.value,
                    completed_at=func.coalesce(UnsubscribeJob.completed_at, datetime.utcnow()),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            job = await session.get(UnsubscribeJob, job_id, populate_existing=True)

        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")

        if updated.rowcount != 1:
            if job.status == JobStatus.PROCESSING:
                raise JobStateError("Cannot cancel job that is currently processing")
            raise JobStateError(f"Cannot cancel job in status {job.status}")

        return job

    async def count_by_status(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UnsubscribeJob.status, func.count()).group_by(UnsubscribeJob.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def fail_stale_retries(self) -> int:
        """
        Fail PENDING jobs left over from the backoff policy (attempts > 0).

        Returns:
            Number of jobs failed
        """
        async with self.session_factory() as session:
            updated = await session.execute(
                update(UnsubscribeJob)
                .where(UnsubscribeJob.status == JobStatus.PENDING.value)
                .where(UnsubscribeJob.attempts > 0)
                .values(
                    status=JobStatus.FAILED.value,
                    completed_at=datetime.utcnow(),
                    error="Cancelled - retry logic has been disabled",
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return updated.rowcount

    # ------------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------------

    async def get_email(self, email_id: str) -> Optional[Email]:
        async with self.session_factory() as session:
            return await session.get(Email, email_id)

    async def owned_email_ids(self, user_id: str, email_ids: List[str]) -> Set[str]:
        """The subset of ``email_ids`` that exist and belong to ``user_id``."""
        if not email_ids:
            return set()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Email.id)
                .where(Email.id.in_(email_ids))
                .where(Email.user_id == user_id)
            )
            return set(result.scalars().all())

    async def save_email(self, email: Email) -> Email:
        """
        Insert an email, or return the stored row if the same message was
        saved concurrently (unique user_id + gmail_id).
        """
        async with self.session_factory() as session:
            session.add(email)
            try:
                await session.commit()
                await session.refresh(email)
                return email
            except IntegrityError:
                await session.rollback()
                logger.info(f"Email {email.gmail_id} already stored for {email.user_id}")

        async with self.session_factory() as session:
            result = await session.execute(
                select(Email)
                .where(Email.user_id == email.user_id)
                .where(Email.gmail_id == email.gmail_id)
            )
            return result.scalar_one()

    async def set_unsubscribe_url(self, email_id: str, url: Optional[str]) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Email)
                .where(Email.id == email_id)
                .values(unsubscribe_url=url, updated_at=datetime.utcnow())
            )
            await session.commit()

    async def set_unsubscribe_status(
        self,
        email_id: str,
        status: Optional[UnsubscribeStatus],
    ) -> Email:
        """
        Update the email's badge state.

        Raises:
            EmailNotFoundError: If the email does not exist
        """
        async with self.session_factory() as session:
            email = await session.get(Email, email_id)
            if email is None:
                raise EmailNotFoundError(f"Email not found: {email_id}")
            email.unsubscribe_status = status.value if status else None
            email.updated_at = datetime.utcnow()
            await session.commit()
            await session.refresh(email)
            return email

    async def mark_archived(self, email_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Email)
                .where(Email.id == email_id)
                .values(archived=True, updated_at=datetime.utcnow())
            )
            await session.commit()

    async def get_user_email_address(self, user_id: str) -> Optional[str]:
        """Mailbox address of the user, used to fill unsubscribe forms."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(GmailCredentials.email_address).where(GmailCredentials.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def list_emails_missing_url(
        self,
        limit: int = 500,
        after: Optional[Email] = None,
    ) -> List[Email]:
        """
        Emails with stored unsubscribe signals but no extracted URL.

        Ordered by (created_at, id). Pass the last email of the previous page
        as ``after`` to continue past emails that still have no URL.
        """
        stmt = (
            select(Email)
            .where(Email.unsubscribe_url.is_(None))
            .where((Email.list_unsubscribe.is_not(None)) | (Email.body_html.is_not(None)))
        )
        if after is not None:
            stmt = stmt.where(
                or_(
                    Email.created_at > after.created_at,
                    and_(Email.created_at == after.created_at, Email.id > after.id),
                )
            )

        async with self.session_factory() as session:
            result = await session.execute(
                stmt.order_by(Email.created_at.asc(), Email.id.asc()).limit(limit)
            )
            return list(result.scalars().all())
