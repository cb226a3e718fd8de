"""
Tests for the job store: claiming, completion, cancellation and email updates.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

import cleanup_retry_jobs
from jobs.retry import EXPONENTIAL_BACKOFF, SINGLE_ATTEMPT
from jobs.store import EmailNotFoundError, JobNotFoundError, JobStateError, JobStore
from models import Email, GmailCredentials, JobStatus, UnsubscribeStatus


# ============================================================================
# Job Creation
# ============================================================================


class TestCreateJob:
    """Tests for job creation."""

    @pytest.mark.asyncio
    async def test_new_job_is_pending(self, store: JobStore, make_email):
        email = await make_email()

        job = await store.create_job(email.id, "test_user")

        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert job.started_at is None
        assert job.completed_at is None
        assert job.scheduled_for <= datetime.utcnow()

    @pytest.mark.asyncio
    async def test_active_job_is_reused(self, store: JobStore, make_email):
        email = await make_email()

        first = await store.create_job(email.id, "test_user")
        second = await store.create_job(email.id, "test_user")

        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_finished_job_allows_new_one(self, store: JobStore, make_email):
        email = await make_email()
        first = await store.create_job(email.id, "test_user")
        await store.claim_jobs(1)
        await store.finish_job(first.id, JobStatus.FAILED, error="boom")

        second = await store.create_job(email.id, "test_user")

        assert second.id != first.id


# ============================================================================
# Claiming
# ============================================================================


class TestClaimJobs:
    """Tests for atomic claims."""

    @pytest.mark.asyncio
    async def test_claim_order_priority_then_age(self, store: JobStore, make_email):
        t0 = datetime.utcnow() - timedelta(minutes=10)
        emails = [await make_email() for _ in range(3)]

        a = await store.create_job(emails[0].id, "test_user", priority=5, scheduled_for=t0)
        b = await store.create_job(emails[1].id, "test_user", priority=5, scheduled_for=t0)
        c = await store.create_job(emails[2].id, "test_user", priority=10, scheduled_for=t0)

        # A is created after B
        await _set_created_at(store, a.id, t0 + timedelta(minutes=1))
        await _set_created_at(store, b.id, t0)
        await _set_created_at(store, c.id, t0 + timedelta(minutes=2))

        claimed = await store.claim_jobs(3)

        assert [job.id for job in claimed] == [c.id, b.id, a.id]

    @pytest.mark.asyncio
    async def test_claim_marks_processing(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")

        [claimed] = await store.claim_jobs(5)

        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING.value
        assert claimed.attempts == 1
        assert claimed.started_at is not None
        assert claimed.completed_at is None

    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_schedule(self, store: JobStore, make_email):
        later = datetime.utcnow() + timedelta(hours=1)
        due = [await store.create_job((await make_email()).id, "test_user") for _ in range(3)]
        await store.create_job((await make_email()).id, "test_user", scheduled_for=later)

        claimed = await store.claim_jobs(2)
        assert len(claimed) == 2

        claimed += await store.claim_jobs(10)
        assert sorted(job.id for job in claimed) == sorted(job.id for job in due)

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_job(self, store: JobStore, make_email):
        for _ in range(6):
            await store.create_job((await make_email()).id, "test_user")

        batches = await asyncio.gather(*[store.claim_jobs(6) for _ in range(4)])
        claimed_ids = [job.id for batch in batches for job in batch]

        assert len(claimed_ids) == 6
        assert len(set(claimed_ids)) == 6

        for job_id in claimed_ids:
            job = await store.get_job(job_id)
            assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_started_at_kept_on_reclaim(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")
        [first] = await store.claim_jobs(1)

        await store.reschedule_job(job.id, datetime.utcnow() - timedelta(seconds=1))
        [second] = await store.claim_jobs(1)

        assert second.attempts == 2
        assert second.started_at == first.started_at


# ============================================================================
# Completion and Cancellation
# ============================================================================


class TestFinishAndCancel:
    """Tests for terminal transitions."""

    @pytest.mark.asyncio
    async def test_finish_sets_completed_at(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")
        await store.claim_jobs(1)

        assert await store.finish_job(job.id, JobStatus.COMPLETED, {"method": "one-click"}, error="ignored")

        done = await store.get_job(job.id)
        assert done.status == JobStatus.COMPLETED.value
        assert done.completed_at is not None
        assert done.result == {"method": "one-click"}
        assert done.error is None

    @pytest.mark.asyncio
    async def test_finish_requires_processing(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")

        assert not await store.finish_job(job.id, JobStatus.COMPLETED)
        assert (await store.get_job(job.id)).status == JobStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_finish_rejects_non_completion_status(self, store: JobStore):
        with pytest.raises(ValueError):
            await store.finish_job("any", JobStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_cancel_pending(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")

        cancelled = await store.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.completed_at is not None
        assert await store.claim_jobs(5) == []

    @pytest.mark.asyncio
    async def test_cancel_processing_rejected(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")
        await store.claim_jobs(1)

        with pytest.raises(JobStateError):
            await store.cancel_job(job.id)

        assert (await store.get_job(job.id)).status == JobStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_cancel_needs_confirmation_keeps_completed_at(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")
        await store.claim_jobs(1)
        await store.finish_job(job.id, JobStatus.NEEDS_CONFIRMATION)
        finished_at = (await store.get_job(job.id)).completed_at

        cancelled = await store.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.completed_at == finished_at

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, store: JobStore, make_email):
        email = await make_email()
        job = await store.create_job(email.id, "test_user")
        await store.claim_jobs(1)
        await store.finish_job(job.id, JobStatus.COMPLETED)

        with pytest.raises(JobStateError):
            await store.cancel_job(job.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, store: JobStore):
        with pytest.raises(JobNotFoundError):
            await store.cancel_job("missing")

    @pytest.mark.asyncio
    async def test_fail_stale_retries(self, store: JobStore, make_email):
        retried = await store.create_job((await make_email()).id, "test_user")
        fresh = await store.create_job((await make_email()).id, "test_user")
        await _set_created_at(store, fresh.id, datetime.utcnow() + timedelta(seconds=5))
        await store.claim_jobs(1)
        await store.reschedule_job(retried.id, datetime.utcnow() + timedelta(hours=1))

        assert await store.fail_stale_retries() == 1

        assert (await store.get_job(retried.id)).status == JobStatus.FAILED.value
        assert (await store.get_job(fresh.id)).status == JobStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_count_by_status(self, store: JobStore, make_email):
        for _ in range(2):
            await store.create_job((await make_email()).id, "test_user")
        await store.claim_jobs(1)

        counts = await store.count_by_status()

        assert counts["PENDING"] == 1
        assert counts["PROCESSING"] == 1
        assert counts["CANCELLED"] == 0


# ============================================================================
# Emails
# ============================================================================


class TestEmails:
    """Tests for email operations."""

    @pytest.mark.asyncio
    async def test_save_email_duplicate_returns_existing(self, store: JobStore):
        first = await store.save_email(Email(user_id="u1", gmail_id="g1", subject="First"))
        again = await store.save_email(Email(user_id="u1", gmail_id="g1", subject="Second"))

        assert again.id == first.id
        assert again.subject == "First"

    @pytest.mark.asyncio
    async def test_set_unsubscribe_status(self, store: JobStore, make_email):
        email = await make_email()

        updated = await store.set_unsubscribe_status(email.id, UnsubscribeStatus.SUCCEEDED)

        assert updated.unsubscribe_status == "SUCCEEDED"

    @pytest.mark.asyncio
    async def test_set_unsubscribe_status_unknown(self, store: JobStore):
        with pytest.raises(EmailNotFoundError):
            await store.set_unsubscribe_status("missing", UnsubscribeStatus.FAILED)

    @pytest.mark.asyncio
    async def test_list_emails_missing_url(self, store: JobStore, make_email):
        missing = await make_email(list_unsubscribe="<https://ex.com/u>")
        await make_email(unsubscribe_url="https://ex.com/has")
        await make_email()

        emails = await store.list_emails_missing_url()

        assert [e.id for e in emails] == [missing.id]

    @pytest.mark.asyncio
    async def test_user_email_address(self, store: JobStore, session_factory):
        async with session_factory() as session:
            session.add(GmailCredentials(
                user_id="u1",
                email_address="me@example.com",
                access_token="x",
                refresh_token="y",
                token_expiry=datetime.utcnow(),
                scopes="[]",
            ))
            await session.commit()

        assert await store.get_user_email_address("u1") == "me@example.com"
        assert await store.get_user_email_address("nobody") is None


async def _set_created_at(store: JobStore, job_id: str, created_at: datetime) -> None:
    from sqlalchemy import update
    from models import UnsubscribeJob

    async with store.session_factory() as session:
        await session.execute(
            update(UnsubscribeJob).where(UnsubscribeJob.id == job_id).values(created_at=created_at)
        )
        await session.commit()


# ============================================================================
# Retry Cleanup Script
# ============================================================================


class TestCleanupRetryJobs:
    """Tests for the retry cleanup script."""

    @pytest.mark.asyncio
    async def test_fails_waiting_retries(self, store: JobStore, make_email, monkeypatch, capsys):
        monkeypatch.setattr(cleanup_retry_jobs.settings, "RETRY_POLICY", SINGLE_ATTEMPT)
        job = await store.create_job((await make_email()).id, "test_user")
        await store.claim_jobs(1)
        await store.reschedule_job(job.id, datetime.utcnow() + timedelta(hours=1))

        assert await cleanup_retry_jobs.main(store) == 1

        failed = await store.get_job(job.id)
        assert failed.status == JobStatus.FAILED.value
        assert failed.completed_at is not None
        assert failed.error == "Cancelled - retry logic has been disabled"
        assert "Failed 1 job(s)" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_backoff_policy_left_alone(self, store: JobStore, make_email, monkeypatch):
        monkeypatch.setattr(cleanup_retry_jobs.settings, "RETRY_POLICY", EXPONENTIAL_BACKOFF)
        job = await store.create_job((await make_email()).id, "test_user")
        await store.claim_jobs(1)
        await store.reschedule_job(job.id, datetime.utcnow() + timedelta(hours=1))

        assert await cleanup_retry_jobs.main(store) == 0
        assert (await store.get_job(job.id)).status == JobStatus.PENDING.value


@pytest.mark.asyncio
async def test_owned_email_ids(store: JobStore, make_email):
    mine = await make_email()
    theirs = await make_email(user_id="other")

    owned = await store.owned_email_ids("test_user", [mine.id, theirs.id, "missing"])

    assert owned == {mine.id}
    assert await store.owned_email_ids("test_user", []) == set()
