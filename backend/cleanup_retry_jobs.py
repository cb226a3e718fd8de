"""
One-time script to fail unsubscribe jobs left waiting for a retry after the
retry policy is switched to single_attempt.

This script:
1. Checks that RETRY_POLICY is single_attempt
2. Marks PENDING jobs that have already been attempted as FAILED
3. Leaves jobs that were never attempted alone

Run with: python cleanup_retry_jobs.py
"""

import asyncio
import logging
from typing import Optional

from config import settings
from db import AsyncSessionLocal, init_db
from jobs.retry import SINGLE_ATTEMPT
from jobs.store import JobStore


async def main(store: Optional[JobStore] = None) -> int:
    print("Starting retry job cleanup...")

    if settings.RETRY_POLICY != SINGLE_ATTEMPT:
        print(f"Retry policy is {settings.RETRY_POLICY}; pending retries are still scheduled. Nothing to do.")
        return 0

    if store is None:
        await init_db()
        store = JobStore(AsyncSessionLocal)

    failed = await store.fail_stale_retries()

    print(f"\nFailed {failed} job(s) that were waiting for a retry")
    if failed:
        print("These emails can be enqueued again from the dashboard.")

    return failed


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
