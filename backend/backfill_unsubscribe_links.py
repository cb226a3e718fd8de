"""
One-time script to fill in unsubscribe links for emails stored before link
extraction ran at ingestion time.

This script:
1. Finds stored emails with a List-Unsubscribe header or body but no URL
2. Runs the link extractor over them
3. Saves any URL found

Run with: python backfill_unsubscribe_links.py [batch_size]
"""

import asyncio
import logging
import sys

from db import AsyncSessionLocal, init_db
from jobs.store import JobStore
from services.ingestion import backfill_unsubscribe_links


async def main(batch_size: int) -> None:
    print("Starting unsubscribe link backfill...")

    await init_db()
    counts = await backfill_unsubscribe_links(JobStore(AsyncSessionLocal), batch_size=batch_size)

    print(f"\nChecked {counts['checked']} emails")
    print(f"Updated {counts['updated']} emails with an unsubscribe URL")

    if counts["checked"] and not counts["updated"]:
        print("No links found. These emails need manual review.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    batch_size = int(sys.argv[1]) if len(sys.argv) > 1 else 500
    asyncio.run(main(batch_size))
