"""
Services for getting mail into the unsubscribe pipeline.
"""

from .ingestion import EmailIngestor, backfill_unsubscribe_links, extract_email_body

__all__ = ["EmailIngestor", "backfill_unsubscribe_links", "extract_email_body"]
