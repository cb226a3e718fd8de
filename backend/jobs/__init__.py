"""
Unsubscribe job queue.

Durable job store, retry policy, status notifier and the polling scheduler.
"""

from jobs.store import (
    JobStore,
    JobStoreError,
    JobNotFoundError,
    JobStateError,
    EmailNotFoundError,
)

from jobs.retry import (
    RetryPolicy,
    SINGLE_ATTEMPT,
    EXPONENTIAL_BACKOFF,
)

from jobs.notifier import (
    Notifier,
    NotificationBus,
    LoggingNotificationBus,
    WebhookNotificationBus,
    InMemoryNotificationBus,
    build_notification_bus,
    user_channel,
)

from jobs.queue import UnsubscribeQueue

__all__ = [
    # Store
    "JobStore",
    "JobStoreError",
    "JobNotFoundError",
    "JobStateError",
    "EmailNotFoundError",
    # Retry
    "RetryPolicy",
    "SINGLE_ATTEMPT",
    "EXPONENTIAL_BACKOFF",
    # Notifier
    "Notifier",
    "NotificationBus",
    "LoggingNotificationBus",
    "WebhookNotificationBus",
    "InMemoryNotificationBus",
    "build_notification_bus",
    "user_channel",
    # Queue
    "UnsubscribeQueue",
]
