"""Shared default constants for the pendq library."""

# Priority given to a task that does not set one. Higher is served first.
DEFAULT_PRIORITY: int = 100

# Tasks claimed per runner loop iteration.
DEFAULT_CLAIM_BATCH_SIZE: int = 5

# How long an idle runner waits for a wake-up notification before
# re-checking the table on its own.
DEFAULT_POLL_INTERVAL_MS: int = 1_000

# Back-off after a failed claim/insert transaction. Grows exponentially
# up to DEFAULT_ERROR_BACKOFF_MAX_MS on consecutive failures.
DEFAULT_ERROR_BACKOFF_MS: int = 5_000
DEFAULT_ERROR_BACKOFF_MAX_MS: int = 60_000

# Returned by Task.next_try() to abandon a failed task.
NO_RETRY: int = -1

# NOTIFY channel fired by the insert trigger.
TASK_NEW_CHANNEL: str = 'pendq_task_new'
