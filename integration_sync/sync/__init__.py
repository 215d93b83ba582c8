"""Integration sync engine"""

from .batch import process_sync_batch
from .engine import (
    execute_full_sync,
    execute_pull_sync,
    execute_push_sync,
    prepare_full_sync,
    prepare_push_sync,
    retry_failed_sync,
)
from .retry import retry_with_backoff

__all__ = [
    "execute_full_sync",
    "execute_pull_sync",
    "execute_push_sync",
    "prepare_full_sync",
    "prepare_push_sync",
    "process_sync_batch",
    "retry_failed_sync",
    "retry_with_backoff",
]
