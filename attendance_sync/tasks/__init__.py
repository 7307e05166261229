"""
Background task management for attendance sync.
"""

from .sync_tasks import (
    SyncTaskManager,
    get_next_scheduled_run,
    retry_failed_jobs,
    run_scheduled_sync
)

__all__ = [
    "SyncTaskManager",
    "get_next_scheduled_run",
    "retry_failed_jobs",
    "run_scheduled_sync"
]
