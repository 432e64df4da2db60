"""Scheduled and operator tasks.

This package contains jobs run from cron or by hand:
- Re-processing submissions stuck behind old processing locks
- Syncing a form definition and importing seed scoring rules
"""

from app.tasks.reprocess_unprocessed import run_reprocess_unprocessed_task
from app.tasks.sync_form import run_sync_form_task

__all__ = [
    "run_reprocess_unprocessed_task",
    "run_sync_form_task",
]
