"""Task manager: periodic background jobs.

Runs the settlement reconcile sweep and the ledger statistics job on
asyncio tasks.
"""

from __future__ import annotations

from tapchannel.taskmanager.manager import CronJob, TaskManager

__all__ = ["CronJob", "TaskManager"]
