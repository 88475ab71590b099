"""
Background job workers module.

Job registries, the single worker loop per operation family and the
handlers for sync, batch restore, batch deletion, mbox and EML import
and account deletion.
"""

from mailarchiver.workers.jobs import (
    Job,
    JobAlreadyRunningError,
    JobFamily,
    JobRegistry,
    JobRunner,
    JobSetupError,
    JobStatus,
)

__all__ = [
    "Job",
    "JobAlreadyRunningError",
    "JobFamily",
    "JobRegistry",
    "JobRunner",
    "JobSetupError",
    "JobStatus",
]
