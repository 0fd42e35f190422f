"""Job type and status vocabulary."""

from __future__ import annotations

from enum import Enum


class JobType(str, Enum):
    IMPLEMENT = "implement"
    SETUP = "setup"
    SELF_IMPROVE = "self_improve"

    @classmethod
    def parse(cls, value: str | None) -> "JobType":
        """Rows written before job_type existed carry NULL and mean implement."""
        if not value:
            return cls.IMPLEMENT
        return cls(value)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.DONE.value, JobStatus.FAILED.value})

# Failures of these job types are never classified, so the self-healing loop
# cannot recurse on itself.
NO_FAILURE_HANDLING = frozenset({JobType.SELF_IMPROVE, JobType.SETUP})


def skips_failure_handling(job_type: str | None) -> bool:
    try:
        return JobType.parse(job_type) in NO_FAILURE_HANDLING
    except ValueError:
        return False
