"""Strategy contract.

A strategy receives everything it needs in a ``StrategyRequest``, streams
its progress through the ``RunLogger`` and returns a ``StrategyResult`` on
success.  Any exception it raises is treated as a failed attempt by the
worker's retry policy; its message decides whether the failure is permanent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from feedbackbot.services.credential_service import ResolvedCredentials
from feedbackbot.services.run_service import RunLogger

# Called with a stage name (cloning, generating, ...) as the strategy advances.
ProgressCallback = Callable[[str], Awaitable[None]]


@dataclass
class StrategyRequest:
    job_id: str
    project_id: str
    repo: str
    access_token: str
    issue_number: int = 0
    issue_title: str = ""
    issue_body: str = ""
    run_id: str | None = None
    credentials: ResolvedCredentials | None = None
    guidance: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"StrategyRequest(job_id={self.job_id!r}, repo={self.repo!r}, "
            f"issue_number={self.issue_number!r}, run_id={self.run_id!r})"
        )


@dataclass
class StrategyResult:
    pr_number: int | None = None
    pr_url: str | None = None
    summary: str = ""

    @property
    def produced_pr(self) -> bool:
        return self.pr_number is not None or bool(self.pr_url)


class ExecutionStrategy(ABC):
    name: str = "strategy"

    @abstractmethod
    async def run(
        self,
        request: StrategyRequest,
        run_logger: RunLogger,
        on_progress: ProgressCallback | None = None,
    ) -> StrategyResult:
        """Execute to completion or raise."""


@dataclass
class StrategySet:
    """One strategy per job type."""

    implement: ExecutionStrategy
    setup: ExecutionStrategy
    self_improve: ExecutionStrategy
