"""Pydantic models for failure classification and self-improvement payloads."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, field_validator

FailureCategory = Literal["docs_gap", "widget_bug", "agent_bug", "consumer_error", "transient"]

# Categories that are the tool's own fault and therefore warrant a self_improve job.
OWN_FAULT_CATEGORIES: frozenset[str] = frozenset({"docs_gap", "widget_bug", "agent_bug"})


class FailureClassification(BaseModel):
    category: FailureCategory
    analysis: str = ""
    fix_summary: str = ""

    @field_validator("analysis", "fix_summary", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value)

    @property
    def is_own_fault(self) -> bool:
        return self.category in OWN_FAULT_CATEGORIES


class SelfImprovePayload(BaseModel):
    """JSON document carried in a self_improve job's ``issue_body``."""

    fix_summary: str
    original_issue_body: str = ""
    log_excerpts: str = ""
