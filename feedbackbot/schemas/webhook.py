"""Pydantic models for the GitHub issues webhook."""

from __future__ import annotations

from pydantic import BaseModel


class IssueLabel(BaseModel):
    name: str


class IssueUser(BaseModel):
    login: str | None = None


class Issue(BaseModel):
    number: int
    title: str | None = ""
    body: str | None = ""
    labels: list[IssueLabel] = []
    user: IssueUser | None = None

    @property
    def label_names(self) -> set[str]:
        return {label.name for label in self.labels}


class IssuesEvent(BaseModel):
    action: str
    issue: Issue | None = None


class WebhookOut(BaseModel):
    status: str
    job_id: str | None = None
    run_id: str | None = None
