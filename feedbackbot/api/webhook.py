"""Issue webhook receiver: turns labelled GitHub issues into implement jobs."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from feedbackbot.db.engine import get_db
from feedbackbot.db.models import Project
from feedbackbot.schemas.webhook import IssuesEvent, WebhookOut
from feedbackbot.services import run_service
from feedbackbot.worker.enqueue import enqueue_implement

logger = logging.getLogger("feedbackbot.api.webhook")

router = APIRouter()

TRIGGER_LABEL = "feedback-bot"
SKIP_LABELS = frozenset({"in-progress", "agent-failed"})
TRIGGER_ACTIONS = frozenset({"opened", "reopened"})


def verify_signature(body: bytes, header_signature: str | None, secret: str | None) -> bool:
    """Check ``X-Hub-Signature-256: sha256=<hex>`` against HMAC-SHA256(secret, body)."""
    if not secret or not header_signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(header_signature.encode(), expected.encode())


@router.post(
    "/webhook/{project_id}",
    response_model=WebhookOut,
    summary="Receive a GitHub issues webhook for a project",
)
async def receive_webhook(
    project_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Annotated[str | None, Header()] = None,
    x_github_event: Annotated[str | None, Header()] = None,
):
    """Queue an implement job for a newly opened ``feedback-bot`` issue.

    Every other delivery (other events, other actions, unlabelled issues or
    issues the agent already touched) is acknowledged with ``ignored``.
    The job and its pipeline run are written in one transaction.
    """
    body = await request.body()

    project = await db.get(Project, project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    if not verify_signature(body, x_hub_signature_256, project.webhook_secret):
        logger.warning("Rejected webhook for project %s: invalid signature", project_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    if x_github_event != "issues":
        return WebhookOut(status="ignored")

    try:
        event = IssuesEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed issues payload"
        ) from exc

    issue = event.issue
    if event.action not in TRIGGER_ACTIONS or issue is None:
        return WebhookOut(status="ignored")

    labels = issue.label_names
    if TRIGGER_LABEL not in labels or labels & SKIP_LABELS:
        return WebhookOut(status="ignored")

    job = enqueue_implement(
        db,
        project_id=project.id,
        github_issue_number=issue.number,
        issue_title=issue.title or "",
        issue_body=issue.body or "",
    )
    run = await run_service.create_run(
        db,
        project.id,
        issue.number,
        triggered_by=issue.user.login if issue.user else None,
    )
    await db.commit()

    logger.info(
        "Queued job %s (run %s) for %s issue #%d",
        job.id, run.id, project.github_repo or project.id, issue.number,
    )
    return WebhookOut(status="queued", job_id=job.id, run_id=run.id)
