"""Repository access: installation-token minting and fallback to a personal token.

Installation tokens live about an hour and some jobs outlive that, so the
worker asks for a fresh one right before each execution instead of caching.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime

import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from feedbackbot.config import settings
from feedbackbot.connectors.github_client import GitHubClient
from feedbackbot.db.models import Project
from feedbackbot.errors import (
    AccessTokenUnavailableError,
    JobConfigurationError,
    RepositoryDetectionError,
)

logger = logging.getLogger("feedbackbot.github")

# GitHub rejects app JWTs valid for more than 10 minutes.
_APP_JWT_TTL_SECONDS = 540
_APP_JWT_CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class AccessToken:
    token: str
    source: str  # installation | personal
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"AccessToken(source={self.source!r}, expires_at={self.expires_at!r})"


def build_app_jwt(app_id: str, private_key: str, now: float | None = None) -> str:
    """Sign the RS256 JWT that authenticates as the GitHub App itself."""
    issued = int(now if now is not None else time.time())
    payload = {
        "iat": issued - _APP_JWT_CLOCK_SKEW_SECONDS,
        "exp": issued + _APP_JWT_TTL_SECONDS,
        "iss": str(app_id),
    }
    # Keys passed through env vars often carry escaped newlines.
    key = private_key.replace("\\n", "\n")
    return jwt.encode(payload, key, algorithm="RS256")


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


async def mint_installation_token(
    installation_id: int,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AccessToken:
    app_jwt = build_app_jwt(settings.GITHUB_APP_ID, settings.GITHUB_APP_PRIVATE_KEY)
    async with GitHubClient(app_jwt, transport=transport) as client:
        data = await client.create_installation_token(installation_id)
    logger.info("Minted installation token for installation %s", installation_id)
    return AccessToken(
        token=data["token"],
        source="installation",
        expires_at=_parse_expiry(data.get("expires_at")),
    )


async def resolve_access_token(
    db: AsyncSession,
    project_id: str | None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AccessToken:
    """Installation token when the project is linked to the app, else GITHUB_TOKEN.

    A ``project_id`` of ``None`` resolves the system-wide token only.
    Raises ``AccessTokenUnavailableError`` when neither source is configured.
    """
    installation_id = None
    if project_id is not None:
        project = await db.get(Project, project_id)
        if project is not None:
            installation_id = project.github_installation_id

    if installation_id and settings.github_app_configured:
        return await mint_installation_token(installation_id, transport=transport)

    if installation_id:
        logger.warning(
            "Project %s has installation %s but GITHUB_APP_ID/GITHUB_APP_PRIVATE_KEY are unset",
            project_id, installation_id,
        )

    if settings.GITHUB_TOKEN:
        return AccessToken(token=settings.GITHUB_TOKEN, source="personal")

    raise AccessTokenUnavailableError(project_id or "<system>")


async def detect_installation_repo(
    installation_id: int,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Return ``owner/name`` of the first repository the installation can access."""
    if not settings.github_app_configured:
        raise JobConfigurationError("GitHub App is not configured; cannot detect repository")
    token = await mint_installation_token(installation_id, transport=transport)
    async with GitHubClient(token.token, transport=transport) as client:
        repos = await client.list_installation_repositories()
    if not repos or not repos[0].get("full_name"):
        raise RepositoryDetectionError(
            f"Installation {installation_id} has no accessible repositories"
        )
    return repos[0]["full_name"]


PUBLIC_SUMMARY_LIMIT = 200


def failure_summary(message: str) -> str:
    """The part of a job error that is safe to show on a public issue.

    Only the first line up to its first ``": "`` is kept, so
    ``Failed after 3 attempts: <details>`` becomes ``Failed after 3 attempts``.
    """
    lines = (message or "").strip().splitlines()
    head = lines[0].split(": ", 1)[0] if lines else ""
    return (head or "unknown error")[:PUBLIC_SUMMARY_LIMIT]


async def mark_issue_failed(
    db: AsyncSession,
    project_id: str,
    issue_number: int,
    message: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Label the consumer's issue ``agent-failed`` and leave a short comment.

    Only a summary of *message* is posted; the full error stays in the run log.
    """
    project = await db.get(Project, project_id)
    if project is None or not project.github_repo or not issue_number:
        return
    token = await resolve_access_token(db, project_id, transport=transport)
    async with GitHubClient(token.token, transport=transport) as client:
        await client.add_issue_labels(project.github_repo, issue_number, ["agent-failed"])
        await client.create_issue_comment(
            project.github_repo,
            issue_number,
            "The automated agent could not complete this issue "
            f"({failure_summary(message)}). Details are in the run logs.",
        )
    logger.info("Labelled %s#%d as agent-failed", project.github_repo, issue_number)
