"""Execution credential resolution.

A project may store its own agent credential (a long-lived API key or a
refreshable OAuth credential).  When it has none, the process-wide defaults
from settings are used.  Having neither is fatal for the job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feedbackbot.config import settings
from feedbackbot.db.models import Credential
from feedbackbot.errors import CredentialsNotFoundError

logger = logging.getLogger("feedbackbot.credentials")

CREDENTIAL_KINDS = ("api_key", "oauth_token")


@dataclass(frozen=True)
class ResolvedCredentials:
    api_key: str | None = None
    oauth_credential: str | None = None
    source: str = "project"  # project | system

    def __repr__(self) -> str:
        # never render secret values
        return (
            f"ResolvedCredentials(api_key={'***' if self.api_key else None}, "
            f"oauth_credential={'***' if self.oauth_credential else None}, source={self.source!r})"
        )


async def get_credential(db: AsyncSession, project_id: str) -> Credential | None:
    result = await db.execute(select(Credential).where(Credential.project_id == project_id))
    return result.scalar_one_or_none()


async def resolve_credentials(db: AsyncSession, project_id: str) -> ResolvedCredentials:
    """Return the project's credential, else the system default.

    Raises ``CredentialsNotFoundError`` when neither exists.
    """
    row = await get_credential(db, project_id)
    if row is not None and row.kind in CREDENTIAL_KINDS and row.value:
        logger.debug("Using project-scoped %s for project %s", row.kind, project_id)
        if row.kind == "oauth_token":
            return ResolvedCredentials(oauth_credential=row.value, source="project")
        return ResolvedCredentials(api_key=row.value, source="project")

    if row is not None:
        logger.warning(
            "Ignoring unusable credential row for project %s (kind=%s)", project_id, row.kind
        )

    if settings.AGENT_API_KEY or settings.AGENT_OAUTH_TOKEN:
        logger.debug("Using system-wide credentials for project %s", project_id)
        return ResolvedCredentials(
            api_key=settings.AGENT_API_KEY,
            oauth_credential=settings.AGENT_OAUTH_TOKEN,
            source="system",
        )

    raise CredentialsNotFoundError(project_id)
