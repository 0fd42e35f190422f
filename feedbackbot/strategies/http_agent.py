"""Strategies backed by the remote code-editing agent service."""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ValidationError

from feedbackbot.config import settings
from feedbackbot.errors import StrategyError
from feedbackbot.services.run_service import RunLogger
from feedbackbot.strategies.base import (
    ExecutionStrategy,
    ProgressCallback,
    StrategyRequest,
    StrategyResult,
    StrategySet,
)

logger = logging.getLogger("feedbackbot.strategies.http_agent")


class AgentLogLine(BaseModel):
    level: str = "info"
    message: str


class AgentJobEnvelope(BaseModel):
    status: Literal["success", "error"]
    result: dict[str, Any] | None = None
    error: str | None = None
    stages: list[str] = []
    logs: list[AgentLogLine] = []


class HttpAgentStrategy(ExecutionStrategy):
    """
    Runs one job on the agent service and blocks until it finishes.

    Protocol contract:
      POST {agent_url}/jobs/{kind}
      Body: {
        "job_id": "...",
        "repo": "owner/name",
        "access_token": "...",
        "issue": {"number": 12, "title": "...", "body": "..."},
        "credentials": {"api_key": "...", "oauth_credential": "..."},
        "guidance": {...}
      }
      Response: {
        "status": "success" | "error",
        "result": {"pr_number": 34, "pr_url": "...", "summary": "..."},
        "error": "..." (optional),
        "stages": ["cloning", "generating", ...],
        "logs": [{"level": "info", "message": "..."}]
      }
    """

    def __init__(
        self,
        kind: str,
        agent_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.kind = kind
        self.name = kind
        self.agent_url = (agent_url or settings.AGENT_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.AGENT_TIMEOUT_SECONDS
        self._transport = transport

    def _payload(self, request: StrategyRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "job_id": request.job_id,
            "project_id": request.project_id,
            "repo": request.repo,
            "access_token": request.access_token,
            "issue": {
                "number": request.issue_number,
                "title": request.issue_title,
                "body": request.issue_body,
            },
            "guidance": request.guidance,
        }
        if request.credentials is not None:
            payload["credentials"] = {
                "api_key": request.credentials.api_key,
                "oauth_credential": request.credentials.oauth_credential,
            }
        return payload

    async def run(
        self,
        request: StrategyRequest,
        run_logger: RunLogger,
        on_progress: ProgressCallback | None = None,
    ) -> StrategyResult:
        logger.info("Agent call: %s kind=%s job=%s", self.agent_url, self.kind, request.job_id)
        headers = {"X-Job-ID": request.job_id}
        if request.run_id:
            headers["X-Run-ID"] = request.run_id

        try:
            async with httpx.AsyncClient(
                base_url=self.agent_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    f"/jobs/{self.kind}", json=self._payload(request), headers=headers
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise StrategyError(self.kind, f"HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise StrategyError(self.kind, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise StrategyError(self.kind, "Agent response is not JSON") from exc

        try:
            envelope = AgentJobEnvelope.model_validate(data)
        except ValidationError as exc:
            raise StrategyError(
                self.kind,
                f"Invalid agent response schema: {exc.errors()[0].get('msg', 'validation error')}",
            ) from exc

        for line in envelope.logs:
            await run_logger.log(line.message, line.level)
        if on_progress is not None:
            for stage in envelope.stages:
                await on_progress(stage)

        if envelope.status == "error":
            raise StrategyError(self.kind, envelope.error or "Unknown agent error")

        result = envelope.result or {}
        return StrategyResult(
            pr_number=result.get("pr_number"),
            pr_url=result.get("pr_url"),
            summary=result.get("summary") or "",
        )


def default_strategies(transport: httpx.AsyncBaseTransport | None = None) -> StrategySet:
    return StrategySet(
        implement=HttpAgentStrategy("implement", transport=transport),
        setup=HttpAgentStrategy("setup", transport=transport),
        self_improve=HttpAgentStrategy("self-improve", transport=transport),
    )
