"""GitHub REST API connector.

Covers the few endpoints the worker itself touches: installation token
minting, installation repository listing and issue labels/comments.  Pull
request creation lives inside the execution strategies.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from feedbackbot.config import settings
from feedbackbot.errors import GitHubAPIError

logger = logging.getLogger("feedbackbot.connectors.github")

_ACCEPT = "application/vnd.github+json"
_API_VERSION = "2022-11-28"


class GitHubClient:
    """Thin async wrapper over the GitHub REST API.

    ``token`` is sent as a Bearer credential and may be an app JWT, an
    installation token or a personal access token depending on the endpoint.
    """

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.GITHUB_API_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": _ACCEPT,
                "X-GitHub-Api-Version": _API_VERSION,
            },
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = ""
            try:
                detail = exc.response.json().get("message", "")
            except ValueError:
                detail = exc.response.text[:200]
            raise GitHubAPIError(exc.response.status_code, detail or method + " " + path) from exc
        except httpx.RequestError as exc:
            raise GitHubAPIError(None, str(exc)) from exc
        if not resp.content:
            return None
        return resp.json()

    # ── App installation ────────────────────────────────────────

    async def create_installation_token(self, installation_id: int) -> dict[str, Any]:
        """Mint an installation access token.  Requires an app JWT as ``token``."""
        data = await self._request("POST", f"/app/installations/{installation_id}/access_tokens")
        if not isinstance(data, dict) or not data.get("token"):
            raise GitHubAPIError(None, "installation token response missing 'token'")
        return data

    async def list_installation_repositories(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/installation/repositories", params={"per_page": 100})
        return list((data or {}).get("repositories") or [])

    # ── Issues ──────────────────────────────────────────────────

    async def add_issue_labels(self, repo: str, issue_number: int, labels: list[str]) -> None:
        await self._request("POST", f"/repos/{repo}/issues/{issue_number}/labels", json={"labels": labels})

    async def create_issue_comment(self, repo: str, issue_number: int, body: str) -> None:
        await self._request("POST", f"/repos/{repo}/issues/{issue_number}/comments", json={"body": body})
