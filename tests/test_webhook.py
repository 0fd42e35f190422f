"""Issue webhook: signature check, filtering and job + run creation."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from conftest import add_project
from feedbackbot.api.webhook import verify_signature
from feedbackbot.db.engine import get_db
from feedbackbot.db.models import Job, PipelineRun
from feedbackbot.main import app


def _sign(body: bytes, secret: str = "s3cret") -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _issue_event(action="opened", labels=("feedback-bot",), number=12) -> bytes:
    return json.dumps(
        {
            "action": action,
            "issue": {
                "number": number,
                "title": "Dark mode",
                "body": "Please add a dark theme.",
                "labels": [{"name": name} for name in labels],
                "user": {"login": "octocat"},
            },
        }
    ).encode()


@pytest.fixture
async def client(session_factory):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _post(client, project_id, body: bytes, *, event="issues", signature=None):
    return await client.post(
        f"/api/webhook/{project_id}",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-GitHub-Event": event,
            "X-Hub-Signature-256": signature if signature is not None else _sign(body),
        },
    )


async def _all(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(model))).scalars().all()


class TestVerifySignature:
    def test_valid_signature(self):
        assert verify_signature(b"{}", _sign(b"{}"), "s3cret") is True

    def test_wrong_secret(self):
        assert verify_signature(b"{}", _sign(b"{}", "other"), "s3cret") is False

    def test_missing_header_or_secret(self):
        assert verify_signature(b"{}", None, "s3cret") is False
        assert verify_signature(b"{}", _sign(b"{}"), None) is False


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_returns_ok(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestReceiveWebhook:
    @pytest.mark.asyncio
    async def test_labelled_issue_queues_job_and_run(self, client, session_factory):
        project = await add_project(session_factory)

        resp = await _post(client, project.id, _issue_event())

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "queued"

        jobs = await _all(session_factory, Job)
        runs = await _all(session_factory, PipelineRun)
        assert [j.id for j in jobs] == [data["job_id"]]
        assert [r.id for r in runs] == [data["run_id"]]
        assert jobs[0].job_type == "implement"
        assert jobs[0].status == "pending"
        assert jobs[0].github_issue_number == 12
        assert jobs[0].issue_title == "Dark mode"
        assert runs[0].triggered_by == "octocat"
        assert runs[0].stage == "queued"

    @pytest.mark.asyncio
    async def test_unknown_project_is_404(self, client):
        resp = await _post(client, "nope", _issue_event())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_bad_signature_is_403(self, client, session_factory):
        project = await add_project(session_factory)

        resp = await _post(client, project.id, _issue_event(), signature="sha256=deadbeef")

        assert resp.status_code == 403
        assert await _all(session_factory, Job) == []

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, client, session_factory):
        project = await add_project(session_factory)

        resp = await _post(client, project.id, b'{"zen": "hi"}', event="ping")

        assert resp.json()["status"] == "ignored"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            _issue_event(action="closed"),
            _issue_event(labels=()),
            _issue_event(labels=("feedback-bot", "in-progress")),
            _issue_event(labels=("feedback-bot", "agent-failed")),
        ],
    )
    async def test_non_trigger_deliveries_are_ignored(self, client, session_factory, body):
        project = await add_project(session_factory)

        resp = await _post(client, project.id, body)

        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"
        assert await _all(session_factory, Job) == []

    @pytest.mark.asyncio
    async def test_malformed_payload_is_400(self, client, session_factory):
        project = await add_project(session_factory)

        resp = await _post(client, project.id, b'{"issue": {"number": "x"}}')

        assert resp.status_code == 400
