"""Correlation ids on log records, in both output formats."""

from __future__ import annotations

import io
import json
import logging

import pytest

from feedbackbot.utils.logger import build_handler, ctx_job_id, ctx_worker_id


@pytest.fixture
def capture():
    def _capture(log_format: str):
        stream = io.StringIO()
        log = logging.getLogger(f"feedbackbot.tests.{log_format}")
        log.handlers[:] = [build_handler(log_format, stream)]
        log.propagate = False
        log.setLevel(logging.INFO)
        return log, stream

    return _capture


@pytest.fixture
def bound_job():
    worker_token = ctx_worker_id.set("w1")
    job_token = ctx_job_id.set("job-42")
    yield
    ctx_job_id.reset(job_token)
    ctx_worker_id.reset(worker_token)


class TestCorrelation:
    def test_json_records_carry_bound_ids(self, capture, bound_job):
        log, stream = capture("json")

        log.info("claimed")

        record = json.loads(stream.getvalue())
        assert record["message"] == "claimed"
        assert record["level"] == "INFO"
        assert record["worker_id"] == "w1"
        assert record["job_id"] == "job-42"
        assert "run_id" not in record

    def test_text_lines_append_bound_ids(self, capture, bound_job):
        log, stream = capture("text")

        log.warning("re-queued")

        assert stream.getvalue().rstrip().endswith("re-queued [worker=w1 job=job-42]")

    def test_unbound_context_adds_nothing(self, capture):
        log, stream = capture("text")

        log.info("idle")

        assert stream.getvalue().rstrip().endswith("- idle")
