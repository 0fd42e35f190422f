"""LLM-backed classification of failed runs for the self-healing loop.

The classifier decides whether a failure was the tool's own fault (docs,
widget or agent bug) or not (consumer misconfiguration, transient outage).
Any problem talking to the model (transport, non-JSON text, unknown
category) yields ``None``.  Classification is advisory; it never fails a job.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Protocol

from pydantic import ValidationError

from feedbackbot.config import settings
from feedbackbot.connectors.llm_client import LLMCallError, LLMClient
from feedbackbot.schemas.classification import FailureClassification

logger = logging.getLogger("feedbackbot.classifier")

ISSUE_BODY_LIMIT = 1000
LAST_ERROR_LIMIT = 1000
LOG_TAIL_LIMIT = 3000


class LogLine(Protocol):
    level: str
    message: str


PROMPT_TEMPLATE = """\
You are analyzing a failed agent run. The agent tried to implement a change \
on a consumer's repository that uses the feedback-chat widget.

Classify this failure into ONE of these categories:
- docs_gap: installation instructions, CLAUDE.md or documented gotchas in the \
feedback-chat repo are incomplete or wrong, so the agent did not know how to \
handle a situation that should have been documented.
- widget_bug: the widget's source code (packages/widget/) has a bug such as \
wrong exports, broken CSS or incompatible patterns.
- agent_bug: the agent's own workflow logic (packages/agent/) is broken: \
cloning, validation, prompt construction and so on.
- consumer_error: the consumer's fault, e.g. bad config, missing env vars, \
incompatible dependencies or a project structure we should not need to support.
- transient: network timeout, rate limit, flaky CI, GitHub API outage or \
another temporary issue.

Job type: {job_type}

Original issue body:
{issue_body}

Last error:
{last_error}

Run logs (last entries):
{log_text}

Respond with ONLY a JSON object (no markdown, no code fences):
{{"category": "one_of_the_five", "analysis": "One paragraph explaining what \
went wrong and why this category.", "fix_summary": "One sentence: what should \
be changed in the feedback-chat repo to prevent this. Use 'N/A' for \
consumer_error and transient."}}"""


def format_log_tail(logs: Sequence[LogLine], limit: int = LOG_TAIL_LIMIT) -> str:
    """``[level] message`` lines, keeping only the last *limit* characters."""
    text = "\n".join(f"[{entry.level}] {entry.message}" for entry in logs)
    return text[-limit:] if limit else ""


def build_prompt(
    logs: Sequence[LogLine], last_error: str, issue_body: str, job_type: str
) -> str:
    return PROMPT_TEMPLATE.format(
        job_type=job_type,
        issue_body=(issue_body or "")[:ISSUE_BODY_LIMIT],
        last_error=(last_error or "")[:LAST_ERROR_LIMIT],
        log_text=format_log_tail(logs),
    )


def parse_classification(text: str) -> FailureClassification | None:
    """Strict parse: the reply must be a JSON object with a known category."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        logger.warning("Classifier reply is not JSON: %.200s", text)
        return None
    if not isinstance(data, dict):
        logger.warning("Classifier reply is not a JSON object")
        return None
    try:
        return FailureClassification.model_validate(data)
    except ValidationError as exc:
        logger.warning("Classifier reply rejected: %s", exc.errors()[0].get("msg", "validation error"))
        return None


async def classify_failure(
    *,
    logs: Sequence[LogLine],
    last_error: str | None,
    issue_body: str | None,
    job_type: str,
    client: LLMClient | None = None,
) -> FailureClassification | None:
    """Categorize a failed run, or return ``None`` when there is nothing to go on
    or the classification service misbehaves."""
    if not logs and not last_error:
        return None

    prompt = build_prompt(logs, last_error or "", issue_body or "", job_type)
    llm = client or LLMClient()
    try:
        response = await llm.complete(
            prompt,
            model=settings.CLASSIFIER_MODEL,
            temperature=0.0,
            max_tokens=1024,
            json_mode=True,
        )
    except LLMCallError as exc:
        logger.warning("Failure classification call failed: %s", exc)
        return None

    classification = parse_classification(response.get("text", ""))
    if classification is not None:
        logger.info("Classified failure as %s", classification.category)
    return classification
