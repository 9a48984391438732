"""Tests for the AI client, summary extraction and the AI job handlers."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from forum_stage.schemas.jobs import ModerationJob, NotificationJob, SummaryJob
from forum_stage.services.ai import (
    AiClient,
    AiDisabledError,
    AiServiceError,
    ModerationHandler,
    SummaryHandler,
    extract_summary_text,
)
from forum_stage.services.jobs import ClaimedJob
from tests.conftest import make_settings


def _claimed(kind: str = "moderation") -> ClaimedJob:
    return ClaimedJob(
        id="job-1",
        queue=f"ai-{kind}",
        kind=kind,
        payload={},
        attempts_made=0,
        max_attempts=3,
        created_at=datetime.now(UTC),
    )


def _client(handler) -> AiClient:
    settings = make_settings(ai_api_key="sk-test", ai_api_base_url="https://ai.test/v1/")
    return AiClient(settings, transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        ({"output_text": "Plain summary"}, "Plain summary"),
        ({"output_text": ["line one", "  ", "line two"]}, "line one\nline two"),
        (
            {"output": [{"content": [{"type": "output_text", "text": "from content"}]}]},
            "from content",
        ),
        ({"output": [{"content": [{"text": {"value": "nested value"}}]}]}, "nested value"),
        ({"output": [{"content": [{"output_text": ["a", "b"]}]}]}, "a\nb"),
        ({"output": [{"output_text": ["item level"]}]}, "item level"),
        ({"output": [{"text": "bare text"}, {"text": "more"}]}, "bare text\nmore"),
        ({"output_text": "   ", "output": [{"text": "fallback"}]}, "fallback"),
        ({"output": [{"content": [{"text": "   "}]}]}, None),
        ({"output": "not a list"}, None),
        ({}, None),
    ],
)
def test_extract_summary_text(response, expected):
    assert extract_summary_text(response) == expected


async def test_moderate_posts_to_moderations_endpoint():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"results": [{"flagged": True, "categories": {"harassment": True}}]}
        )

    client = _client(handler)
    verdict = await client.moderate("you are awful")
    await client.close()

    assert verdict.flagged is True
    assert verdict.categories == {"harassment": True}
    request = seen[0]
    assert str(request.url) == "https://ai.test/v1/moderations"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {
        "model": "text-moderation-latest",
        "input": "you are awful",
    }


async def test_moderate_without_results_is_not_flagged():
    client = _client(lambda request: httpx.Response(200, json={"results": []}))
    verdict = await client.moderate("hello")
    assert verdict.flagged is False
    await client.close()


async def test_summarize_sends_prompt_and_token_limit():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"output_text": "summary"})

    client = _client(handler)
    response = await client.summarize("Summarize this", max_tokens=200)
    await client.close()

    assert response == {"output_text": "summary"}
    assert bodies[0]["input"] == [{"role": "user", "content": "Summarize this"}]
    assert bodies[0]["max_output_tokens"] == 200


async def test_error_status_raises():
    client = _client(lambda request: httpx.Response(503, text="overloaded"))
    with pytest.raises(AiServiceError, match="503"):
        await client.moderate("hello")
    await client.close()


async def test_timeout_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    client = _client(handler)
    with pytest.raises(AiServiceError, match="timed out"):
        await client.summarize("prompt", timeout_ms=50)
    await client.close()


async def test_invalid_json_raises():
    client = _client(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(AiServiceError, match="invalid JSON"):
        await client.moderate("hello")
    await client.close()


async def test_disabled_client_refuses_calls():
    client = AiClient(make_settings(ai_api_key=None))
    assert client.enabled is False
    with pytest.raises(AiDisabledError):
        await client.moderate("hello")


async def test_moderation_handler_applies_flagged_verdict(mocker):
    ai = mocker.AsyncMock(spec=AiClient)
    ai.moderate.return_value = mocker.Mock(flagged=True, categories={"hate": True})
    threads = mocker.AsyncMock()
    payload = ModerationJob(post_id="p1", thread_id="t1", author_id="u1", content="text")

    await ModerationHandler(ai, threads)(payload, _claimed())

    threads.apply_moderation_result.assert_awaited_once_with(
        post_id="p1",
        thread_id="t1",
        flagged=True,
        feedback=json.dumps({"hate": True}, indent=2),
    )


async def test_moderation_handler_applies_clean_verdict(mocker):
    ai = mocker.AsyncMock(spec=AiClient)
    ai.moderate.return_value = mocker.Mock(flagged=False, categories={})
    threads = mocker.AsyncMock()
    payload = ModerationJob(post_id="p1", thread_id="t1", author_id="u1", content="text")

    await ModerationHandler(ai, threads)(payload, _claimed())

    threads.apply_moderation_result.assert_awaited_once_with(
        post_id="p1", thread_id="t1", flagged=False, feedback=None
    )


async def test_moderation_handler_propagates_errors(mocker):
    ai = mocker.AsyncMock(spec=AiClient)
    ai.moderate.side_effect = AiServiceError("down")
    threads = mocker.AsyncMock()
    payload = ModerationJob(post_id="p1", thread_id="t1", author_id="u1", content="text")

    with pytest.raises(AiServiceError):
        await ModerationHandler(ai, threads)(payload, _claimed())
    threads.apply_moderation_result.assert_not_awaited()


async def test_summary_handler_stores_text(mocker):
    ai = mocker.AsyncMock(spec=AiClient)
    ai.summarize.return_value = {"output": [{"content": [{"text": "- key point"}]}]}
    threads = mocker.AsyncMock()
    payload = SummaryJob(thread_id="t1", requester_id="u1", prompt="p", max_tokens=100)

    await SummaryHandler(ai, threads)(payload, _claimed("summary"))

    ai.summarize.assert_awaited_once_with("p", timeout_ms=None, max_tokens=100)
    threads.apply_summary.assert_awaited_once_with("t1", "- key point")


async def test_summary_handler_skips_empty_output(mocker):
    ai = mocker.AsyncMock(spec=AiClient)
    ai.summarize.return_value = {"output": []}
    threads = mocker.AsyncMock()
    payload = SummaryJob(thread_id="t1", requester_id="u1", prompt="p")

    await SummaryHandler(ai, threads)(payload, _claimed("summary"))

    threads.apply_summary.assert_not_awaited()


async def test_handlers_reject_other_job_kinds(mocker):
    notification = NotificationJob(event="post.created", webhook_url="http://hook")
    with pytest.raises(TypeError):
        await ModerationHandler(mocker.AsyncMock(), mocker.AsyncMock())(notification, _claimed())
    with pytest.raises(TypeError):
        await SummaryHandler(mocker.AsyncMock(), mocker.AsyncMock())(notification, _claimed())
