"""AI moderation and summarization.

This module provides the AiClient class for an OpenAI-compatible HTTP API and
the two job handlers that consume its results:

- ModerationHandler classifies a post body and applies the verdict
- SummaryHandler summarizes a thread and stores the text

Both handlers write through the mutation engine and let errors propagate so
that the job queue retries them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from forum_stage.core.settings import Settings
from forum_stage.schemas.jobs import ModerationJob, NotificationJob, SummaryJob
from forum_stage.services.jobs import ClaimedJob

if TYPE_CHECKING:
    from forum_stage.services.threads import ThreadService

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
ERROR_BODY_PREVIEW = 300


class AiServiceError(RuntimeError):
    """Raised when the AI service cannot be reached or rejects a request."""


class AiDisabledError(AiServiceError):
    """Raised when AI calls are attempted without an API key."""


@dataclass(frozen=True)
class ModerationVerdict:
    """Outcome of classifying one piece of text."""

    flagged: bool
    categories: dict[str, Any] = field(default_factory=dict)


class AiClient:
    """HTTP client for the moderation and responses endpoints."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._settings.ai_enabled

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise AiDisabledError("AI_API_KEY is not configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self._settings.ai_api_base_url.rstrip("/"),
                    timeout=httpx.Timeout(self._settings.ai_request_timeout_seconds),
                    headers={"Authorization": f"Bearer {self._settings.ai_api_key}"},
                    transport=self._transport,
                )
        return self._client

    async def _post(self, path: str, body: Mapping[str, Any], timeout_ms: int | None) -> Any:
        client = await self._ensure_client()
        timeout = (
            httpx.Timeout(timeout_ms / 1000)
            if timeout_ms
            else httpx.Timeout(self._settings.ai_request_timeout_seconds)
        )
        try:
            response = await client.post(path, json=dict(body), timeout=timeout)
        except httpx.TimeoutException as exc:
            raise AiServiceError(f"AI request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise AiServiceError(f"AI request to {path} failed: {exc}") from exc

        if response.status_code >= HTTP_BAD_REQUEST:
            raise AiServiceError(
                f"AI service responded with {response.status_code}: "
                f"{response.text[:ERROR_BODY_PREVIEW]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise AiServiceError(f"AI service returned invalid JSON for {path}") from exc

    async def moderate(self, text: str, timeout_ms: int | None = None) -> ModerationVerdict:
        """Classify ``text`` and return the first result's verdict."""
        data = await self._post(
            "/moderations",
            {"model": self._settings.ai_moderation_model, "input": text},
            timeout_ms,
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not results:
            return ModerationVerdict(flagged=False)
        first = results[0] or {}
        return ModerationVerdict(
            flagged=bool(first.get("flagged")),
            categories=dict(first.get("categories") or {}),
        )

    async def summarize(
        self,
        prompt: str,
        timeout_ms: int | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Request a summary for ``prompt`` and return the raw response body."""
        body: dict[str, Any] = {
            "model": self._settings.ai_summary_model,
            "input": [{"role": "user", "content": prompt}],
        }
        if max_tokens:
            body["max_output_tokens"] = max_tokens
        data = await self._post("/responses", body, timeout_ms)
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


def _non_blank(pieces: list[Any]) -> list[str]:
    return [piece for piece in pieces if isinstance(piece, str) and piece.strip()]


def _content_entry_text(entry: Any) -> str | None:
    if not isinstance(entry, Mapping):
        return None
    text = entry.get("text")
    if isinstance(text, str):
        return text
    if isinstance(text, Mapping) and text.get("value"):
        return str(text["value"])
    if isinstance(entry.get("output_text"), list):
        return "\n".join(_non_blank(entry["output_text"]))
    return None


def _output_item_text(item: Any) -> str | None:
    if not isinstance(item, Mapping):
        return None
    content = item.get("content")
    if isinstance(content, list):
        joined = "\n".join(_non_blank([_content_entry_text(entry) for entry in content]))
        if joined:
            return joined
    if isinstance(item.get("output_text"), list):
        return "\n".join(_non_blank(item["output_text"]))
    if isinstance(item.get("text"), str):
        return item["text"]
    return None


def extract_summary_text(response: Mapping[str, Any]) -> str | None:
    """Pull the generated text out of a responses-API body.

    Checks, in order: a top-level ``output_text`` (string or list of strings),
    then every ``output`` item, reading its ``content`` entries (``text``
    string, ``text.value`` or an ``output_text`` list), its own
    ``output_text`` list, or its ``text`` string. Blank pieces are dropped and
    the remainder joined with newlines.

    Returns:
        The summary text, or None when the response carries none.
    """
    top = response.get("output_text")
    if isinstance(top, str) and top.strip():
        return top
    if isinstance(top, list):
        joined = "\n".join(_non_blank(top))
        if joined:
            return joined

    output = response.get("output")
    if not isinstance(output, list):
        return None
    derived = "\n".join(_non_blank([_output_item_text(item) for item in output]))
    return derived or None


class ModerationHandler:
    """Apply the classifier's verdict to a post."""

    def __init__(self, ai: AiClient, threads: ThreadService) -> None:
        self._ai = ai
        self._threads = threads

    async def __call__(
        self, payload: ModerationJob | SummaryJob | NotificationJob, job: ClaimedJob
    ) -> None:
        if not isinstance(payload, ModerationJob):
            raise TypeError(f"moderation handler received a {payload.kind} job")

        verdict = await self._ai.moderate(payload.content, payload.timeout_ms)
        feedback = json.dumps(verdict.categories, indent=2) if verdict.flagged else None
        await self._threads.apply_moderation_result(
            post_id=payload.post_id,
            thread_id=payload.thread_id,
            flagged=verdict.flagged,
            feedback=feedback,
        )
        if verdict.flagged:
            logger.info("Post %s flagged by moderation job %s", payload.post_id, job.id)


class SummaryHandler:
    """Store a generated thread summary."""

    def __init__(self, ai: AiClient, threads: ThreadService) -> None:
        self._ai = ai
        self._threads = threads

    async def __call__(
        self, payload: ModerationJob | SummaryJob | NotificationJob, job: ClaimedJob
    ) -> None:
        if not isinstance(payload, SummaryJob):
            raise TypeError(f"summary handler received a {payload.kind} job")

        response = await self._ai.summarize(
            payload.prompt,
            timeout_ms=payload.timeout_ms,
            max_tokens=payload.max_tokens,
        )
        summary = extract_summary_text(response)
        if not summary:
            logger.warning("Summary job %s produced no output. Skipping update.", job.id)
            return
        await self._threads.apply_summary(payload.thread_id, summary)
