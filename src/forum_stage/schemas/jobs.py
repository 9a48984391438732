"""Job payload schemas.

The three job kinds form one tagged union discriminated by ``kind`` so that a
stored payload can be parsed back into exactly one variant and dispatched to the
matching handler.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from forum_stage.models.job import BACKOFF_EXPONENTIAL, BACKOFF_FIXED


class ModerationJob(BaseModel):
    """Classify a post body and apply the verdict."""

    kind: Literal["moderation"] = "moderation"
    post_id: str
    thread_id: str
    author_id: str
    content: str
    language: str | None = None
    timeout_ms: int | None = None


class SummaryJob(BaseModel):
    """Summarize a thread from its title and opening post."""

    kind: Literal["summary"] = "summary"
    thread_id: str
    requester_id: str
    prompt: str
    max_tokens: int | None = None
    timeout_ms: int | None = None


class NotificationJob(BaseModel):
    """Deliver an event envelope to the outbound webhook."""

    kind: Literal["notification"] = "notification"
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    webhook_url: str
    retry_limit: int | None = None
    recipient_ids: list[str] = Field(default_factory=list)


JobPayload = Annotated[
    Union[ModerationJob, SummaryJob, NotificationJob],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[ModerationJob | SummaryJob | NotificationJob] = TypeAdapter(
    JobPayload
)


def parse_job_payload(data: dict[str, Any]) -> ModerationJob | SummaryJob | NotificationJob:
    """Parse a stored payload dictionary into its tagged variant."""
    return _payload_adapter.validate_python(data)


class Backoff(BaseModel):
    """Retry delay policy; ``delay`` is in seconds."""

    type: Literal["exponential", "fixed"] = BACKOFF_EXPONENTIAL
    delay: float = Field(2.0, ge=0)

    def delay_for(self, attempts_made: int) -> float:
        """Return the delay before the next attempt after ``attempts_made`` failures."""
        if self.type == BACKOFF_FIXED:
            return self.delay
        return self.delay * (2 ** max(attempts_made - 1, 0))


class JobOptions(BaseModel):
    """Per-job delivery options."""

    attempts: int = Field(3, ge=1)
    backoff: Backoff = Field(default_factory=Backoff)
    remove_on_complete: bool = True
    delay: float = Field(0.0, ge=0, description="Seconds before the first attempt")
