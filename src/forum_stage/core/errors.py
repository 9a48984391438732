"""Typed errors raised by the thread/post mutation engine.

Every error in this module is raised inside a transaction boundary, so the
transaction is rolled back and no partial state is committed. The API layer maps
them onto HTTP status codes.
"""

from __future__ import annotations


class ForumError(RuntimeError):
    """Base exception for all domain failures surfaced to callers."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ForumError):
    """A thread, post, parent post or user is absent or belongs elsewhere."""

    status_code = 404


class ForbiddenError(ForumError):
    """The actor lacks ownership, the thread refuses writes, or the action contradicts itself."""

    status_code = 403


class ConflictError(ForumError):
    """A uniqueness constraint was hit.

    Slug collisions are resolved internally and never reach callers.
    """

    status_code = 409


class ValidationError(ForumError):
    """Input was syntactically valid but semantically empty (e.g. a blank body)."""

    status_code = 422
