# src/forum_stage/services/mentions.py
"""Mention extraction and recipient resolution."""

from __future__ import annotations

import re
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from forum_stage.models.user import User

MENTION_PATTERN = re.compile(r"@([a-z0-9_.-]{3,20})", re.IGNORECASE)


def extract_mention_handles(body: str) -> list[str]:
    """Return the distinct lowercase handles mentioned in ``body``, in order of appearance."""
    seen: dict[str, None] = {}
    for match in MENTION_PATTERN.finditer(body or ""):
        seen.setdefault(match.group(1).lower(), None)
    return list(seen)


async def resolve_mention_recipients(
    session: AsyncSession,
    handles: Sequence[str],
    exclude_user_id: str | None = None,
) -> list[User]:
    """Look up the users behind ``handles``, skipping unknown handles and the actor.

    Results keep the order in which handles were mentioned.
    """
    if not handles:
        return []
    result = await session.execute(select(User).where(User.handle.in_(list(handles))))
    by_handle = {user.handle.lower(): user for user in result.scalars()}
    recipients: list[User] = []
    for handle in handles:
        user = by_handle.get(handle)
        if user is None or user.id == exclude_user_id:
            continue
        recipients.append(user)
    return recipients
