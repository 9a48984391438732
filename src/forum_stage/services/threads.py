"""Thread and post mutation engine.

This module provides the ThreadService class, the only writer of threads,
posts, reactions and mentions. Every mutation runs in one transaction that keeps
the denormalized aggregates (post counts, participant sets, reply and reaction
counters, user activity counters) consistent with the rows they summarize.
Once the transaction commits, the service:

- Invalidates the cached read paths the mutation affected
- Dispatches background jobs (moderation, summarization)
- Records notifications and broadcasts realtime events

Each post-commit step is best effort. A failure there is logged and never
reverses or fails the committed mutation.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy import String, case, cast, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from forum_stage.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from forum_stage.core.settings import Settings
from forum_stage.core.side_effects import best_effort
from forum_stage.db.time import utcnow
from forum_stage.models.mention import Mention
from forum_stage.models.post import (
    MODERATION_STATE_APPROVED,
    MODERATION_STATE_FLAGGED,
    MODERATION_STATES,
    Post,
)
from forum_stage.models.reaction import (
    REACTION_DOWNVOTE,
    REACTION_TYPES,
    REACTION_UPVOTE,
    Reaction,
)
from forum_stage.models.thread import (
    THREAD_STATUS_LOCKED,
    THREAD_STATUS_OPEN,
    THREAD_STATUSES,
    Thread,
)
from forum_stage.models.user import User
from forum_stage.schemas.jobs import ModerationJob, SummaryJob
from forum_stage.schemas.post import AuthorSummary, PostOut, ReactionResult
from forum_stage.schemas.thread import ThreadCreated, ThreadDetail, ThreadOut, ThreadPage
from forum_stage.services.cache import CacheService, ThreadCacheKeys
from forum_stage.services.jobs import JobQueue
from forum_stage.services.mentions import extract_mention_handles, resolve_mention_recipients
from forum_stage.services.notifications import NotificationService
from forum_stage.services.realtime import RealtimeHub

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
SLUG_ATTEMPTS = 5

SUMMARY_PROMPT = (
    "Summarize the following discussion thread into key bullet points.\n"
    "Title: {title}\n"
    "Initial post: {body}"
)

_REACTION_COUNTERS = {
    REACTION_UPVOTE: "upvotes_count",
    REACTION_DOWNVOTE: "downvotes_count",
}


def slugify(title: str) -> str:
    """Lowercase ``title`` and reduce it to ``a-z0-9`` words joined by single hyphens."""
    value = title.strip().lower()
    value = re.sub(r"[^a-z0-9\s-]", "", value)
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "thread"


def build_summary_prompt(title: str, body: str) -> str:
    return SUMMARY_PROMPT.format(title=title, body=body)


def _normalize_tags(tags: Iterable[str] | None) -> list[str]:
    normalized: list[str] = []
    for tag in tags or ():
        cleaned = tag.strip().lower()
        if cleaned and cleaned not in normalized:
            normalized.append(cleaned)
    return normalized


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    return max(1, page), min(max(1, limit), MAX_PAGE_SIZE)


def _advance(column: Any, moment: datetime) -> Any:
    # Never move a timestamp backwards when writers commit out of order.
    return case((column < moment, moment), else_=column)


@dataclass
class _ReactionChange:
    result: ReactionResult
    post_author_id: str
    newly_set: bool
    changed: bool


class ThreadService:
    """Transactional mutations and cached reads for threads and posts."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        cache: CacheService,
        jobs: JobQueue,
        notifications: NotificationService,
        realtime: RealtimeHub,
        settings: Settings,
    ) -> None:
        self._sessions = sessions
        self._cache = cache
        self._jobs = jobs
        self._notifications = notifications
        self._realtime = realtime
        self._settings = settings

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def create_thread(
        self,
        author_id: str,
        title: str,
        body: str,
        tags: Sequence[str] | None = None,
    ) -> ThreadCreated:
        """Open a thread together with its first post.

        Args:
            author_id: Authenticated author.
            title: Thread title; the slug is derived from it once.
            body: Body of the opening post.
            tags: Optional tags, normalized to a lowercase ordered set.

        Returns:
            The thread and its first post enriched with author display data.

        Raises:
            ValidationError: If the title or body is blank.
            NotFoundError: If the author does not exist.
        """
        clean_title = title.strip()
        if not clean_title:
            raise ValidationError("Thread title cannot be empty.")
        if not body.strip():
            raise ValidationError("Post body cannot be empty.")
        clean_tags = _normalize_tags(tags)

        created: tuple[ThreadCreated, list[str]] | None = None
        for attempt in range(SLUG_ATTEMPTS):
            try:
                created = await self._insert_thread(
                    author_id,
                    clean_title,
                    body,
                    clean_tags,
                    random_suffix=attempt == SLUG_ATTEMPTS - 1,
                )
                break
            except ConflictError:
                logger.info(
                    "Slug collision for %r, retrying (attempt %d)", clean_title, attempt + 1
                )
        if created is None:
            raise ConflictError("Could not allocate a unique slug.")

        result, mentioned_ids = created
        thread, first_post = result.thread, result.first_post

        await self._queue_moderation(first_post)
        await self._queue_summary(thread, author_id, body)

        await self._invalidate(author_id=author_id)

        recipients = [user_id for user_id in mentioned_ids if user_id != author_id]
        if recipients:
            await self._notify_mentions(first_post, recipients)

        await best_effort(
            "broadcast thread.created",
            lambda: self._realtime.emit_global(
                "thread.created", {"thread": thread, "first_post": first_post}
            ),
        )
        return result

    async def _insert_thread(
        self,
        author_id: str,
        title: str,
        body: str,
        tags: list[str],
        *,
        random_suffix: bool,
    ) -> tuple[ThreadCreated, list[str]]:
        now = utcnow()
        async with self._sessions() as session, session.begin():
            author = await session.get(User, author_id)
            if author is None:
                raise NotFoundError("User not found.")

            slug = await self._unique_slug(session, slugify(title))
            if random_suffix:
                slug = f"{slug}-{uuid4().hex[:6]}"

            thread = Thread(
                title=title,
                slug=slug,
                author_id=author_id,
                tags=tags,
                status=THREAD_STATUS_OPEN,
                last_activity_at=now,
                posts_count=1,
                participants_count=1,
                participant_ids=[author_id],
                created_at=now,
                updated_at=now,
            )
            session.add(thread)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ConflictError(f"Slug {slug!r} is already taken.") from exc

            mentioned = await resolve_mention_recipients(
                session, extract_mention_handles(body), exclude_user_id=author_id
            )
            post = Post(
                thread_id=thread.id,
                author_id=author_id,
                body=body,
                mentions=[user.handle for user in mentioned],
                moderation_state=MODERATION_STATE_APPROVED,
                created_at=now,
                updated_at=now,
            )
            session.add(post)
            await session.flush()
            await self._replace_mentions(session, post.id, mentioned)

            await self._bump_user(session, author_id, threads=1, posts=1, active_at=now)
            await session.refresh(thread)
            await session.refresh(post)

            created = ThreadCreated(
                thread=ThreadOut.model_validate(thread),
                first_post=self._post_out(post, {author.id: author}),
            )
            return created, [user.id for user in mentioned]

    async def delete_thread(self, actor_id: str, thread_id: str) -> None:
        """Delete a thread with all of its posts, reactions and mentions.

        Raises:
            NotFoundError: If the thread does not exist.
            ForbiddenError: If ``actor_id`` is not the thread author.
        """
        async with self._sessions() as session, session.begin():
            thread = await session.get(Thread, thread_id)
            if thread is None:
                raise NotFoundError("Thread not found.")
            if thread.author_id != actor_id:
                raise ForbiddenError("Only the thread author can delete this thread.")

            post_ids = select(Post.id).where(Post.thread_id == thread_id)
            await session.execute(delete(Reaction).where(Reaction.post_id.in_(post_ids)))
            await session.execute(delete(Mention).where(Mention.post_id.in_(post_ids)))

            per_author = await session.execute(
                select(Post.author_id, func.count(Post.id))
                .where(Post.thread_id == thread_id)
                .group_by(Post.author_id)
            )
            post_counts = {author: count for author, count in per_author.all()}

            await session.execute(
                update(Post)
                .where(Post.thread_id == thread_id)
                .values(parent_post_id=None)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                delete(Post)
                .where(Post.thread_id == thread_id)
                .execution_options(synchronize_session=False)
            )
            for post_author_id, count in post_counts.items():
                await self._bump_user(session, post_author_id, posts=-count)
            await self._bump_user(session, thread.author_id, threads=-1)
            await session.delete(thread)

        event = {"thread_id": thread_id}
        await best_effort(
            "broadcast thread.deleted",
            lambda: self._realtime.emit_to_thread(thread_id, "thread.deleted", event),
        )
        await best_effort(
            "broadcast thread.deleted global",
            lambda: self._realtime.emit_global("thread.deleted", event),
        )
        await self._invalidate(thread_id=thread_id, author_id=actor_id)

    async def update_thread_status(self, thread_id: str, status: str) -> ThreadOut:
        """Set a thread's status. Authorization is the caller's responsibility."""
        if status not in THREAD_STATUSES:
            raise ValidationError(f"Unknown thread status {status!r}.")

        async with self._sessions() as session, session.begin():
            thread = await session.get(Thread, thread_id)
            if thread is None:
                raise NotFoundError("Thread not found.")
            thread.status = status
            await session.flush()
            await session.refresh(thread)
            out = ThreadOut.model_validate(thread)

        await self._invalidate(thread_id=thread_id, author_id=out.author_id)
        await best_effort(
            "broadcast thread.updated",
            lambda: self._realtime.emit_to_thread(thread_id, "thread.updated", {"thread": out}),
        )
        await best_effort(
            "broadcast thread.updated global",
            lambda: self._realtime.emit_global("thread.updated", {"thread": out}),
        )
        return out

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    async def create_post(
        self,
        author_id: str,
        thread_id: str,
        body: str,
        parent_post_id: str | None = None,
    ) -> PostOut:
        """Reply in an open thread.

        Raises:
            ValidationError: If the body is blank.
            NotFoundError: If the thread, the author or the parent post is missing,
                or the parent belongs to another thread.
            ForbiddenError: If the thread is locked or archived.
        """
        if not body.strip():
            raise ValidationError("Post body cannot be empty.")

        now = utcnow()
        async with self._sessions() as session, session.begin():
            thread = await self._load_thread_for_update(session, thread_id)
            if thread.status != THREAD_STATUS_OPEN:
                raise ForbiddenError("Thread is not accepting new posts.")

            author = await session.get(User, author_id)
            if author is None:
                raise NotFoundError("User not found.")

            if parent_post_id is not None:
                parent = await session.get(Post, parent_post_id)
                if parent is None or parent.thread_id != thread_id:
                    raise NotFoundError("Parent post not found.")

            mentioned = await resolve_mention_recipients(
                session, extract_mention_handles(body), exclude_user_id=author_id
            )
            post = Post(
                thread_id=thread_id,
                author_id=author_id,
                body=body,
                mentions=[user.handle for user in mentioned],
                parent_post_id=parent_post_id,
                moderation_state=MODERATION_STATE_APPROVED,
                created_at=now,
                updated_at=now,
            )
            session.add(post)

            if author_id not in thread.participant_ids:
                thread.participant_ids = [*thread.participant_ids, author_id]
                thread.participants_count = len(thread.participant_ids)
            await session.flush()

            await self._replace_mentions(session, post.id, mentioned)
            if parent_post_id is not None:
                await self._bump_post(session, parent_post_id, replies_count=1)
            await self._bump_thread(session, thread_id, posts=1, activity_at=now)
            await self._bump_user(session, author_id, posts=1, active_at=now)

            await session.refresh(thread)
            await session.refresh(post)
            out = self._post_out(post, {author.id: author})
            thread_author_id = thread.author_id
            participants = {*thread.participant_ids, thread.author_id}

        mention_recipients = [user.id for user in mentioned if user.id != author_id]
        participant_recipients = [
            user_id
            for user_id in sorted(participants)
            if user_id != author_id and user_id not in mention_recipients
        ]

        await self._queue_moderation(out)
        await self._notify(
            "post.created",
            {
                "post_id": out.id,
                "thread_id": thread_id,
                "author_id": author_id,
                "created_at": out.created_at,
            },
            participant_recipients,
        )
        if mention_recipients:
            await self._notify_mentions(out, mention_recipients)

        await best_effort(
            "broadcast post.created",
            lambda: self._realtime.emit_to_thread(thread_id, "post.created", {"post": out}),
        )
        await best_effort(
            "broadcast post.created.global",
            lambda: self._realtime.emit_global(
                "post.created.global", {"thread_id": thread_id, "post": out}
            ),
        )
        await self._invalidate(thread_id=thread_id, author_id=thread_author_id)
        return out

    async def update_post(
        self,
        actor_id: str,
        thread_id: str,
        post_id: str,
        body: str,
    ) -> PostOut:
        """Edit a post body.

        A byte-identical body returns the current post without writing anything
        or dispatching any side effect. Edits are not re-moderated.

        Raises:
            ValidationError: If the body is blank.
            NotFoundError: If the post is missing or not in ``thread_id``.
            ForbiddenError: If ``actor_id`` did not write the post.
        """
        if not body.strip():
            raise ValidationError("Post body cannot be empty.")

        now = utcnow()
        async with self._sessions() as session, session.begin():
            post = await self._load_post(session, thread_id, post_id)
            if post.author_id != actor_id:
                raise ForbiddenError("You can only edit your own posts.")

            authors = await self._authors(session, [post.author_id])
            if post.body == body:
                return self._post_out(post, authors)

            mentioned = await resolve_mention_recipients(
                session, extract_mention_handles(body), exclude_user_id=actor_id
            )
            post.body = body
            post.mentions = [user.handle for user in mentioned]
            await session.flush()
            newly_mentioned = await self._replace_mentions(session, post.id, mentioned)
            await self._bump_thread(session, thread_id, activity_at=now)

            await session.refresh(post)
            out = self._post_out(post, authors)
            thread_author_id = await session.scalar(
                select(Thread.author_id).where(Thread.id == thread_id)
            )

        recipients = [user_id for user_id in newly_mentioned if user_id != actor_id]
        if recipients:
            await self._notify_mentions(out, recipients)

        await best_effort(
            "broadcast post.updated",
            lambda: self._realtime.emit_to_thread(thread_id, "post.updated", {"post": out}),
        )
        await self._invalidate(thread_id=thread_id, author_id=thread_author_id)
        return out

    async def delete_post(self, actor_id: str, thread_id: str, post_id: str) -> None:
        """Delete a post, detaching its replies and correcting every aggregate.

        Raises:
            NotFoundError: If the post is missing or not in ``thread_id``.
            ForbiddenError: If ``actor_id`` did not write the post.
        """
        async with self._sessions() as session, session.begin():
            post = await self._load_post(session, thread_id, post_id)
            if post.author_id != actor_id:
                raise ForbiddenError("You can only delete your own posts.")
            thread = await self._load_thread_for_update(session, thread_id)

            await session.execute(delete(Reaction).where(Reaction.post_id == post_id))
            await session.execute(delete(Mention).where(Mention.post_id == post_id))
            await session.execute(
                update(Post)
                .where(Post.parent_post_id == post_id)
                .values(parent_post_id=None)
                .execution_options(synchronize_session=False)
            )
            if post.parent_post_id is not None:
                await self._bump_post(session, post.parent_post_id, replies_count=-1)

            await session.delete(post)
            await session.flush()

            remaining = await session.scalar(
                select(func.count(Post.id)).where(
                    Post.thread_id == thread_id,
                    Post.author_id == actor_id,
                )
            )
            is_participant = actor_id in thread.participant_ids
            if not remaining and actor_id != thread.author_id and is_participant:
                thread.participant_ids = [
                    user_id for user_id in thread.participant_ids if user_id != actor_id
                ]
                thread.participants_count = len(thread.participant_ids)
                await session.flush()

            await self._bump_thread(session, thread_id, posts=-1)
            await self._bump_user(session, actor_id, posts=-1)
            thread_author_id = thread.author_id

        await best_effort(
            "broadcast post.deleted",
            lambda: self._realtime.emit_to_thread(
                thread_id, "post.deleted", {"thread_id": thread_id, "post_id": post_id}
            ),
        )
        await self._invalidate(thread_id=thread_id, author_id=thread_author_id)

    async def moderate_post(
        self,
        post_id: str,
        moderation_state: str,
        moderation_feedback: str | None = None,
        lock_thread: bool = False,
    ) -> PostOut:
        """Override a post's moderation state. Authorization is the caller's responsibility.

        Raises:
            ValidationError: If the state is unknown.
            ForbiddenError: If asked to lock the thread while approving the post.
            NotFoundError: If the post does not exist.
        """
        if moderation_state not in MODERATION_STATES:
            raise ValidationError(f"Unknown moderation state {moderation_state!r}.")
        if lock_thread and moderation_state == MODERATION_STATE_APPROVED:
            raise ForbiddenError("Cannot lock the thread while approving the post.")

        now = utcnow()
        async with self._sessions() as session, session.begin():
            post = await session.get(Post, post_id)
            if post is None:
                raise NotFoundError("Post not found.")
            post.moderation_state = moderation_state
            post.moderation_feedback = moderation_feedback
            thread_out = None
            if lock_thread:
                thread_out = await self._lock_thread(session, post.thread_id, now)
            await session.flush()
            await session.refresh(post)
            out = self._post_out(post, await self._authors(session, [post.author_id]))

        await self._after_moderation(out, thread_out)
        return out

    async def apply_moderation_result(
        self,
        post_id: str,
        thread_id: str,
        flagged: bool,
        feedback: str | None = None,
    ) -> PostOut | None:
        """Store a classifier verdict; flagged posts lock their thread.

        Returns None when the post was deleted before the verdict arrived.
        """
        now = utcnow()
        async with self._sessions() as session, session.begin():
            post = await session.get(Post, post_id)
            if post is None:
                logger.info("Post %s no longer exists; dropping moderation result", post_id)
                return None
            post.moderation_state = (
                MODERATION_STATE_FLAGGED if flagged else MODERATION_STATE_APPROVED
            )
            post.moderation_feedback = feedback if flagged else None
            thread_out = await self._lock_thread(session, thread_id, now) if flagged else None
            await session.flush()
            await session.refresh(post)
            out = self._post_out(post, await self._authors(session, [post.author_id]))

        await self._after_moderation(out, thread_out)
        return out

    async def apply_summary(self, thread_id: str, summary: str) -> ThreadOut | None:
        """Store a generated summary. Returns None if the thread was deleted meanwhile."""
        async with self._sessions() as session, session.begin():
            thread = await session.get(Thread, thread_id)
            if thread is None:
                logger.info("Thread %s no longer exists; dropping summary", thread_id)
                return None
            thread.summary = summary
            thread.summary_generated_at = utcnow()
            await session.flush()
            await session.refresh(thread)
            out = ThreadOut.model_validate(thread)

        await self._invalidate(thread_id=thread_id, author_id=out.author_id)
        await best_effort(
            "broadcast thread.updated",
            lambda: self._realtime.emit_to_thread(thread_id, "thread.updated", {"thread": out}),
        )
        return out

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def react_to_post(
        self,
        user_id: str,
        thread_id: str,
        post_id: str,
        reaction_type: str,
    ) -> ReactionResult:
        """Toggle ``user_id``'s reaction on a post.

        No reaction creates one; the same type removes it; the opposite type
        replaces it. A concurrent insert for the same (post, user) surfaces as a
        primary-key violation and is retried once, keeping a reaction that
        already matches the request.
        """
        if reaction_type not in REACTION_TYPES:
            raise ValidationError(f"Unknown reaction type {reaction_type!r}.")

        try:
            change = await self._toggle_reaction(user_id, thread_id, post_id, reaction_type)
        except IntegrityError:
            logger.info("Reaction conflict on post %s for user %s; retrying", post_id, user_id)
            change = await self._toggle_reaction(
                user_id, thread_id, post_id, reaction_type, conflict=True
            )

        await self._after_reaction(change)
        if change.newly_set and change.post_author_id != user_id:
            await self._notify(
                "post.reacted",
                {
                    "post_id": post_id,
                    "thread_id": thread_id,
                    "user_id": user_id,
                    "type": reaction_type,
                },
                [change.post_author_id],
            )
        return change.result

    async def remove_post_reaction(
        self, user_id: str, thread_id: str, post_id: str
    ) -> ReactionResult:
        """Remove ``user_id``'s reaction if there is one."""
        async with self._sessions() as session, session.begin():
            post = await self._load_post(session, thread_id, post_id)
            existing = await self._locked_reaction(session, post_id, user_id)
            changed = False
            if existing is not None and await self._delete_reaction(
                session, post_id, user_id, existing.type
            ):
                await self._bump_post(session, post_id, **{_REACTION_COUNTERS[existing.type]: -1})
                changed = True
            await session.refresh(post)
            change = _ReactionChange(
                result=ReactionResult(
                    thread_id=thread_id,
                    post_id=post_id,
                    user_id=user_id,
                    upvotes_count=post.upvotes_count,
                    downvotes_count=post.downvotes_count,
                    reaction=None,
                ),
                post_author_id=post.author_id,
                newly_set=False,
                changed=changed,
            )

        await self._after_reaction(change)
        return change.result

    async def _toggle_reaction(
        self,
        user_id: str,
        thread_id: str,
        post_id: str,
        reaction_type: str,
        *,
        conflict: bool = False,
    ) -> _ReactionChange:
        async with self._sessions() as session, session.begin():
            post = await self._load_post(session, thread_id, post_id)
            if await session.get(User, user_id) is None:
                raise NotFoundError("User not found.")

            deltas: dict[str, int] = {}
            existing = await self._locked_reaction(session, post_id, user_id)
            resulting: str | None
            if existing is None:
                session.add(Reaction(post_id=post_id, user_id=user_id, type=reaction_type))
                await session.flush()
                deltas[_REACTION_COUNTERS[reaction_type]] = 1
                resulting, newly_set = reaction_type, True
            elif existing.type == reaction_type:
                if conflict:
                    # The concurrent request already recorded what this one asked for.
                    resulting, newly_set = reaction_type, False
                else:
                    if await self._delete_reaction(session, post_id, user_id, reaction_type):
                        deltas[_REACTION_COUNTERS[reaction_type]] = -1
                    resulting, newly_set = None, False
            else:
                replaced = await session.execute(
                    update(Reaction)
                    .where(
                        Reaction.post_id == post_id,
                        Reaction.user_id == user_id,
                        Reaction.type == existing.type,
                    )
                    .values(type=reaction_type)
                    .execution_options(synchronize_session=False)
                )
                if replaced.rowcount == 1:
                    deltas[_REACTION_COUNTERS[existing.type]] = -1
                    deltas[_REACTION_COUNTERS[reaction_type]] = 1
                    resulting, newly_set = reaction_type, True
                else:
                    # The row moved under us; report what storage holds now.
                    resulting = await session.scalar(
                        select(Reaction.type).where(
                            Reaction.post_id == post_id, Reaction.user_id == user_id
                        )
                    )
                    newly_set = False

            if deltas:
                await self._bump_post(session, post_id, **deltas)
            await session.refresh(post)
            return _ReactionChange(
                result=ReactionResult(
                    thread_id=thread_id,
                    post_id=post_id,
                    user_id=user_id,
                    upvotes_count=post.upvotes_count,
                    downvotes_count=post.downvotes_count,
                    reaction=resulting,
                ),
                post_author_id=post.author_id,
                newly_set=newly_set,
                changed=bool(deltas),
            )

    async def _locked_reaction(
        self, session: AsyncSession, post_id: str, user_id: str
    ) -> Reaction | None:
        return await session.scalar(
            select(Reaction)
            .where(Reaction.post_id == post_id, Reaction.user_id == user_id)
            .with_for_update()
        )

    async def _delete_reaction(
        self, session: AsyncSession, post_id: str, user_id: str, reaction_type: str
    ) -> bool:
        """Delete the reaction only if it still has ``reaction_type``; True when a row went."""
        result = await session.execute(
            delete(Reaction)
            .where(
                Reaction.post_id == post_id,
                Reaction.user_id == user_id,
                Reaction.type == reaction_type,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _after_reaction(self, change: _ReactionChange) -> None:
        result = change.result
        await best_effort(
            "broadcast post.reaction",
            lambda: self._realtime.emit_to_thread(result.thread_id, "post.reaction", result),
        )
        await best_effort(
            "broadcast post.reaction to user",
            lambda: self._realtime.emit_to_user(result.user_id, "post.reaction", result),
        )
        if change.changed:
            await best_effort(
                "cache invalidate thread detail",
                lambda: self._cache.delete_pattern(
                    ThreadCacheKeys.detail_pattern(result.thread_id)
                ),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_thread_with_posts(
        self,
        thread_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> ThreadDetail:
        """Return a thread and one page of its posts, oldest first."""
        page, limit = _page_bounds(page, limit)
        key = ThreadCacheKeys.detail_key(thread_id, page, limit)
        cached = await self._cache_read(key)
        if cached is not None:
            return ThreadDetail.model_validate(cached)

        async with self._sessions() as session:
            thread = await session.get(Thread, thread_id)
            if thread is None:
                raise NotFoundError("Thread not found.")
            total = await session.scalar(
                select(func.count(Post.id)).where(Post.thread_id == thread_id)
            )
            result = await session.execute(
                select(Post)
                .where(Post.thread_id == thread_id)
                .order_by(Post.created_at.asc(), Post.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            posts = list(result.scalars())
            authors = await self._authors(session, [post.author_id for post in posts])
            detail = ThreadDetail(
                thread=ThreadOut.model_validate(thread),
                posts=[self._post_out(post, authors) for post in posts],
                posts_total=total or 0,
                page=page,
                limit=limit,
            )

        await self._cache_write(key, detail, self._settings.thread_detail_cache_ttl_seconds)
        return detail

    async def list_threads(
        self,
        status: str | None = None,
        tag: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> ThreadPage:
        """Return threads ordered by most recent activity."""
        page, limit = _page_bounds(page, limit)
        key = ThreadCacheKeys.list_key(status, tag, page, limit)
        return await self._cached_page(
            key,
            self._settings.thread_list_cache_ttl_seconds,
            self._thread_filters(status=status, tag=tag),
            page,
            limit,
        )

    async def list_threads_by_author(
        self,
        author_id: str,
        status: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> ThreadPage:
        page, limit = _page_bounds(page, limit)
        key = ThreadCacheKeys.author_list_key(author_id, status, page, limit)
        filters = [Thread.author_id == author_id, *self._thread_filters(status=status)]
        return await self._cached_page(
            key, self._settings.thread_list_cache_ttl_seconds, filters, page, limit
        )

    async def search_threads(
        self,
        query: str | None = None,
        tag: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> ThreadPage:
        """Case-insensitive search over thread titles and opening posts."""
        page, limit = _page_bounds(page, limit)
        needle = (query or "").strip()
        key = ThreadCacheKeys.search_key(needle, tag, status, page, limit)
        filters = self._thread_filters(status=status, tag=tag)
        if needle:
            first = aliased(Post)
            opening_posts = select(Post.thread_id).where(
                Post.body.icontains(needle, autoescape=True),
                Post.created_at
                == select(func.min(first.created_at))
                .where(first.thread_id == Post.thread_id)
                .scalar_subquery(),
            )
            filters.append(
                or_(Thread.title.icontains(needle, autoescape=True), Thread.id.in_(opening_posts))
            )
        return await self._cached_page(
            key, self._settings.thread_search_cache_ttl_seconds, filters, page, limit
        )

    def _thread_filters(self, *, status: str | None = None, tag: str | None = None) -> list[Any]:
        filters: list[Any] = []
        if status:
            filters.append(Thread.status == status)
        if tag:
            # Tags are stored as a JSON array; match the encoded element.
            encoded = json.dumps(tag.strip().lower())
            filters.append(cast(Thread.tags, String).contains(encoded, autoescape=True))
        return filters

    async def _cached_page(
        self,
        key: str,
        ttl_seconds: int,
        filters: list[Any],
        page: int,
        limit: int,
    ) -> ThreadPage:
        cached = await self._cache_read(key)
        if cached is not None:
            return ThreadPage.model_validate(cached)

        async with self._sessions() as session:
            total = await session.scalar(
                select(func.count()).select_from(Thread).where(*filters)
            )
            result = await session.execute(
                select(Thread)
                .where(*filters)
                .order_by(Thread.last_activity_at.desc(), Thread.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            data = [ThreadOut.model_validate(thread) for thread in result.scalars()]

        thread_page = ThreadPage(data=data, total=total or 0, page=page, limit=limit)
        await self._cache_write(key, thread_page, ttl_seconds)
        return thread_page

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    async def _load_thread_for_update(self, session: AsyncSession, thread_id: str) -> Thread:
        result = await session.execute(
            select(Thread).where(Thread.id == thread_id).with_for_update()
        )
        thread = result.scalar_one_or_none()
        if thread is None:
            raise NotFoundError("Thread not found.")
        return thread

    async def _load_post(self, session: AsyncSession, thread_id: str, post_id: str) -> Post:
        post = await session.get(Post, post_id)
        if post is None or post.thread_id != thread_id:
            raise NotFoundError("Post not found.")
        return post

    async def _lock_thread(
        self, session: AsyncSession, thread_id: str, now: datetime
    ) -> ThreadOut | None:
        thread = await session.get(Thread, thread_id)
        if thread is None:
            return None
        thread.status = THREAD_STATUS_LOCKED
        await session.flush()
        await self._bump_thread(session, thread_id, activity_at=now)
        await session.refresh(thread)
        return ThreadOut.model_validate(thread)

    async def _unique_slug(self, session: AsyncSession, base: str) -> str:
        result = await session.execute(
            select(Thread.slug).where(or_(Thread.slug == base, Thread.slug.like(f"{base}-%")))
        )
        taken = set(result.scalars())
        candidate, suffix = base, 1
        while candidate in taken:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    async def _replace_mentions(
        self, session: AsyncSession, post_id: str, users: Sequence[User]
    ) -> list[str]:
        """Rewrite the post's Mention rows and return the ids not yet notified."""
        previous = await session.execute(
            select(Mention.mentioned_user_id, Mention.notified, Mention.notified_at).where(
                Mention.post_id == post_id
            )
        )
        notified = {row.mentioned_user_id: row.notified_at for row in previous if row.notified}
        await session.execute(delete(Mention).where(Mention.post_id == post_id))
        session.add_all(
            Mention(
                post_id=post_id,
                mentioned_user_id=user.id,
                notified=user.id in notified,
                notified_at=notified.get(user.id),
            )
            for user in users
        )
        await session.flush()
        return [user.id for user in users if user.id not in notified]

    async def _bump_thread(
        self,
        session: AsyncSession,
        thread_id: str,
        *,
        posts: int = 0,
        activity_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {}
        if posts:
            values["posts_count"] = Thread.posts_count + posts
        if activity_at is not None:
            values["last_activity_at"] = _advance(Thread.last_activity_at, activity_at)
        if values:
            await session.execute(
                update(Thread)
                .where(Thread.id == thread_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def _bump_post(self, session: AsyncSession, post_id: str, **deltas: int) -> None:
        values = {name: getattr(Post, name) + delta for name, delta in deltas.items() if delta}
        if values:
            await session.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def _bump_user(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        threads: int = 0,
        posts: int = 0,
        active_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {}
        if threads:
            values["threads_count"] = User.threads_count + threads
        if posts:
            values["posts_count"] = User.posts_count + posts
        if active_at is not None:
            values["last_active_at"] = active_at
        if values:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def _authors(self, session: AsyncSession, user_ids: Iterable[str]) -> dict[str, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        result = await session.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars()}

    def _post_out(self, post: Post, authors: dict[str, User]) -> PostOut:
        out = PostOut.model_validate(post)
        author = authors.get(post.author_id)
        if author is not None:
            out.author = AuthorSummary.model_validate(author)
        return out

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _after_moderation(self, post: PostOut, thread: ThreadOut | None) -> None:
        await self._invalidate(
            thread_id=post.thread_id,
            author_id=thread.author_id if thread is not None else None,
        )
        await best_effort(
            "broadcast post.moderated",
            lambda: self._realtime.emit_to_thread(post.thread_id, "post.moderated", {"post": post}),
        )
        if thread is not None:
            await best_effort(
                "broadcast thread.updated",
                lambda: self._realtime.emit_to_thread(
                    thread.id, "thread.updated", {"thread": thread}
                ),
            )

    async def _queue_moderation(self, post: PostOut) -> None:
        if not self._settings.ai_enabled:
            logger.debug("AI_API_KEY not set; skipping moderation for post %s", post.id)
            return
        job = ModerationJob(
            post_id=post.id,
            thread_id=post.thread_id,
            author_id=post.author_id,
            content=post.body,
        )
        await best_effort("ai-moderation", lambda: self._jobs.enqueue_moderation(job))

    async def _queue_summary(self, thread: ThreadOut, requester_id: str, body: str) -> None:
        if not self._settings.ai_enabled:
            logger.debug("AI_API_KEY not set; skipping summary for thread %s", thread.id)
            return
        job = SummaryJob(
            thread_id=thread.id,
            requester_id=requester_id,
            prompt=build_summary_prompt(thread.title, body),
        )
        await best_effort("ai-summary", lambda: self._jobs.enqueue_summary(job))

    async def _notify(self, event: str, payload: dict[str, Any], recipients: list[str]) -> None:
        await best_effort(
            f"notification {event}",
            lambda: self._notifications.notify(event, payload, recipients),
        )

    async def _notify_mentions(self, post: PostOut, recipients: list[str]) -> None:
        payload = {
            "post_id": post.id,
            "thread_id": post.thread_id,
            "author_id": post.author_id,
            "created_at": post.created_at,
        }
        await self._notify("post.mentioned", payload, recipients)
        for user_id in recipients:
            await best_effort(
                "broadcast post.mentioned",
                lambda user_id=user_id: self._realtime.emit_to_user(
                    user_id, "post.mentioned", payload
                ),
            )
        await best_effort(
            "mark mentions notified",
            lambda: self._mark_mentions_notified(post.id, recipients),
        )

    async def _mark_mentions_notified(self, post_id: str, user_ids: list[str]) -> None:
        async with self._sessions() as session, session.begin():
            await session.execute(
                update(Mention)
                .where(Mention.post_id == post_id, Mention.mentioned_user_id.in_(user_ids))
                .values(notified=True, notified_at=utcnow())
            )

    async def _invalidate(
        self,
        *,
        thread_id: str | None = None,
        author_id: str | None = None,
    ) -> None:
        patterns = [ThreadCacheKeys.list_pattern(), ThreadCacheKeys.search_pattern()]
        if thread_id is not None:
            patterns.append(ThreadCacheKeys.detail_pattern(thread_id))
        if author_id is not None:
            patterns.append(ThreadCacheKeys.author_list_pattern(author_id))
        for pattern in patterns:
            await best_effort(
                f"cache invalidate {pattern}",
                lambda pattern=pattern: self._cache.delete_pattern(pattern),
            )

    async def _cache_read(self, key: str) -> Any | None:
        try:
            return await self._cache.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("Cache read for %s failed, falling back to storage: %s", key, exc)
            return None

    async def _cache_write(self, key: str, value: ThreadPage | ThreadDetail, ttl: int) -> None:
        await best_effort(
            f"cache write {key}",
            lambda: self._cache.set(key, value.model_dump(mode="json"), ttl),
        )
