# src/forum_stage/api/v1/endpoints/threads.py
"""Thread and post endpoints for the forum API.

Handlers only bind HTTP input to the mutation engine and translate its typed
errors into status codes.
"""

from fastapi import APIRouter, Query, Response, status

from forum_stage.api.v1.dependencies import (
    CurrentUserDep,
    ModeratorDep,
    ThreadServiceDep,
    http_error,
)
from forum_stage.core.errors import ForumError
from forum_stage.schemas.post import (
    PostCreate,
    PostModeration,
    PostOut,
    PostUpdate,
    ReactionCreate,
    ReactionResult,
)
from forum_stage.schemas.thread import (
    ThreadCreate,
    ThreadCreated,
    ThreadDetail,
    ThreadOut,
    ThreadPage,
    ThreadStatusLiteral,
    ThreadStatusUpdate,
)

router = APIRouter(prefix="/threads", tags=["threads"])

PageQuery = Query(1, ge=1)
LimitQuery = Query(20, ge=1, le=100)


@router.get("", response_model=ThreadPage)
async def list_threads(
    threads: ThreadServiceDep,
    status_filter: ThreadStatusLiteral | None = Query(None, alias="status"),
    tag: str | None = Query(None, max_length=50),
    page: int = PageQuery,
    limit: int = LimitQuery,
) -> ThreadPage:
    """List threads by most recent activity."""
    return await threads.list_threads(status=status_filter, tag=tag, page=page, limit=limit)


@router.get("/search", response_model=ThreadPage)
async def search_threads(
    threads: ThreadServiceDep,
    q: str | None = Query(None, max_length=200),
    tag: str | None = Query(None, max_length=50),
    status_filter: ThreadStatusLiteral | None = Query(None, alias="status"),
    page: int = PageQuery,
    limit: int = LimitQuery,
) -> ThreadPage:
    """Search thread titles and opening posts."""
    return await threads.search_threads(
        query=q, tag=tag, status=status_filter, page=page, limit=limit
    )


@router.get("/by-author/{author_id}", response_model=ThreadPage)
async def list_threads_by_author(
    author_id: str,
    threads: ThreadServiceDep,
    status_filter: ThreadStatusLiteral | None = Query(None, alias="status"),
    page: int = PageQuery,
    limit: int = LimitQuery,
) -> ThreadPage:
    return await threads.list_threads_by_author(
        author_id, status=status_filter, page=page, limit=limit
    )


@router.post("", response_model=ThreadCreated, status_code=status.HTTP_201_CREATED)
async def create_thread(
    payload: ThreadCreate,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> ThreadCreated:
    """Start a thread with its opening post."""
    try:
        return await threads.create_thread(
            current_user.user_id, payload.title, payload.body, payload.tags
        )
    except ForumError as exc:
        raise http_error(exc) from exc


@router.patch("/posts/{post_id}/moderation", response_model=PostOut)
async def moderate_post(
    post_id: str,
    payload: PostModeration,
    moderator: ModeratorDep,
    threads: ThreadServiceDep,
) -> PostOut:
    """Override a post's moderation state, optionally locking its thread."""
    try:
        return await threads.moderate_post(
            post_id,
            payload.moderation_state,
            payload.moderation_feedback,
            lock_thread=payload.lock_thread,
        )
    except ForumError as exc:
        raise http_error(exc) from exc


@router.get("/{thread_id}", response_model=ThreadDetail)
async def get_thread(
    thread_id: str,
    threads: ThreadServiceDep,
    page: int = PageQuery,
    limit: int = LimitQuery,
) -> ThreadDetail:
    """Get a thread with one page of its posts."""
    try:
        return await threads.get_thread_with_posts(thread_id, page=page, limit=limit)
    except ForumError as exc:
        raise http_error(exc) from exc


@router.delete("/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_thread(
    thread_id: str,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> Response:
    try:
        await threads.delete_thread(current_user.user_id, thread_id)
    except ForumError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/{thread_id}/status", response_model=ThreadOut)
async def update_thread_status(
    thread_id: str,
    payload: ThreadStatusUpdate,
    moderator: ModeratorDep,
    threads: ThreadServiceDep,
) -> ThreadOut:
    try:
        return await threads.update_thread_status(thread_id, payload.status)
    except ForumError as exc:
        raise http_error(exc) from exc


@router.post(
    "/{thread_id}/posts",
    response_model=PostOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_post(
    thread_id: str,
    payload: PostCreate,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> PostOut:
    """Reply in a thread."""
    try:
        return await threads.create_post(
            current_user.user_id, thread_id, payload.body, payload.parent_post_id
        )
    except ForumError as exc:
        raise http_error(exc) from exc


@router.patch("/{thread_id}/posts/{post_id}", response_model=PostOut)
async def update_post(
    thread_id: str,
    post_id: str,
    payload: PostUpdate,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> PostOut:
    try:
        return await threads.update_post(current_user.user_id, thread_id, post_id, payload.body)
    except ForumError as exc:
        raise http_error(exc) from exc


@router.delete("/{thread_id}/posts/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    thread_id: str,
    post_id: str,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> Response:
    try:
        await threads.delete_post(current_user.user_id, thread_id, post_id)
    except ForumError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{thread_id}/posts/{post_id}/reactions", response_model=ReactionResult)
async def react_to_post(
    thread_id: str,
    post_id: str,
    payload: ReactionCreate,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> ReactionResult:
    """Toggle the caller's reaction on a post."""
    try:
        return await threads.react_to_post(current_user.user_id, thread_id, post_id, payload.type)
    except ForumError as exc:
        raise http_error(exc) from exc


@router.delete("/{thread_id}/posts/{post_id}/reactions", response_model=ReactionResult)
async def remove_post_reaction(
    thread_id: str,
    post_id: str,
    current_user: CurrentUserDep,
    threads: ThreadServiceDep,
) -> ReactionResult:
    try:
        return await threads.remove_post_reaction(current_user.user_id, thread_id, post_id)
    except ForumError as exc:
        raise http_error(exc) from exc
