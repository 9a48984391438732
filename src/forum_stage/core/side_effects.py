"""Fire-and-forget helpers for post-commit side effects.

Cache invalidation, job dispatch, notification recording and realtime
broadcasts happen after a mutation has committed. Their failures are logged and
never propagated, so the caller still sees a successful mutation.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


async def best_effort(label: str, action: Callable[[], Awaitable[object] | object]) -> bool:
    """Run ``action`` and swallow any exception with a logged warning.

    Args:
        label: Short name of the side effect, used in the log line.
        action: Zero-argument callable. Awaitable results are awaited.

    Returns:
        True if the action completed, False if it raised.
    """
    try:
        result = action()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:  # noqa: BLE001
        logger.warning("Best-effort side effect %s failed: %s", label, exc)
        return False
    return True
