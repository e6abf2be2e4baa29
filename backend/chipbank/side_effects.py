"""Fire-and-forget hand-off for work that must never affect a committed operation.

Achievement rechecks and event-participation credit run after the primary
transaction commits. Their failures are logged here and go no further.
"""

import logging
import os
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

logger = logging.getLogger("chipbank.side_effects")

SIDE_EFFECT_WORKERS = max(1, int(os.environ.get("SIDE_EFFECT_WORKERS", "2")))


class AchievementNotifier(Protocol):
    def recheck(self, user_id: int) -> None: ...


class LoggingAchievementNotifier:
    def recheck(self, user_id: int) -> None:
        logger.info("Achievement recheck requested for user %s", user_id)


class SideEffectDispatcher:
    """Runs callables off the request path and logs anything they raise.

    With ``inline=True`` the callable runs immediately in the calling thread,
    still isolated by the same error handling. Tests use this for determinism.
    """

    def __init__(self, max_workers: int = SIDE_EFFECT_WORKERS, inline: bool = False) -> None:
        self._inline = inline
        self._executor: ThreadPoolExecutor | None = None
        if not inline:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix="chipbank-side-effect",
            )

    def submit(self, name: str, fn: Callable[..., Any], *args: Any) -> None:
        if self._executor is None:
            try:
                fn(*args)
            except Exception:
                logger.exception("Side effect %s failed", name)
            return

        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            logger.warning("Side effect %s dropped: dispatcher is shut down", name)
            return
        future.add_done_callback(lambda done: self._log_failure(name, done))

    @staticmethod
    def _log_failure(name: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Side effect %s failed: %s", name, exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def schedule_achievement_rechecks(
    dispatcher: SideEffectDispatcher,
    notifier: AchievementNotifier,
    user_ids: list[int],
) -> None:
    for user_id in dict.fromkeys(user_ids):
        dispatcher.submit("achievement_recheck", notifier.recheck, user_id)
