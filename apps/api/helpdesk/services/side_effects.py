"""
Best-effort side effects.

Work that follows a committed write (system messages, notifications, realtime
events) is enqueued here and attempted once after the commit. A failure rolls
back only that step, is logged, and is recorded in a bounded in-process
dead-letter log; it never fails the operation that queued it.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeadLetter:
    """A side effect that failed and was dropped."""
    name: str
    error: str
    failed_at: datetime
    context: dict[str, Any] = field(default_factory=dict)


_dead_letters: deque[DeadLetter] = deque(maxlen=settings.DEAD_LETTER_LIMIT)
_dead_letter_lock = threading.Lock()


def record_dead_letter(name: str, error: str, context: dict[str, Any] | None = None) -> DeadLetter:
    letter = DeadLetter(name=name, error=error, failed_at=utc_now(), context=dict(context or {}))
    with _dead_letter_lock:
        _dead_letters.append(letter)
    return letter


def dead_letters() -> list[DeadLetter]:
    """Most recent dropped side effects, oldest first."""
    with _dead_letter_lock:
        return list(_dead_letters)


def clear_dead_letters() -> None:
    with _dead_letter_lock:
        _dead_letters.clear()


@dataclass
class _Task:
    name: str
    fn: Callable[..., Any]
    args: tuple
    kwargs: dict


class SideEffectQueue:
    """Collects side effects for one operation and runs them in order."""

    def __init__(self, db: Session | None = None, *, context: dict[str, Any] | None = None):
        self._db = db
        self._context = dict(context or {})
        self._tasks: list[_Task] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def enqueue(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        self._tasks.append(_Task(name=name, fn=fn, args=args, kwargs=kwargs))

    def run(self) -> list[str]:
        """Attempt every queued task once. Returns one error string per failure."""
        errors: list[str] = []
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            try:
                task.fn(*task.args, **task.kwargs)
            except Exception as exc:
                if self._db is not None:
                    self._db.rollback()
                record_dead_letter(task.name, repr(exc), self._context)
                logger.warning(
                    "Side effect %s failed and was dropped: %s",
                    task.name,
                    exc,
                    extra=self._context,
                )
                errors.append(f"{task.name}: {exc}")
        return errors
