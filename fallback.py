"""Ordered fallback with per-item retries.

Price providers, quote mirrors and proxy services all follow the same shape:
walk a list of alternatives, try each a bounded number of times, decide from
the failure whether to retry, move on or give up, and report exhaustion
once nothing is left.  ``try_in_order`` captures that loop once so each
caller only supplies the attempt and its error classification.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Tuple, TypeVar

from log_utils import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Decision(Enum):
    RETRY = "retry"
    NEXT = "next"
    RAISE = "raise"


class FallbackExhausted(RuntimeError):
    """Raised when every alternative failed."""

    def __init__(self, label: str, last_error: Optional[BaseException] = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"All {label} alternatives failed{detail}")
        self.label = label
        self.last_error = last_error


def _retry_always(exc: BaseException, attempt: int) -> Decision:
    return Decision.RETRY


def try_in_order(
    items: Iterable[T],
    attempt: Callable[[T], Optional[R]],
    *,
    attempts: int = 1,
    classify: Optional[Callable[[BaseException, int], Decision]] = None,
    backoff: Optional[Callable[[int], float]] = None,
    sleep: Callable[[float], Any] = time.sleep,
    label: str = "fallback",
) -> Tuple[T, R]:
    """Return ``(item, result)`` for the first item whose attempt succeeds.

    ``attempt`` returning ``None`` counts as a soft failure.  When it raises,
    ``classify(exc, attempt_index)`` picks the next step.  ``backoff`` maps the
    zero-based attempt index to the wait before a retry.
    """

    classify = classify or _retry_always
    last_error: Optional[BaseException] = None
    for item in items:
        for index in range(max(1, attempts)):
            try:
                result = attempt(item)
            except Exception as exc:
                last_error = exc
                decision = classify(exc, index)
                if decision is Decision.RAISE:
                    raise
                if decision is Decision.NEXT:
                    logger.debug("%s: abandoning %s after %s", label, item, exc)
                    break
                logger.debug("%s: attempt %d on %s failed: %s", label, index + 1, item, exc)
            else:
                if result is not None:
                    return item, result
            if backoff is not None and index + 1 < attempts:
                delay = backoff(index)
                if delay > 0:
                    sleep(delay)
    raise FallbackExhausted(label, last_error)


__all__ = ["Decision", "FallbackExhausted", "try_in_order"]
