from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

T = TypeVar("T")


class Outcome(str, Enum):
    SUCCESS = "success"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class IterationSummary:
    succeeded: int = 0
    skipped: int = 0
    aborted: bool = False
    stopped: bool = False
    remaining: int = 0

    @property
    def completed(self) -> bool:
        return not self.aborted and not self.stopped


def process_sequence(
    items: Iterable[T],
    handler: Callable[[T], Outcome],
    *,
    should_stop: Callable[[], bool] | None = None,
) -> IterationSummary:
    pending = list(items)
    succeeded = 0
    skipped = 0
    for index, item in enumerate(pending):
        if should_stop is not None and should_stop():
            return IterationSummary(
                succeeded=succeeded,
                skipped=skipped,
                stopped=True,
                remaining=len(pending) - index,
            )
        outcome = handler(item)
        if outcome is Outcome.SUCCESS:
            succeeded += 1
        elif outcome is Outcome.SKIP:
            skipped += 1
        else:
            return IterationSummary(
                succeeded=succeeded,
                skipped=skipped,
                aborted=True,
                remaining=len(pending) - index - 1,
            )
    return IterationSummary(succeeded=succeeded, skipped=skipped)
