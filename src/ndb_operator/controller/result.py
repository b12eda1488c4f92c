"""Outcome of one reconciliation pass, and what the worker does with it."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class SyncOutcome(enum.StrEnum):
    SKIP = "skip"          # nothing can be done for this key; drop it
    ERROR = "error"        # transient failure; retry with backoff
    COMPLETE = "complete"  # converged; nothing owed until the next event
    REQUEUE = "requeue"    # progressing; look again after a delay


@dataclass(frozen=True)
class SyncResult:
    outcome: SyncOutcome
    requeue_after: float = 0.0
    error: Exception | None = None
    message: str = ""

    @classmethod
    def skip(cls, message: str) -> SyncResult:
        return cls(outcome=SyncOutcome.SKIP, message=message)

    @classmethod
    def failed(cls, error: Exception) -> SyncResult:
        return cls(outcome=SyncOutcome.ERROR, error=error, message=str(error))

    @classmethod
    def complete(cls) -> SyncResult:
        return cls(outcome=SyncOutcome.COMPLETE)

    @classmethod
    def requeue(cls, after: float, message: str = "") -> SyncResult:
        return cls(outcome=SyncOutcome.REQUEUE, requeue_after=after, message=message)
