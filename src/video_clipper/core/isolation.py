"""Per-unit failure isolation for fan-out stages."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Skipped:
    """Marker returned by an operation to record the item as skipped."""

    _instance: _Skipped | None = None

    def __new__(cls) -> _Skipped:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SKIPPED"


SKIPPED = _Skipped()


class UnitStatus(str, Enum):
    """Outcome of a single unit."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class UnitOutcome(BaseModel):
    """Result of running the operation on one item."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    item: Any
    status: UnitStatus
    value: Any = None
    error: str | None = None


class BatchResult(BaseModel):
    """Summary of an isolated batch run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: list[UnitOutcome] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def failures(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if o.status == UnitStatus.FAILED]

    def values(self) -> list[Any]:
        """Return values of the succeeded units, in order."""
        return [o.value for o in self.outcomes if o.status == UnitStatus.SUCCEEDED]


async def run_isolated(
    items: Iterable[T],
    operation: Callable[[T], Awaitable[Any]],
    *,
    on_failure: Callable[[T, Exception], Awaitable[None]] | None = None,
    label: str = "unit",
) -> BatchResult:
    """
    Run ``operation`` for each item, containing per-item failures.

    Items are processed sequentially. An exception raised by ``operation``
    is logged, handed to ``on_failure`` so the caller can record the item's
    failed status, and the loop moves on. An exception raised by
    ``on_failure`` itself is logged and recorded on the outcome too.
    Anything raised outside the loop body (e.g. while building ``items``)
    is not caught here.

    Args:
        items: Units to process
        operation: Async callable; may return ``SKIPPED`` to count a skip
        on_failure: Optional async callback for recording a failed unit
        label: Name used in log messages

    Returns:
        BatchResult with per-status counts and ordered outcomes
    """
    result = BatchResult()

    for position, item in enumerate(items):
        try:
            value = await operation(item)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"{label} #{position} failed: {message}")
            if on_failure is not None:
                try:
                    await on_failure(item, e)
                except Exception as record_error:
                    logger.error(f"Failed to record failure of {label} #{position}: {record_error}")
                    message = f"{message}; failure not recorded: {record_error}"
            result.failed += 1
            result.outcomes.append(UnitOutcome(item=item, status=UnitStatus.FAILED, error=message))
            continue

        if value is SKIPPED:
            logger.info(f"{label} #{position} skipped")
            result.skipped += 1
            result.outcomes.append(UnitOutcome(item=item, status=UnitStatus.SKIPPED))
        else:
            result.succeeded += 1
            result.outcomes.append(UnitOutcome(item=item, status=UnitStatus.SUCCEEDED, value=value))

    logger.info(
        f"{label} batch finished: {result.succeeded} succeeded, "
        f"{result.failed} failed, {result.skipped} skipped"
    )
    return result
