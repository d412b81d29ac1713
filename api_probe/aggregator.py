"""Result Aggregator - Builds a RunResult from unordered outcomes.

Workers finish in whatever order the network allows. The aggregator puts
outcomes back into spec declaration order so every report is deterministic,
and fills in a skipped outcome for any operation that never ran.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Sequence

from api_probe.models import Operation, RunResult, RunStats, TestOutcome

SKIPPED_MESSAGE = "Skipped: run cancelled"


class AggregationError(Exception):
    """Raised when outcomes do not match the run's operation list."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def skipped_outcome(operation: Operation, timestamp: str | None = None) -> TestOutcome:
    """Outcome for an operation that was never attempted."""
    return TestOutcome(
        operation=operation,
        status=None,
        success=False,
        skipped=True,
        message=SKIPPED_MESSAGE,
        duration_ms=0.0,
        attempt=0,
        timestamp=timestamp or now_iso(),
    )


def compute_stats(outcomes: Sequence[TestOutcome]) -> RunStats:
    """Counts over all outcomes; timing only over outcomes that executed."""
    total = len(outcomes)
    passed = sum(1 for o in outcomes if o.success)
    skipped = sum(1 for o in outcomes if o.skipped)
    durations = [o.duration_ms for o in outcomes if not o.skipped]

    stats = RunStats(total=total, passed=passed, failed=total - passed, skipped=skipped)
    if durations:
        stats.total_ms = sum(durations)
        stats.min_ms = min(durations)
        stats.max_ms = max(durations)
        stats.avg_ms = stats.total_ms / len(durations)
    return stats


def aggregate(
    operations: Sequence[Operation],
    outcomes: Iterable[TestOutcome],
    base_url: str,
    started_at: str,
    spec_title: str = "",
    spec_path: str = "",
    finished_at: str | None = None,
    interrupted: bool = False,
) -> RunResult:
    """Order outcomes by declaration and compute run statistics.

    Args:
        operations: The run's operations, in spec declaration order.
        outcomes: Outcomes in any order, at most one per operation.
        base_url: Base URL the run targeted.
        started_at: ISO 8601 run start.
        spec_title: info.title of the spec.
        spec_path: Where the spec was loaded from.
        finished_at: ISO 8601 run end (defaults to now).
        interrupted: Whether the run was cancelled.

    Returns:
        RunResult with exactly one outcome per operation.

    Raises:
        AggregationError: If an outcome belongs to no operation in the list,
            or two outcomes belong to the same operation.
    """
    positions: dict[str, int] = {}
    for index, operation in enumerate(operations):
        if operation.key in positions:
            raise AggregationError(f"Duplicate operation in run: {operation.key}")
        positions[operation.key] = index

    slots: list[TestOutcome | None] = [None] * len(operations)
    for outcome in outcomes:
        index = positions.get(outcome.operation.key)
        if index is None:
            raise AggregationError(f"Outcome for unknown operation: {outcome.operation.key}")
        if slots[index] is not None:
            raise AggregationError(f"Duplicate outcome for operation: {outcome.operation.key}")
        slots[index] = outcome

    finished = finished_at or now_iso()
    ordered = tuple(
        slot if slot is not None else skipped_outcome(operations[i], finished)
        for i, slot in enumerate(slots)
    )

    return RunResult(
        results=ordered,
        stats=compute_stats(ordered),
        spec_title=spec_title,
        spec_path=spec_path,
        base_url=base_url,
        started_at=started_at,
        finished_at=finished,
        interrupted=interrupted or any(o.skipped for o in ordered),
    )
