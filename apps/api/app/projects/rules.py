"""Scheduling, progress and billing arithmetic for projects and tasks.

Nothing here touches a session. Callers hand in ORM rows (or any object with
the same attributes) and lookups for related rows, which keeps the rules
testable with plain dataclasses.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")
SIXTY = Decimal("60")


class BillableEntry(Protocol):
    is_billable: bool
    duration_minutes: int
    billing_rate: Decimal | None


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_percent(value: Decimal) -> Decimal:
    return max(ZERO, min(HUNDRED, value))


def earliest_start_date(start_date: date | None, dependency_end_dates: Iterable[date | None]) -> date | None:
    """Later of the task's own start and the latest prerequisite end."""
    ends = [item for item in dependency_end_dates if item is not None]
    if not ends:
        return start_date
    latest_end = max(ends)
    if start_date is None:
        return latest_end
    return max(start_date, latest_end)


def violates_dependency_constraints(start_date: date | None, dependency_end_dates: Iterable[date | None]) -> bool:
    if start_date is None:
        return False
    return any(end is not None and start_date < end for end in dependency_end_dates)


def is_blocked(dependency_states: Iterable[bool]) -> bool:
    """True when any prerequisite is still open. ``dependency_states`` yields completion flags."""
    return any(not completed for completed in dependency_states)


def would_create_dependency_cycle(
    task_id: uuid.UUID,
    depends_on_id: uuid.UUID,
    dependencies_of: Callable[[uuid.UUID], Iterable[uuid.UUID]],
) -> bool:
    if task_id == depends_on_id:
        return True

    visited: set[uuid.UUID] = set()
    stack = [depends_on_id]
    while stack:
        current = stack.pop()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(dependencies_of(current))
    return False


@dataclass(frozen=True, slots=True)
class ScheduleTimes:
    """Start and finish as whole days from the project start."""

    start: int
    finish: int


def task_duration_days(start_date: date | None, end_date: date | None) -> int:
    if start_date is None or end_date is None:
        return 1
    return max(1, (end_date - start_date).days)


def forward_pass(
    task_ids: Sequence[uuid.UUID],
    durations: Mapping[uuid.UUID, int],
    dependencies: Mapping[uuid.UUID, Sequence[uuid.UUID]],
) -> dict[uuid.UUID, ScheduleTimes]:
    """Earliest start and finish for each task.

    A task is placed once all of its prerequisites are placed. Tasks caught in
    a dependency loop are never placed and keep ``(0, 0)``.
    """
    times = {task_id: ScheduleTimes(0, 0) for task_id in task_ids}
    placed: set[uuid.UUID] = set()
    pending = list(task_ids)
    while pending:
        remaining: list[uuid.UUID] = []
        for task_id in pending:
            prerequisites = dependencies.get(task_id, ())
            if any(item not in placed for item in prerequisites):
                remaining.append(task_id)
                continue
            start = max((times[item].finish for item in prerequisites), default=0)
            times[task_id] = ScheduleTimes(start, start + durations[task_id])
            placed.add(task_id)
        if len(remaining) == len(pending):
            break
        pending = remaining
    return times


def backward_pass(
    task_ids: Sequence[uuid.UUID],
    durations: Mapping[uuid.UUID, int],
    dependents: Mapping[uuid.UUID, Sequence[uuid.UUID]],
    earliest: Mapping[uuid.UUID, ScheduleTimes],
) -> dict[uuid.UUID, ScheduleTimes]:
    """Latest start and finish that keep the project completion date.

    Tasks caught in a dependency loop keep the completion day for both values.
    """
    completion = max((item.finish for item in earliest.values()), default=0)
    times = {task_id: ScheduleTimes(completion, completion) for task_id in task_ids}
    placed: set[uuid.UUID] = set()
    pending = list(task_ids)
    while pending:
        remaining: list[uuid.UUID] = []
        for task_id in pending:
            followers = dependents.get(task_id, ())
            if any(item not in placed for item in followers):
                remaining.append(task_id)
                continue
            finish = min((times[item].start for item in followers), default=completion)
            times[task_id] = ScheduleTimes(finish - durations[task_id], finish)
            placed.add(task_id)
        if len(remaining) == len(pending):
            break
        pending = remaining
    return times


def slack_days(task_id: uuid.UUID, earliest: Mapping[uuid.UUID, ScheduleTimes], latest: Mapping[uuid.UUID, ScheduleTimes]) -> int:
    if task_id not in earliest or task_id not in latest:
        return 0
    return latest[task_id].start - earliest[task_id].start


def critical_path(
    task_ids: Sequence[uuid.UUID],
    earliest: Mapping[uuid.UUID, ScheduleTimes],
    latest: Mapping[uuid.UUID, ScheduleTimes],
) -> list[uuid.UUID]:
    """Zero-slack tasks ordered by earliest start."""
    critical = [task_id for task_id in task_ids if slack_days(task_id, earliest, latest) == 0]
    return sorted(critical, key=lambda task_id: earliest[task_id].start)



def calculate_percent_complete(
    node: Any,
    children_of: Callable[[Any], Sequence[Any]],
    _visiting: frozenset[Any] = frozenset(),
) -> Decimal:
    """Mean of the subtasks' calculated progress, or the node's own value for a leaf.

    A subtask already on the current path contributes its stored value so a
    corrupt parent loop cannot recurse forever.
    """
    children = children_of(node)
    if not children:
        return Decimal(node.percent_complete or 0)

    path = _visiting | {node.id}
    values = [
        Decimal(child.percent_complete or 0) if child.id in path else calculate_percent_complete(child, children_of, path)
        for child in children
    ]
    return quantize(sum(values, ZERO) / Decimal(len(values)))


def project_percent_complete(completed: int, total: int) -> Decimal:
    if total == 0:
        return ZERO
    return quantize(Decimal(completed) / Decimal(total) * HUNDRED)


def whole_minutes_between(started_at: datetime, ended_at: datetime) -> int:
    return int((ended_at - started_at).total_seconds() // 60)


def intervals_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """Half-open overlap: touching intervals do not overlap."""
    return a_start < b_end and a_end > b_start


def entry_billing_amount(entry: BillableEntry) -> Decimal:
    if not entry.is_billable or entry.billing_rate is None:
        return ZERO
    return Decimal(entry.duration_minutes) / SIXTY * Decimal(entry.billing_rate)


def total_billable_minutes(entries: Iterable[BillableEntry]) -> int:
    return sum(int(entry.duration_minutes) for entry in entries if entry.is_billable)


def total_billing_amount(entries: Iterable[BillableEntry]) -> Decimal:
    return sum((entry_billing_amount(entry) for entry in entries), ZERO)


def minutes_to_hours(minutes: int) -> Decimal:
    return quantize(Decimal(minutes) / SIXTY)


def budget_variance(budget: Decimal | None, actual_cost: Decimal) -> Decimal | None:
    if budget is None:
        return None
    return Decimal(budget) - Decimal(actual_cost)


def budget_utilization(budget: Decimal | None, actual_cost: Decimal) -> Decimal | None:
    if budget is None or Decimal(budget) == ZERO:
        return None
    return quantize(Decimal(actual_cost) / Decimal(budget) * HUNDRED)


def is_over_budget(budget: Decimal | None, actual_cost: Decimal) -> bool:
    if budget is None:
        return False
    return Decimal(actual_cost) > Decimal(budget)
