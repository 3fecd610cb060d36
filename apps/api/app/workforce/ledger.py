"""Capacity arithmetic over an employee's allocation rows.

Date ranges are closed on both ends and a missing bound means the range is
open on that side.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Protocol

FULL_CAPACITY = Decimal("100")


class AllocationRow(Protocol):
    allocation_percentage: Decimal
    start_date: date | None
    end_date: date | None


def ranges_overlap(
    a_start: date | None,
    a_end: date | None,
    b_start: date | None,
    b_end: date | None,
) -> bool:
    starts_before_other_ends = a_start is None or b_end is None or a_start <= b_end
    other_starts_before_end = b_start is None or a_end is None or b_start <= a_end
    return starts_before_other_ends and other_starts_before_end


def is_current(allocation: AllocationRow, today: date) -> bool:
    return allocation.end_date is None or allocation.end_date >= today


def total_allocation(
    allocations: Iterable[AllocationRow],
    start_date: date | None,
    end_date: date | None,
    *,
    today: date,
) -> Decimal:
    """Sum the percentages that apply to the window.

    With no window at all only allocations that have not yet ended count.
    """
    if start_date is not None or end_date is not None:
        return overlapping_allocation(allocations, start_date, end_date)
    selected = [item for item in allocations if is_current(item, today)]
    return sum((Decimal(item.allocation_percentage) for item in selected), Decimal("0"))


def overlapping_allocation(
    allocations: Iterable[AllocationRow],
    start_date: date | None,
    end_date: date | None,
) -> Decimal:
    """Sum every allocation whose range meets ``start_date``..``end_date``, open bounds included.

    Used when placing a new allocation: an undated request competes with every
    row, past or current, since once stored it counts in every window.
    """
    selected = [item for item in allocations if ranges_overlap(item.start_date, item.end_date, start_date, end_date)]
    return sum((Decimal(item.allocation_percentage) for item in selected), Decimal("0"))


def available_capacity(total: Decimal, capacity: Decimal = FULL_CAPACITY) -> Decimal:
    return max(Decimal("0"), capacity - total)


def is_over_allocated(total: Decimal, capacity: Decimal = FULL_CAPACITY) -> bool:
    return total > capacity


def available_hours(hours_per_week: Decimal, available_percent: Decimal, capacity: Decimal = FULL_CAPACITY) -> Decimal:
    return (Decimal(hours_per_week) * available_percent / capacity).quantize(Decimal("0.01"))


def format_percent(value: Decimal) -> str:
    """Render ``60.00`` as ``60`` and ``12.50`` as ``12.5``."""
    normalized = Decimal(value).normalize()
    return format(normalized, "f")
