"""Daily cap allocation: which of today's activities fit under the remaining cap.

Allocation is order sensitive:
- Activities are taken oldest first while the running total stays within the cap.
- Only the very first activity may be partially filled (clamped to the remaining cap).
- Once something is selected, the first overflow stops the scan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal


ALLOC_PENDING = "PENDING"
ALLOC_NOTHING_TO_CLAIM = "NOTHING_TO_CLAIM"
ALLOC_DAILY_CAP_REACHED = "DAILY_CAP_REACHED"

FIT_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")


def to_fit(value) -> Decimal:
    """Convert a float/int/str amount to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_fit(value) -> Decimal:
    # ROUND_HALF_UP on Decimal rounds half away from zero.
    return to_fit(value).quantize(FIT_QUANTUM, rounding=ROUND_HALF_UP)


def remaining_cap(daily_cap, confirmed_today) -> Decimal:
    return max(ZERO, to_fit(daily_cap) - to_fit(confirmed_today))


@dataclass(frozen=True)
class CapCandidate:
    activity_id: str
    start_time: datetime
    fit_earned: Decimal


@dataclass(frozen=True)
class Allocation:
    status: str
    remaining_cap: Decimal
    amount: Decimal = ZERO
    activity_ids: tuple = field(default_factory=tuple)
    partial: bool = False

    @property
    def has_claim(self) -> bool:
        return self.status == ALLOC_PENDING


def allocate_daily_claim(candidates, confirmed_today, daily_cap) -> Allocation:
    remaining = remaining_cap(daily_cap, confirmed_today)
    if remaining <= 0:
        return Allocation(status=ALLOC_DAILY_CAP_REACHED, remaining_cap=ZERO)

    # sorted() is stable, so equal start times keep the caller's order.
    ordered = sorted(candidates, key=lambda c: c.start_time)

    selected = []
    total = ZERO
    partial = False
    for cand in ordered:
        fit = to_fit(cand.fit_earned)
        if fit <= 0:
            continue

        if total + fit > remaining:
            if not selected:
                selected.append(cand.activity_id)
                total = remaining
                partial = True
            break

        selected.append(cand.activity_id)
        total += fit

    # Round the final sum only, never the addends.
    amount = min(quantize_fit(total), remaining)
    if not selected or amount <= 0:
        return Allocation(status=ALLOC_NOTHING_TO_CLAIM, remaining_cap=remaining)

    return Allocation(
        status=ALLOC_PENDING,
        remaining_cap=remaining,
        amount=amount,
        activity_ids=tuple(selected),
        partial=partial,
    )
