from datetime import datetime, timedelta
from decimal import Decimal

from daily_cap import (
    ALLOC_DAILY_CAP_REACHED,
    ALLOC_NOTHING_TO_CLAIM,
    ALLOC_PENDING,
    CapCandidate,
    allocate_daily_claim,
    quantize_fit,
    remaining_cap,
)


T0 = datetime(2025, 3, 14, 6, 0)


def cand(activity_id, fit, minutes_after=0):
    return CapCandidate(activity_id, T0 + timedelta(minutes=minutes_after), Decimal(str(fit)))


def test_single_activity_under_cap():
    a = allocate_daily_claim([cand("a", 12.5)], Decimal("0"), Decimal("50"))
    assert a.status == ALLOC_PENDING
    assert a.amount == Decimal("12.5")
    assert a.activity_ids == ("a",)
    assert not a.partial


def test_first_activity_is_partially_filled():
    a = allocate_daily_claim([cand("a", 25)], Decimal("40"), Decimal("50"))
    assert a.status == ALLOC_PENDING
    assert a.amount == Decimal("10")
    assert a.activity_ids == ("a",)
    assert a.partial


def test_overflow_after_first_stops_the_scan():
    cands = [cand("a", 6, 0), cand("b", 6, 10), cand("c", 1, 20)]
    a = allocate_daily_claim(cands, Decimal("0"), Decimal("10"))
    assert a.activity_ids == ("a",)
    assert a.amount == Decimal("6")
    assert not a.partial


def test_activities_are_taken_oldest_first():
    cands = [cand("late", 5, 60), cand("early", 5, 0), cand("mid", 5, 30)]
    a = allocate_daily_claim(cands, Decimal("0"), Decimal("50"))
    assert a.activity_ids == ("early", "mid", "late")
    assert a.amount == Decimal("15")


def test_zero_fit_activities_are_skipped():
    cands = [cand("zero", 0, 0), cand("a", 3, 5)]
    a = allocate_daily_claim(cands, Decimal("0"), Decimal("50"))
    assert a.activity_ids == ("a",)


def test_cap_reached():
    a = allocate_daily_claim([cand("a", 5)], Decimal("50"), Decimal("50"))
    assert a.status == ALLOC_DAILY_CAP_REACHED
    assert a.remaining_cap == 0
    assert not a.has_claim


def test_zero_cap_is_cap_reached():
    a = allocate_daily_claim([cand("a", 5)], Decimal("0"), Decimal("0"))
    assert a.status == ALLOC_DAILY_CAP_REACHED


def test_nothing_to_claim():
    assert allocate_daily_claim([], Decimal("0"), Decimal("50")).status == ALLOC_NOTHING_TO_CLAIM
    a = allocate_daily_claim([cand("a", 0)], Decimal("0"), Decimal("50"))
    assert a.status == ALLOC_NOTHING_TO_CLAIM
    assert a.remaining_cap == Decimal("50")


def test_sum_is_rounded_once_not_per_activity():
    # Each rounds down to 0.333333 on its own; the sum rounds to 1.000000.
    third = Decimal("1") / Decimal("3")
    cands = [
        CapCandidate("a", T0, third),
        CapCandidate("b", T0 + timedelta(minutes=1), third),
        CapCandidate("c", T0 + timedelta(minutes=2), third),
    ]
    a = allocate_daily_claim(cands, Decimal("0"), Decimal("50"))
    assert a.amount == Decimal("1.000000")


def test_amount_never_exceeds_remaining_cap():
    cands = [cand("a", 7.1234567, 0), cand("b", 2.8765432, 1)]
    a = allocate_daily_claim(cands, Decimal("40"), Decimal("50"))
    assert a.amount <= Decimal("10")


def test_helpers():
    assert quantize_fit(0.1 + 0.2) == Decimal("0.300000")
    assert quantize_fit("2.0000005") == Decimal("2.000001")
    assert remaining_cap(50, 60) == 0
    assert remaining_cap("50", "12.5") == Decimal("37.5")
