"""Daily reward claim lifecycle: preview -> prepare (lock) -> confirm (settle).

State per (user, UTC day): NONE -> PENDING -> CONFIRMED (terminal).

Locked rules:
- prepare is idempotent: an existing PENDING claim for today is returned as is.
- Creating the claim and locking its activities is one transaction. The partial
  unique index on (user_id, day_key) WHERE status = 'PENDING' decides races.
- confirm is idempotent by claim id. The PENDING -> CONFIRMED switch is a
  conditional UPDATE, so only one request ever applies the side effects.
- Any failure inside a transition rolls the whole transition back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import ledger
from daily_cap import (
    ALLOC_DAILY_CAP_REACHED,
    ALLOC_NOTHING_TO_CLAIM,
    CapCandidate,
    allocate_daily_claim,
    quantize_fit,
    remaining_cap,
    to_fit,
)
from extensions import db
from models_rewards import (
    Activity,
    CLAIM_CONFIRMED,
    CLAIM_PENDING,
    RewardClaim,
)
from rewards_engine import (
    DEFAULT_BASE_FIT_PER_MINUTE,
    DEFAULT_GENUINE_SCORE,
    SCORED_ACTIVITY_TYPES,
    DayWindow,
    score_activity,
    to_naive_utc,
    utc_day_window,
)


STATUS_PENDING = CLAIM_PENDING
STATUS_CONFIRMED = CLAIM_CONFIRMED
STATUS_NOTHING_TO_CLAIM = ALLOC_NOTHING_TO_CLAIM
STATUS_DAILY_CAP_REACHED = ALLOC_DAILY_CAP_REACHED

# Settlement reference stored on claims/activities credited to the in-app wallet.
INAPP_SETTLEMENT_REF = "WALLET"


# ---- Errors ----

class ClaimError(Exception):
    http_status = 400
    retryable = False


class ClaimValidationError(ClaimError):
    http_status = 400


class ClaimNotFound(ClaimError):
    http_status = 404

    def __init__(self, message="claim not found"):
        super().__init__(message)


class ClaimStateConflict(ClaimError):
    http_status = 409


class ClaimDependencyError(ClaimError):
    """Store/chain/signer failure. Nothing was applied; the client may retry."""

    http_status = 503
    retryable = True


# ---- Outcomes ----

@dataclass(frozen=True)
class PendingClaim:
    claim_id: str
    amount: Decimal
    locked_activities: int = 0
    existing: bool = False
    status: str = STATUS_PENDING


@dataclass(frozen=True)
class NothingToClaim:
    status: str = STATUS_NOTHING_TO_CLAIM


@dataclass(frozen=True)
class DailyCapReached:
    status: str = STATUS_DAILY_CAP_REACHED


@dataclass(frozen=True)
class ClaimConfirmed:
    claim_id: str
    credited: Decimal | None = None
    replay: bool = False
    status: str = STATUS_CONFIRMED


# ---- Settings ----

@dataclass(frozen=True)
class RewardSettings:
    daily_cap: Decimal = Decimal("50")
    min_activity_seconds: int = 60
    base_fit_per_minute: float = DEFAULT_BASE_FIT_PER_MINUTE
    default_genuine_score: int = DEFAULT_GENUINE_SCORE

    @classmethod
    def from_config(cls, config) -> "RewardSettings":
        return cls(
            daily_cap=to_fit(config.get("DAILY_CAP_FIT", 50)),
            min_activity_seconds=int(config.get("MIN_ACTIVITY_SECONDS", 60)),
            base_fit_per_minute=float(config.get("BASE_FIT_PER_MINUTE", DEFAULT_BASE_FIT_PER_MINUTE)),
            default_genuine_score=int(config.get("DEFAULT_GENUINE_SCORE", DEFAULT_GENUINE_SCORE)),
        )


def current_settings() -> RewardSettings:
    return RewardSettings.from_config(current_app.config)


# ---- Queries ----

def find_pending_claim(user_id: int, day_key: str) -> RewardClaim | None:
    return RewardClaim.query.filter_by(user_id=user_id, day_key=day_key, status=CLAIM_PENDING).first()


def confirmed_total(user_id: int, day_key: str) -> Decimal:
    rows = RewardClaim.query.filter_by(user_id=user_id, day_key=day_key, status=CLAIM_CONFIRMED).all()
    return quantize_fit(sum((to_fit(r.amount_fit) for r in rows), Decimal("0")))


def eligible_activities(user_id: int, window: DayWindow, settings: RewardSettings, pending_claim_id=None):
    """Today's unclaimed RUN/WALK activities, oldest first.

    Activities locked into `pending_claim_id` are included; anything locked by
    another claim is not.
    """
    if pending_claim_id:
        lock_filter = or_(Activity.claim_id.is_(None), Activity.claim_id == pending_claim_id)
    else:
        lock_filter = Activity.claim_id.is_(None)

    return (
        Activity.query.filter(
            Activity.user_id == user_id,
            Activity.start_time >= window.start,
            Activity.start_time < window.end,
            Activity.claimed_at.is_(None),
            lock_filter,
            Activity.type.in_(SCORED_ACTIVITY_TYPES),
            Activity.duration_sec >= settings.min_activity_seconds,
        )
        .order_by(Activity.start_time.asc())
        .all()
    )


@dataclass(frozen=True)
class ScoredActivity:
    activity: Activity
    intensity_score: int
    genuine_score: int
    fit_raw: Decimal
    selected: bool = False

    @property
    def fit_earned(self) -> Decimal:
        return quantize_fit(self.fit_raw)

    def to_dict(self):
        a = self.activity
        return {
            "id": a.id,
            "provider": a.provider,
            "providerActivityId": a.provider_activity_id,
            "type": a.type,
            "startTime": a.start_time.isoformat() if a.start_time else None,
            "durationSec": a.duration_sec,
            "distanceM": a.distance_m,
            "avgSpeedMps": a.avg_speed_mps,
            "intensityScore": self.intensity_score,
            "genuineScore": self.genuine_score,
            "fitEarned": float(self.fit_earned),
            "selected": self.selected,
        }


def score_activities(activities, settings: RewardSettings):
    scored = []
    for a in activities:
        s = score_activity(a, settings.base_fit_per_minute, settings.default_genuine_score)
        scored.append(ScoredActivity(a, s.intensity_score, s.genuine_score, to_fit(s.fit_earned)))
    return scored


def _allocate(scored, confirmed_today: Decimal, settings: RewardSettings):
    # Unrounded earnings; rounding happens once on the total.
    candidates = [CapCandidate(s.activity.id, s.activity.start_time, s.fit_raw) for s in scored]
    return allocate_daily_claim(candidates, confirmed_today, settings.daily_cap)


# ---- Preview (read only) ----

@dataclass(frozen=True)
class ClaimPreview:
    day_key: str
    daily_cap: Decimal
    already_claimed: Decimal
    remaining_cap: Decimal
    total_uncapped: Decimal
    claimable: Decimal
    pending_claim: RewardClaim | None = None
    activities: list = field(default_factory=list)

    def to_dict(self):
        pending = None
        if self.pending_claim is not None:
            pending = {"id": self.pending_claim.id, "amountFit": float(self.pending_claim.amount_fit)}
        return {
            "dayKey": self.day_key,
            "dailyCap": float(self.daily_cap),
            "alreadyClaimed": float(self.already_claimed),
            "remainingCap": float(self.remaining_cap),
            "totalUncapped": float(self.total_uncapped),
            "claimableFit": float(self.claimable),
            "pendingClaim": pending,
            "activities": [a.to_dict() for a in self.activities],
        }


def build_preview(user, now: datetime, settings: RewardSettings | None = None) -> ClaimPreview:
    settings = settings or current_settings()
    window = utc_day_window(now)
    zero = Decimal("0")

    if user is None:
        return ClaimPreview(window.day_key, settings.daily_cap, zero, settings.daily_cap, zero, zero)

    already = confirmed_total(user.id, window.day_key)
    remaining = remaining_cap(settings.daily_cap, already)

    # Cap already hit: show nothing claimable, even if activities exist.
    if remaining <= 0:
        return ClaimPreview(window.day_key, settings.daily_cap, already, zero, zero, zero)

    pending = find_pending_claim(user.id, window.day_key)
    scored = score_activities(
        eligible_activities(user.id, window, settings, pending.id if pending else None),
        settings,
    )
    total_uncapped = quantize_fit(sum((s.fit_raw for s in scored), zero))

    if pending:
        selected_ids = {s.activity.id for s in scored if s.activity.claim_id == pending.id}
        claimable = quantize_fit(pending.amount_fit)
    else:
        allocation = _allocate(scored, already, settings)
        selected_ids = set(allocation.activity_ids)
        claimable = allocation.amount

    activities = [
        ScoredActivity(s.activity, s.intensity_score, s.genuine_score, s.fit_raw, s.activity.id in selected_ids)
        for s in scored
    ]
    return ClaimPreview(
        window.day_key, settings.daily_cap, already, remaining, total_uncapped, claimable, pending, activities
    )


# ---- Prepare ----

class _LockLost(Exception):
    pass


def prepare_claim(user, now: datetime, settings: RewardSettings | None = None):
    settings = settings or current_settings()
    window = utc_day_window(now)

    pending = find_pending_claim(user.id, window.day_key)
    if pending:
        return PendingClaim(pending.id, quantize_fit(pending.amount_fit), existing=True)

    already = confirmed_total(user.id, window.day_key)
    scored = score_activities(eligible_activities(user.id, window, settings), settings)
    allocation = _allocate(scored, already, settings)

    if allocation.status == ALLOC_DAILY_CAP_REACHED:
        return DailyCapReached()
    if allocation.status == ALLOC_NOTHING_TO_CLAIM:
        # A concurrent prepare may have committed and locked everything since the first lookup.
        winner = find_pending_claim(user.id, window.day_key)
        if winner:
            return PendingClaim(winner.id, quantize_fit(winner.amount_fit), existing=True)
        return NothingToClaim()

    ids = list(allocation.activity_ids)
    try:
        claim = RewardClaim(
            user_id=user.id,
            day_key=window.day_key,
            amount_fit=allocation.amount,
            status=CLAIM_PENDING,
            created_at=to_naive_utc(now),
        )
        db.session.add(claim)
        db.session.flush()

        res = db.session.execute(
            update(Activity)
            .where(Activity.id.in_(ids), Activity.claim_id.is_(None), Activity.claimed_at.is_(None))
            .values(claim_id=claim.id)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != len(ids):
            raise _LockLost()

        claim_id = claim.id
        db.session.commit()
    except (IntegrityError, _LockLost):
        # Lost a race with a concurrent prepare: hand back the winner's claim.
        db.session.rollback()
        winner = find_pending_claim(user.id, window.day_key)
        if winner:
            return PendingClaim(winner.id, quantize_fit(winner.amount_fit), existing=True)
        raise ClaimDependencyError("claim preparation conflicted, retry")
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("prepare_claim store failure for user %s: %s", user.id, e)
        raise ClaimDependencyError("prepare failed, retry") from e
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "Prepared claim %s for user %s: %s FIT over %d activities%s",
        claim_id, user.id, allocation.amount, len(ids), " (partial)" if allocation.partial else "",
    )
    return PendingClaim(claim_id, allocation.amount, locked_activities=len(ids))


# ---- Confirm ----

def load_owned_claim(user, claim_id) -> RewardClaim:
    claim_id = str(claim_id or "").strip()
    if not claim_id:
        raise ClaimValidationError("claimId required")
    claim = db.session.get(RewardClaim, claim_id)
    if not claim or user is None or claim.user_id != user.id:
        raise ClaimNotFound()
    return claim


def _confirm(user, claim_id, tx_ref: str, now: datetime, credit_wallet: bool) -> ClaimConfirmed:
    claim = load_owned_claim(user, claim_id)
    if claim.status == CLAIM_CONFIRMED:
        return ClaimConfirmed(claim.id, replay=True)

    confirmed_at = to_naive_utc(now)
    credited = None
    try:
        res = db.session.execute(
            update(RewardClaim)
            .where(RewardClaim.id == claim.id, RewardClaim.status == CLAIM_PENDING)
            .values(status=CLAIM_CONFIRMED, tx_ref=tx_ref, confirmed_at=confirmed_at)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            # A concurrent confirm got there first and owns the side effects.
            db.session.rollback()
            return ClaimConfirmed(claim.id, replay=True)

        db.session.execute(
            update(Activity)
            .where(Activity.claim_id == claim.id, Activity.user_id == user.id, Activity.claimed_at.is_(None))
            .values(claimed_at=confirmed_at, claim_tx=tx_ref)
            .execution_options(synchronize_session=False)
        )

        if credit_wallet:
            ledger.credit_claim(user.id, claim)
            credited = quantize_fit(claim.amount_fit)

        confirmed_id = claim.id
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("confirm of claim %s failed: %s", claim_id, e)
        raise ClaimDependencyError("confirm failed, retry") from e
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Confirmed claim %s (ref=%s, credited=%s)", confirmed_id, tx_ref, credited)
    return ClaimConfirmed(confirmed_id, credited=credited)


def confirm_onchain(user, claim_id, tx_ref: str, now: datetime) -> ClaimConfirmed:
    if not tx_ref:
        raise ClaimValidationError("valid txHash required")
    return _confirm(user, claim_id, tx_ref, now, credit_wallet=False)


def confirm_inapp(user, claim_id, now: datetime) -> ClaimConfirmed:
    return _confirm(user, claim_id, INAPP_SETTLEMENT_REF, now, credit_wallet=True)
