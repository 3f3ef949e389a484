"""Reward models (activities, daily claims, in-app wallet ledger).

Wallet-first identity: users.wallet is the lowercase 0x address. Everything
else hangs off users.id.

Locked rules:
- One activity per (provider, provider_activity_id); duplicates are skipped on ingest.
- At most one PENDING reward claim per (user, day_key), enforced by a partial unique index.
- claim_id / claimed_at / status / balances are only written by claim_service and ledger.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)

from extensions import db


ACTIVITY_RUN = "RUN"
ACTIVITY_WALK = "WALK"

CLAIM_PENDING = "PENDING"
CLAIM_CONFIRMED = "CONFIRMED"

WALLET_TX_CREDIT = "CREDIT"
WALLET_TX_DEBIT = "DEBIT"

PROVIDER_STRAVA = "STRAVA"

FIT_AMOUNT = Numeric(20, 6)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(dt):
    return dt.isoformat() if dt else None


class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    wallet = Column(String(42), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {"id": self.id, "wallet": self.wallet, "created_at": _iso(self.created_at)}


class ProviderConnection(db.Model):
    __tablename__ = "provider_connections"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    access_token = Column(String(255), nullable=True)
    refresh_token = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_connection_user_provider"),
    )


class Activity(db.Model):
    __tablename__ = "activities"

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    provider = Column(String(20), nullable=False)
    provider_activity_id = Column(String(64), nullable=False)
    type = Column(String(20), nullable=False)  # RUN / WALK (others are stored but never scored)

    start_time = Column(DateTime, nullable=False)
    duration_sec = Column(Integer, nullable=False, default=0)
    distance_m = Column(Float, nullable=True)
    avg_speed_mps = Column(Float, nullable=True)

    # 0 / NULL = not computed yet
    intensity_score = Column(Integer, nullable=True)
    # NULL = no trust signal, scored with the configured default
    genuine_score = Column(Integer, nullable=True)
    raw_hash = Column(String(64), nullable=True)

    claim_id = Column(String(32), ForeignKey("reward_claims.id"), nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)
    claim_tx = Column(String(90), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_activity_id", name="uq_activity_provider_activity"),
        Index("idx_activities_user_start", "user_id", "start_time"),
    )


class RewardClaim(db.Model):
    __tablename__ = "reward_claims"

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_key = Column(String(10), nullable=False)  # YYYY-MM-DD (UTC)
    amount_fit = Column(FIT_AMOUNT, nullable=False)
    status = Column(String(20), nullable=False, default=CLAIM_PENDING)
    tx_ref = Column(String(90), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_reward_claims_user_day", "user_id", "day_key"),
        Index(
            "uq_reward_claims_user_day_pending",
            "user_id",
            "day_key",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "day_key": self.day_key,
            "amount_fit": float(self.amount_fit or 0),
            "status": self.status,
            "tx_ref": self.tx_ref,
            "confirmed_at": _iso(self.confirmed_at),
            "created_at": _iso(self.created_at),
        }


class InAppWallet(db.Model):
    __tablename__ = "inapp_wallets"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    balance_fit = Column(FIT_AMOUNT, nullable=False, default=Decimal("0"))
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class InAppWalletTx(db.Model):
    """Append-only ledger entry. Never updated or deleted."""

    __tablename__ = "inapp_wallet_txs"

    id = Column(Integer, primary_key=True)
    wallet_id = Column(Integer, ForeignKey("inapp_wallets.id"), nullable=False, index=True)
    type = Column(String(10), nullable=False)  # CREDIT / DEBIT
    amount_fit = Column(FIT_AMOUNT, nullable=False)
    memo = Column(String(200), nullable=False, default="")
    ref = Column(String(90), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_inapp_wallet_txs_wallet_created", "wallet_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "amountFit": float(self.amount_fit or 0),
            "memo": self.memo,
            "ref": self.ref,
            "createdAt": _iso(self.created_at),
        }
