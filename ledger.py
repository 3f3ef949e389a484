"""In-app FIT wallet ledger.

These helpers never commit: they run inside the caller's transaction so a claim
confirmation and its credit land (or roll back) together.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import update

from daily_cap import quantize_fit, to_fit
from extensions import db
from models_rewards import (
    InAppWallet,
    InAppWalletTx,
    WALLET_TX_CREDIT,
    WALLET_TX_DEBIT,
)


CLAIM_CREDIT_MEMO = "Rewards claimed"


class InsufficientBalance(Exception):
    pass


def get_wallet(user_id: int) -> InAppWallet | None:
    return InAppWallet.query.filter_by(user_id=user_id).first()


def get_or_create_wallet(user_id: int) -> InAppWallet:
    wallet = get_wallet(user_id)
    if not wallet:
        wallet = InAppWallet(user_id=user_id, balance_fit=Decimal("0"), updated_at=datetime.utcnow())
        db.session.add(wallet)
        # Assign wallet.id now; a concurrent create surfaces here as IntegrityError.
        db.session.flush()
    return wallet


def _apply_delta(wallet: InAppWallet, delta: Decimal, guard_balance: bool = False) -> None:
    stmt = (
        update(InAppWallet)
        .where(InAppWallet.id == wallet.id)
        .values(balance_fit=InAppWallet.balance_fit + delta, updated_at=datetime.utcnow())
    )
    if guard_balance:
        stmt = stmt.where(InAppWallet.balance_fit >= -delta)
    res = db.session.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount != 1:
        raise InsufficientBalance(f"Wallet {wallet.id} cannot cover {-delta} FIT")
    db.session.refresh(wallet)


def credit(user_id: int, amount, memo: str, ref: str | None = None) -> InAppWalletTx:
    amount = quantize_fit(amount)
    if amount <= 0:
        raise ValueError("Credit amount must be > 0")

    wallet = get_or_create_wallet(user_id)
    _apply_delta(wallet, amount)
    tx = InAppWalletTx(wallet_id=wallet.id, type=WALLET_TX_CREDIT, amount_fit=amount, memo=memo, ref=ref)
    db.session.add(tx)
    db.session.flush()
    return tx


def debit(user_id: int, amount, memo: str, ref: str | None = None) -> InAppWalletTx:
    """Spend from the wallet. Never lets the balance go negative."""
    amount = quantize_fit(amount)
    if amount <= 0:
        raise ValueError("Debit amount must be > 0")

    wallet = get_wallet(user_id)
    if not wallet:
        raise InsufficientBalance(f"User {user_id} has no wallet")
    _apply_delta(wallet, -amount, guard_balance=True)
    tx = InAppWalletTx(wallet_id=wallet.id, type=WALLET_TX_DEBIT, amount_fit=amount, memo=memo, ref=ref)
    db.session.add(tx)
    db.session.flush()
    return tx


def credit_claim(user_id: int, claim) -> InAppWalletTx:
    return credit(user_id, claim.amount_fit, CLAIM_CREDIT_MEMO, ref=claim.id)


def ledger_total(wallet_id: int) -> Decimal:
    """Signed sum of every transaction. Must always equal the wallet balance."""
    total = Decimal("0")
    for tx in InAppWalletTx.query.filter_by(wallet_id=wallet_id).all():
        amt = to_fit(tx.amount_fit)
        total += amt if tx.type == WALLET_TX_CREDIT else -amt
    return quantize_fit(total)


def recent_transactions(wallet_id: int, limit: int = 25):
    return (
        InAppWalletTx.query.filter_by(wallet_id=wallet_id)
        .order_by(InAppWalletTx.created_at.desc(), InAppWalletTx.id.desc())
        .limit(limit)
        .all()
    )
