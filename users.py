import re
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from extensions import db
from models_rewards import User


_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_wallet(wallet) -> str:
    return str(wallet or "").strip().lower()


def is_valid_wallet(wallet: str) -> bool:
    return bool(_WALLET_RE.match(wallet or ""))


def find_user(wallet: str):
    return User.query.filter_by(wallet=normalize_wallet(wallet)).first()


def ensure_user(wallet: str) -> User:
    """Get or create the user for a wallet (commits on create)."""
    wallet = normalize_wallet(wallet)
    user = User.query.filter_by(wallet=wallet).first()
    if user:
        return user
    user = User(wallet=wallet, created_at=datetime.utcnow())
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        # Created by a concurrent request.
        db.session.rollback()
        user = User.query.filter_by(wallet=wallet).one()
    return user
