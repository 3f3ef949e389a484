"""In-app wallet APIs (read only; balances only move through claim confirmation).

Routes:
- GET /wallet/balance?wallet=0x...
- GET /wallet/txs?wallet=0x...      (latest 25)
"""

from flask import Blueprint, current_app, jsonify, request

from extensions import db
from ledger import get_or_create_wallet, recent_transactions
from users import ensure_user, is_valid_wallet, normalize_wallet


wallet_api = Blueprint("wallet_api", __name__)


def _load_wallet():
    wallet = normalize_wallet(request.args.get("wallet"))
    if not is_valid_wallet(wallet):
        return None, None
    user = ensure_user(wallet)
    w = get_or_create_wallet(user.id)
    db.session.commit()
    return user, w


@wallet_api.get("/wallet/balance")
def wallet_balance():
    try:
        user, w = _load_wallet()
        if not user:
            return jsonify({"ok": False, "error": "wallet required"}), 400
        return jsonify({
            "ok": True,
            "wallet": user.wallet,
            "balanceFit": float(w.balance_fit or 0),
            "updatedAt": w.updated_at.isoformat() if w.updated_at else None,
        })
    except Exception:
        db.session.rollback()
        current_app.logger.exception("GET /wallet/balance failed")
        return jsonify({"ok": False, "error": "balance failed"}), 500


@wallet_api.get("/wallet/txs")
def wallet_txs():
    try:
        user, w = _load_wallet()
        if not user:
            return jsonify({"ok": False, "error": "wallet required"}), 400
        return jsonify({
            "ok": True,
            "wallet": user.wallet,
            "balanceFit": float(w.balance_fit or 0),
            "txs": [t.to_dict() for t in recent_transactions(w.id)],
        })
    except Exception:
        db.session.rollback()
        current_app.logger.exception("GET /wallet/txs failed")
        return jsonify({"ok": False, "error": "txs failed"}), 500
