"""Daily reward claim APIs.

Routes:
- GET  /claim/preview?wallet=0x...
- POST /claim/prepare        {wallet}
- POST /claim/confirm        {wallet, claimId, txHash}   (after on-chain mint)
- POST /claim/confirm-inapp  {wallet, claimId}           (credit in-app wallet)
- POST /claim/sign           {wallet, claimId}           (EIP-712 mint authorization)

NOTHING_TO_CLAIM and DAILY_CAP_REACHED are normal 200 results of prepare.
"""

import re
from datetime import timezone

from flask import Blueprint, current_app, jsonify, request

from claim_service import (
    ClaimError,
    ClaimNotFound,
    PendingClaim,
    build_preview,
    confirm_inapp,
    confirm_onchain,
    prepare_claim,
)
from claim_signer import SignerConfigError, authorize_claim
from extensions import limiter
from rewards_engine import to_naive_utc
from users import find_user, is_valid_wallet, normalize_wallet


claims_api = Blueprint("claims_api", __name__)

_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")

CLAIM_WRITE_LIMIT = "30 per minute"


def _now():
    return current_app.config["CLOCK"]()


def _claim_error(e: ClaimError):
    body = {"ok": False, "error": str(e)}
    if e.retryable:
        body["retryable"] = True
    return jsonify(body), e.http_status


def _wallet_from(source):
    wallet = normalize_wallet(source.get("wallet"))
    if not is_valid_wallet(wallet):
        return None
    return wallet


@claims_api.get("/claim/preview")
def claim_preview():
    try:
        wallet = _wallet_from(request.args)
        if not wallet:
            return jsonify({"ok": False, "error": "wallet required"}), 400

        preview = build_preview(find_user(wallet), _now())
        return jsonify({"ok": True, **preview.to_dict()})
    except ClaimError as e:
        return _claim_error(e)
    except Exception:
        current_app.logger.exception("GET /claim/preview failed")
        return jsonify({"ok": False, "error": "preview failed"}), 500


@claims_api.post("/claim/prepare")
@limiter.limit(CLAIM_WRITE_LIMIT)
def claim_prepare():
    try:
        data = request.get_json(silent=True) or {}
        wallet = _wallet_from(data)
        if not wallet:
            return jsonify({"ok": False, "error": "wallet required"}), 400
        user = find_user(wallet)
        if not user:
            return jsonify({"ok": False, "error": "user not found"}), 400

        outcome = prepare_claim(user, _now())
        if isinstance(outcome, PendingClaim):
            return jsonify({
                "ok": True,
                "claimId": outcome.claim_id,
                "amountFit": float(outcome.amount),
                "status": outcome.status,
                "lockedActivities": outcome.locked_activities,
            })
        return jsonify({"ok": True, "claimId": None, "amountFit": 0, "status": outcome.status})
    except ClaimError as e:
        return _claim_error(e)
    except Exception:
        current_app.logger.exception("POST /claim/prepare failed")
        return jsonify({"ok": False, "error": "prepare failed"}), 500


@claims_api.post("/claim/confirm")
@limiter.limit(CLAIM_WRITE_LIMIT)
def claim_confirm_onchain():
    try:
        data = request.get_json(silent=True) or {}
        wallet = _wallet_from(data)
        claim_id = str(data.get("claimId") or "").strip()
        tx_hash = str(data.get("txHash") or "").strip()

        if not wallet:
            return jsonify({"ok": False, "error": "wallet required"}), 400
        if not claim_id:
            return jsonify({"ok": False, "error": "claimId required"}), 400
        if not _TX_HASH_RE.match(tx_hash):
            return jsonify({"ok": False, "error": "valid txHash required"}), 400

        user = find_user(wallet)
        if not user:
            return jsonify({"ok": False, "error": "user not found"}), 400

        result = confirm_onchain(user, claim_id, tx_hash.lower(), _now())
        return jsonify({"ok": True, "status": result.status})
    except ClaimError as e:
        return _claim_error(e)
    except Exception:
        current_app.logger.exception("POST /claim/confirm failed")
        return jsonify({"ok": False, "error": "confirm failed"}), 500


@claims_api.post("/claim/confirm-inapp")
@limiter.limit(CLAIM_WRITE_LIMIT)
def claim_confirm_inapp():
    try:
        data = request.get_json(silent=True) or {}
        wallet = _wallet_from(data)
        claim_id = str(data.get("claimId") or "").strip()

        if not wallet:
            return jsonify({"ok": False, "error": "wallet required"}), 400
        if not claim_id:
            return jsonify({"ok": False, "error": "claimId required"}), 400

        user = find_user(wallet)
        if not user:
            return jsonify({"ok": False, "error": "user not found"}), 400

        result = confirm_inapp(user, claim_id, _now())
        body = {"ok": True, "status": result.status}
        if result.credited is not None:
            body["credited"] = float(result.credited)
        return jsonify(body)
    except ClaimError as e:
        return _claim_error(e)
    except Exception:
        current_app.logger.exception("POST /claim/confirm-inapp failed")
        return jsonify({"ok": False, "error": "confirm-inapp failed"}), 500


@claims_api.post("/claim/sign")
@limiter.limit(CLAIM_WRITE_LIMIT)
def claim_sign():
    try:
        data = request.get_json(silent=True) or {}
        wallet_raw = str(data.get("wallet") or "").strip()
        claim_id = str(data.get("claimId") or "").strip()

        if not wallet_raw:
            return jsonify({"ok": False, "error": "wallet required"}), 400
        if not is_valid_wallet(normalize_wallet(wallet_raw)):
            return jsonify({"ok": False, "error": "invalid wallet address"}), 400
        if not claim_id:
            return jsonify({"ok": False, "error": "claimId required"}), 400

        user = find_user(wallet_raw)
        if not user:
            raise ClaimNotFound()

        now_ts = int(to_naive_utc(_now()).replace(tzinfo=timezone.utc).timestamp())
        auth = authorize_claim(user, wallet_raw, claim_id, now_ts)
        return jsonify({"ok": True, **auth.to_dict()})
    except ClaimError as e:
        return _claim_error(e)
    except SignerConfigError as e:
        current_app.logger.error("Claim signer misconfigured: %s", e)
        return jsonify({"ok": False, "error": str(e)}), 500
    except Exception:
        current_app.logger.exception("POST /claim/sign failed")
        return jsonify({"ok": False, "error": "sign failed"}), 500
