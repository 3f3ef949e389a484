"""Activity APIs: history with reward breakdown, provider sync, dev mock activities.

Routes:
- POST /me                      {wallet}          (upsert user)
- GET  /activity/list?wallet=0x...&range=week|month
- POST /strava/sync             {wallet}
- POST /dev/mock-activity       {wallet, type?, durationSec?, distanceM?}   (dev only)
"""

from __future__ import annotations

import random
import time
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request

from claim_service import current_settings, score_activities
from models_rewards import ACTIVITY_RUN, ACTIVITY_WALK, Activity, PROVIDER_STRAVA
from providers import ProviderError, ingest_activity, sync_strava_activities
from rewards_engine import SCORED_ACTIVITY_TYPES, to_naive_utc
from users import ensure_user, find_user, is_valid_wallet, normalize_wallet


activity_api = Blueprint("activity_api", __name__)
dev_api = Blueprint("dev_api", __name__)

# range -> (days back, max rows)
HISTORY_RANGES = {
    "week": (7, 80),
    "month": (30, 200),
}


def _now():
    return to_naive_utc(current_app.config["CLOCK"]())


@activity_api.post("/me")
def upsert_me():
    try:
        data = request.get_json(silent=True) or {}
        wallet = normalize_wallet(data.get("wallet"))
        if not is_valid_wallet(wallet):
            return jsonify({"ok": False, "error": "Valid wallet required"}), 400
        user = ensure_user(wallet)
        return jsonify({"ok": True, "user": user.to_dict()})
    except Exception:
        current_app.logger.exception("POST /me failed")
        return jsonify({"ok": False, "error": "Internal server error"}), 500


@activity_api.get("/activity/list")
def activity_list():
    try:
        wallet = normalize_wallet(request.args.get("wallet"))
        range_name = request.args.get("range") or "week"
        if not is_valid_wallet(wallet):
            return jsonify({"ok": False, "error": "wallet required"}), 400
        days, limit = HISTORY_RANGES.get(range_name, HISTORY_RANGES["week"])

        user = find_user(wallet)
        if not user:
            return jsonify({"ok": True, "range": range_name, "activities": []})

        settings = current_settings()
        acts = (
            Activity.query.filter(
                Activity.user_id == user.id,
                Activity.start_time >= _now() - timedelta(days=days),
                Activity.type.in_(SCORED_ACTIVITY_TYPES),
                Activity.duration_sec >= settings.min_activity_seconds,
            )
            .order_by(Activity.start_time.desc())
            .limit(limit)
            .all()
        )

        items = []
        for s in score_activities(acts, settings):
            row = s.to_dict()
            row.pop("selected", None)
            row["claimed"] = s.activity.claimed_at is not None
            items.append(row)
        return jsonify({"ok": True, "range": range_name, "activities": items})
    except Exception:
        current_app.logger.exception("GET /activity/list failed")
        return jsonify({"ok": False, "error": "activity list failed"}), 500


@activity_api.post("/strava/sync")
def strava_sync():
    try:
        data = request.get_json(silent=True) or {}
        wallet = normalize_wallet(data.get("wallet"))
        if not is_valid_wallet(wallet):
            return jsonify({"ok": False, "error": "wallet required"}), 400
        user = find_user(wallet)
        if not user:
            return jsonify({"ok": False, "error": "user not found"}), 400

        result = sync_strava_activities(user)
        return jsonify({"ok": True, **result})
    except ProviderError as e:
        current_app.logger.warning("Strava sync failed: %s", e)
        return jsonify({"ok": False, "error": str(e), "retryable": True}), 503
    except Exception:
        current_app.logger.exception("POST /strava/sync failed")
        return jsonify({"ok": False, "error": "sync failed"}), 500


def _mock_numbers(activity_type: str):
    # Plausible random session: RUN 10-60 min / 1.5-12 km, WALK 10-90 min / 0.8-8 km.
    if activity_type == ACTIVITY_RUN:
        return random.randint(600, 3600), random.randint(1500, 12000)
    return random.randint(600, 5400), random.randint(800, 8000)


@dev_api.post("/dev/mock-activity")
def dev_mock_activity():
    try:
        data = request.get_json(silent=True) or {}
        wallet = normalize_wallet(data.get("wallet"))
        if not is_valid_wallet(wallet):
            return jsonify({"ok": False, "error": "wallet required"}), 400

        activity_type = str(data.get("type") or random.choice([ACTIVITY_RUN, ACTIVITY_WALK])).upper()
        if activity_type not in SCORED_ACTIVITY_TYPES:
            return jsonify({"ok": False, "error": "type must be RUN or WALK"}), 400

        rand_duration, rand_distance = _mock_numbers(activity_type)
        try:
            duration_sec = int(data["durationSec"]) if data.get("durationSec") is not None else rand_duration
            distance_m = float(data["distanceM"]) if data.get("distanceM") is not None else rand_distance
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "durationSec / distanceM must be numbers"}), 400
        if duration_sec <= 0:
            return jsonify({"ok": False, "error": "durationSec invalid"}), 400
        if distance_m <= 0:
            return jsonify({"ok": False, "error": "distanceM invalid"}), 400

        user = ensure_user(wallet)
        provider_activity_id = f"mock_{time.time_ns()}"
        act = ingest_activity(
            user_id=user.id,
            provider=PROVIDER_STRAVA,
            provider_activity_id=provider_activity_id,
            activity_type=activity_type,
            start_time=_now(),
            duration_sec=duration_sec,
            distance_m=distance_m,
            raw_payload={"mock": provider_activity_id},
        )
        if act is None:
            return jsonify({"ok": False, "error": "duplicate mock activity, retry"}), 409

        return jsonify({
            "ok": True,
            "activityId": act.id,
            "simulated": {
                "type": activity_type,
                "durationSec": duration_sec,
                "distanceM": distance_m,
                "avgSpeedMps": act.avg_speed_mps,
            },
        })
    except Exception:
        current_app.logger.exception("POST /dev/mock-activity failed")
        return jsonify({"ok": False, "error": "mock failed"}), 500
