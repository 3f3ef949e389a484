"""Activity ingestion and provider (Strava) token handling.

- get_valid_access_token() refreshes only when the stored token expires within 60s.
- ingest_activity() stores one workout; a duplicate (provider, provider_activity_id)
  is an expected skip, not an error.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from urllib import parse as urlparse
from urllib import request as urlrequest
from urllib.error import URLError

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models_rewards import (
    ACTIVITY_RUN,
    ACTIVITY_WALK,
    Activity,
    PROVIDER_STRAVA,
    ProviderConnection,
)
from rewards_engine import to_naive_utc


STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_ACTIVITIES_URL = "https://www.strava.com/api/v3/athlete/activities"

TOKEN_REFRESH_MARGIN = timedelta(seconds=60)


class ProviderError(Exception):
    """Provider not connected, misconfigured, or unreachable."""


def _http_json(url: str, data: dict | None = None, headers: dict | None = None, timeout=15):
    body = None
    hdrs = {"Accept": "application/json"}
    hdrs.update(headers or {})
    if data is not None:
        body = json.dumps(data).encode("utf-8")
        hdrs["Content-Type"] = "application/json"
    req = urlrequest.Request(url, data=body, headers=hdrs)
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except (URLError, TimeoutError, OSError) as e:
        raise ProviderError(f"request to {url} failed: {e}") from e
    try:
        return json.loads(raw) if raw else {}
    except ValueError as e:
        raise ProviderError(f"bad JSON from {url}") from e


def _timeout():
    return float(current_app.config.get("PROVIDER_HTTP_TIMEOUT_SECONDS", 15))


def get_valid_access_token(user, provider: str = PROVIDER_STRAVA, now: datetime | None = None) -> str:
    conn = ProviderConnection.query.filter_by(user_id=user.id, provider=provider).first()
    if not conn:
        raise ProviderError(f"{provider.title()} not connected")

    now = to_naive_utc(now or current_app.config.get("CLOCK", datetime.utcnow)())
    if conn.access_token and conn.expires_at and conn.expires_at > now + TOKEN_REFRESH_MARGIN:
        return conn.access_token

    client_id = current_app.config.get("STRAVA_CLIENT_ID")
    client_secret = current_app.config.get("STRAVA_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise ProviderError("Missing STRAVA_CLIENT_ID / STRAVA_CLIENT_SECRET")

    data = _http_json(
        STRAVA_TOKEN_URL,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": conn.refresh_token,
        },
        timeout=_timeout(),
    )
    if not data.get("access_token"):
        raise ProviderError("token refresh returned no access_token")

    conn.access_token = data["access_token"]
    conn.refresh_token = data.get("refresh_token") or conn.refresh_token
    conn.expires_at = to_naive_utc(datetime.fromtimestamp(int(data.get("expires_at") or 0), tz=timezone.utc))
    db.session.commit()
    current_app.logger.info("Refreshed %s token for user %s", provider, user.id)
    return conn.access_token


def avg_speed(distance_m, duration_sec):
    if not distance_m or not duration_sec or duration_sec <= 0:
        return None
    return round(float(distance_m) / float(duration_sec), 3)


def ingest_activity(
    user_id: int,
    provider: str,
    provider_activity_id: str,
    activity_type: str,
    start_time: datetime,
    duration_sec: int,
    distance_m=None,
    intensity_score=None,
    genuine_score=None,
    raw_payload=None,
):
    """Insert one activity. Returns None when it was already ingested."""
    raw_hash = None
    if raw_payload is not None:
        raw_hash = hashlib.sha256(json.dumps(raw_payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    act = Activity(
        user_id=user_id,
        provider=provider,
        provider_activity_id=str(provider_activity_id),
        type=(activity_type or "").upper(),
        start_time=to_naive_utc(start_time),
        duration_sec=int(duration_sec or 0),
        distance_m=distance_m,
        avg_speed_mps=avg_speed(distance_m, duration_sec),
        intensity_score=intensity_score,
        genuine_score=genuine_score,
        raw_hash=raw_hash,
    )
    db.session.add(act)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return act


def _parse_strava_time(value) -> datetime:
    s = str(value or "")
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


def sync_strava_activities(user, per_page: int = 30) -> dict:
    """Pull the latest athlete activities and store RUN/WALK ones."""
    token = get_valid_access_token(user, PROVIDER_STRAVA)
    url = STRAVA_ACTIVITIES_URL + "?" + urlparse.urlencode({"per_page": per_page, "page": 1})
    items = _http_json(url, headers={"Authorization": f"Bearer {token}"}, timeout=_timeout())
    if not isinstance(items, list):
        items = []

    saved = 0
    skipped = 0
    for a in items:
        activity_type = str(a.get("type") or "").upper()
        if activity_type not in (ACTIVITY_RUN, ACTIVITY_WALK):
            skipped += 1
            continue

        distance = a.get("distance")
        act = ingest_activity(
            user_id=user.id,
            provider=PROVIDER_STRAVA,
            provider_activity_id=a.get("id"),
            activity_type=activity_type,
            start_time=_parse_strava_time(a.get("start_date")),
            duration_sec=int(a.get("elapsed_time") or 0),
            distance_m=round(float(distance)) if distance is not None else None,
            raw_payload=a,
        )
        if act is None:
            skipped += 1
        else:
            saved += 1

    current_app.logger.info("Strava sync for user %s: saved=%d skipped=%d", user.id, saved, skipped)
    return {"saved": saved, "skipped": skipped, "fetched": len(items)}
