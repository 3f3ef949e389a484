import uuid
from datetime import datetime, timedelta

import pytest

from app import create_app
from extensions import db
from models_rewards import ACTIVITY_RUN, PROVIDER_STRAVA, Activity
from users import ensure_user


FIXED_NOW = datetime(2025, 3, 14, 15, 0, 0)
DAY_START = datetime(2025, 3, 14)

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20

# Throwaway test signer key (never funded) and a fixed verifying-contract address.
SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcaec9b22cd4f9a7d1"
CLAIM_CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SQLALCHEMY_ENGINE_OPTIONS": {},
        "RATELIMIT_ENABLED": False,
        "CLOCK": lambda: FIXED_NOW,
        "DAILY_CAP_FIT": "50",
        "MIN_ACTIVITY_SECONDS": 60,
        "BASE_FIT_PER_MINUTE": 0.5,
        "DEFAULT_GENUINE_SCORE": 80,
        "ENABLE_DEV_ROUTES": True,
        "FITREWARDS_CLAIM_ADDRESS": CLAIM_CONTRACT,
        "SIGNER_PRIVATE_KEY": SIGNER_KEY,
        "CLAIM_RPC_URL": "http://rpc.invalid",
        "STRAVA_CLIENT_ID": "client-id",
        "STRAVA_CLIENT_SECRET": "client-secret",
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def user(app):
    return ensure_user(WALLET)


@pytest.fixture
def other_user(app):
    return ensure_user(OTHER_WALLET)


@pytest.fixture
def make_activity(app):
    """Store an activity. With intensity 100 and genuine 100, FIT earned == minutes."""

    def _make(user, duration_sec, start_time=None, activity_type=ACTIVITY_RUN,
              intensity=100, genuine=100, distance_m=None):
        act = Activity(
            user_id=user.id,
            provider=PROVIDER_STRAVA,
            provider_activity_id=uuid.uuid4().hex,
            type=activity_type,
            start_time=start_time or DAY_START + timedelta(hours=6),
            duration_sec=duration_sec,
            distance_m=distance_m,
            intensity_score=intensity,
            genuine_score=genuine,
        )
        db.session.add(act)
        db.session.commit()
        return act

    return _make
