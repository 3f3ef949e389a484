from dotenv import load_dotenv
load_dotenv()
from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from datetime import datetime
import logging
import os

from extensions import db, limiter


def _is_production() -> bool:
    return bool(os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production")


def _database_url() -> str:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        if os.getenv("RENDER") == "true":
            raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
        db_url = "sqlite:///fitchain.db"
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


def _engine_options(db_url: str, timeout_seconds: int) -> dict:
    opts = {"pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        # Wait for the writer lock instead of failing immediately.
        opts["connect_args"] = {"timeout": timeout_seconds}
    else:
        opts["pool_recycle"] = 300
        opts["pool_timeout"] = timeout_seconds
        if db_url.startswith("postgresql"):
            opts["connect_args"] = {
                "connect_timeout": timeout_seconds,
                "options": f"-c statement_timeout={timeout_seconds * 1000}",
            }
    return opts


def load_config() -> dict:
    """Environment-driven settings. Tunables are config, never constants in the engine."""
    secret_key = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY")
    if not secret_key:
        # Safe dev fallback to prevent 500s locally. Set SECRET_KEY in production.
        secret_key = "dev-secret-key-change-me"

    db_url = _database_url()
    db_timeout = int(os.getenv("DB_TIMEOUT_SECONDS", "10"))

    return {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": db_url,
        "SQLALCHEMY_ENGINE_OPTIONS": _engine_options(db_url, db_timeout),
        # Rewards
        "DAILY_CAP_FIT": os.getenv("DAILY_CAP_FIT", "50"),
        "MIN_ACTIVITY_SECONDS": int(os.getenv("MIN_ACTIVITY_SECONDS", "60")),
        "BASE_FIT_PER_MINUTE": float(os.getenv("BASE_FIT_PER_MINUTE", "0.5")),
        "DEFAULT_GENUINE_SCORE": int(os.getenv("DEFAULT_GENUINE_SCORE", "80")),
        # On-chain claim authorization
        "CLAIM_RPC_URL": os.getenv("CLAIM_RPC_URL") or os.getenv("BASE_SEPOLIA_RPC_URL") or "https://sepolia.base.org",
        "FITREWARDS_CLAIM_ADDRESS": os.getenv("FITREWARDS_CLAIM_ADDRESS"),
        "SIGNER_PRIVATE_KEY": os.getenv("SIGNER_PRIVATE_KEY"),
        "CLAIM_CHAIN_ID": int(os.getenv("CLAIM_CHAIN_ID", "84532")),
        "CLAIM_SIGNATURE_TTL_SECONDS": int(os.getenv("CLAIM_SIGNATURE_TTL_SECONDS", "600")),
        "RPC_TIMEOUT_SECONDS": float(os.getenv("RPC_TIMEOUT_SECONDS", "12")),
        # Providers
        "STRAVA_CLIENT_ID": os.getenv("STRAVA_CLIENT_ID"),
        "STRAVA_CLIENT_SECRET": os.getenv("STRAVA_CLIENT_SECRET"),
        "PROVIDER_HTTP_TIMEOUT_SECONDS": float(os.getenv("PROVIDER_HTTP_TIMEOUT_SECONDS", "15")),
        # Misc
        "ENABLE_DEV_ROUTES": os.getenv("ENABLE_DEV_ROUTES", "0" if _is_production() else "1") == "1",
        "RATELIMIT_STORAGE_URI": os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
        "RATELIMIT_DEFAULT": "600 per hour",
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        # Request clock; tests swap in a fixed one.
        "CLOCK": datetime.utcnow,
    }


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(load_config())
    if overrides:
        app.config.update(overrides)

    # Enforce a strong SECRET_KEY in production (do not allow dev fallbacks).
    if _is_production() and app.config["SECRET_KEY"].startswith("dev-secret-key-change"):
        raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Behind a single reverse proxy hop in production.
    if _is_production():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    CORS(app)
    limiter.init_app(app)

    # Blueprints import models, so they come after db.init_app.
    from activity import activity_api, dev_api
    from claims import claims_api
    from wallet import wallet_api

    app.register_blueprint(activity_api)
    app.register_blueprint(claims_api)
    app.register_blueprint(wallet_api)
    if app.config["ENABLE_DEV_ROUTES"]:
        app.register_blueprint(dev_api)

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "name": "fitchain-backend", "time": datetime.utcnow().isoformat() + "Z"})

    @app.after_request
    def add_default_headers(resp):
        # avoid caching user-specific responses
        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"ok": False, "error": "Too many requests", "retryable": True}), 429

    with app.app_context():
        import models_rewards  # noqa: F401
        db.create_all()

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.getenv("PORT", 4000))
    debug = os.getenv("FLASK_ENV", "development") == "development"

    print("=" * 60)
    print("FitChain Rewards API")
    print("=" * 60)
    print(f"Daily cap: {app.config['DAILY_CAP_FIT']} FIT")
    print(f"Claim contract: {app.config['FITREWARDS_CLAIM_ADDRESS'] or '(not configured)'}")
    print(f"Dev routes: {'on' if app.config['ENABLE_DEV_ROUTES'] else 'off'}")
    print(f"API: http://localhost:{port}")
    print("=" * 60)

    app.run(host="0.0.0.0", port=port, debug=debug)
