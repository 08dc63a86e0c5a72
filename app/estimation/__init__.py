import logging
import os
import uuid

from dotenv import load_dotenv
from flask import Flask, g

from app.estimation.config import load_config
from app.estimation.db import init_db, teardown_db_session
from app.estimation.routes import bp as routes_bp

logger = logging.getLogger(__name__)

_S3_REQUIRED = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def _apply_log_level(app: Flask) -> None:
    level = logging.getLevelName(app.config.get("LOG_LEVEL") or "INFO")
    if isinstance(level, int):
        app.logger.setLevel(level)
        logger.setLevel(level)


def _check_production(app: Flask) -> None:
    """Fail fast on settings that must never reach production."""
    if (app.config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _dispose_engine_after_fork(app: Flask) -> None:
    # Pooled connections must not be shared with forked workers.
    if not hasattr(os, "register_at_fork"):
        return

    def _child() -> None:
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is not None:
            engine.dispose()
            app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_child)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    _apply_log_level(app)
    _check_production(app)
    init_db(app)
    _dispose_engine_after_fork(app)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing = [k for k in _S3_REQUIRED if not app.config.get(k)]
        if missing:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing))

    @app.before_request
    def _assign_request_id():
        # Audit events read this to correlate one request's writes.
        g.request_id = uuid.uuid4().hex

    app.register_blueprint(routes_bp)
    app.teardown_appcontext(teardown_db_session)

    logger.info("create_app() complete; app ready to serve")
    return app
