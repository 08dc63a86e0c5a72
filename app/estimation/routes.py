import logging

from flask import Blueprint
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.estimation.db import db_session

logger = logging.getLogger(__name__)

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Liveness plus a `SELECT 1` round trip; 503 when the database is unreachable."""
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("HEALTH: database check failed")
        return {"ok": False, "database": "unreachable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    # Probe endpoint; never touches the database.
    return "ok", 200
