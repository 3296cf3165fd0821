# backend/backoffice/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports the number of open reconciliation
issues: a non-zero count means a saga left ledgers that need manual repair.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import ReconciliationIssue
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        open_issues = (
            db.session.query(ReconciliationIssue)
            .filter(ReconciliationIssue.resolved.is_(False))
            .count()
        )
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "degraded" if open_issues else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"open_reconciliation_issues": open_issues},
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy, or degraded (open reconciliation issues)
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    http_status = 503 if database_health["status"] == "unhealthy" else 200

    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {"database": database_health},
    }
    return response, http_status
