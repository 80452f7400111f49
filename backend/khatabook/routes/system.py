# backend/khatabook/routes/system.py
"""
System health endpoint.

Checks the database and the ledger's conservation total so an operator can
tell at a glance whether balances have drifted.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db, notifier
from ..models import LedgerAccount, Order, SessionToken, User
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        order_count = db.session.query(Order).count()
        active_sessions = db.session.query(SessionToken).filter_by(is_revoked=False).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "orders": order_count,
                "active_sessions": active_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_ledger_health() -> dict:
    """
    Every posting is half of a transfer, so account balances must sum to zero.

    A non-zero net is reported as degraded; run `flask ledger verify` for detail.
    """
    start_time = time.time()
    try:
        net = int(db.session.query(func.coalesce(func.sum(LedgerAccount.balance_cents), 0)).scalar())
        accounts = db.session.query(LedgerAccount).count()
        elapsed_ms = (time.time() - start_time) * 1000

        result = {
            "status": "healthy" if net == 0 else "degraded",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "accounts": accounts,
                "system_net_balance_cents": net,
            }
        }
        if net != 0:
            result["warning"] = "Ledger accounts do not net to zero"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Ledger health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Ledger error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy (or degraded but operational)
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    ledger_health = check_ledger_health()

    all_checks = [database_health, ledger_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "notification_transport": type(notifier.transport).__name__,
        "checks": {
            "database": database_health,
            "ledger": ledger_health,
        }
    }

    return response, http_status
