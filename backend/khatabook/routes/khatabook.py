# Overview: Flask API routes for khatabook balances and off-order settlements; parses input and returns JSON responses.

"""
Khatabook API Routes

Balances are from the caller's side: positive means the counterparty owes
the caller, negative means the caller owes the counterparty.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderFlowError, ValidationError, error_response
from ..models.users import ROLE_ADMIN, ROLE_SHOP_OWNER
from ..services import ledger_service, settlement_service


khatabook_bp = Blueprint("khatabook", __name__, url_prefix="/api/khatabook")


@khatabook_bp.get("/summary")
@require_auth
def summary_route():
    """Optional ?counterparty_id= scopes the summary to one trading partner."""
    try:
        summary = ledger_service.get_summary(g.current_user.id, request.args.get("counterparty_id"))
        return jsonify(summary), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get khatabook summary")
        return jsonify({"error": "Internal server error"}), 500


@khatabook_bp.get("/entries")
@require_auth
def entries_route():
    """
    Paginated entries, newest first.

    Query params: page, limit, type (CREDIT/DEBIT or a transaction type), counterparty_id
    """
    try:
        page = request.args.get("page", default=1, type=int)
        limit = request.args.get("limit", default=20, type=int)
        result = ledger_service.get_entries(
            g.current_user.id,
            page=page,
            limit=limit,
            type=request.args.get("type"),
            counterparty_id=request.args.get("counterparty_id"),
        )
        return jsonify(result), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list khatabook entries")
        return jsonify({"error": "Internal server error"}), 500


@khatabook_bp.get("/balance/<counterparty_id>")
@require_auth
def outstanding_balance_route(counterparty_id: str):
    try:
        balance = ledger_service.get_outstanding_balance(g.current_user.id, counterparty_id)
        return jsonify({
            "counterparty_id": counterparty_id,
            "balance_cents": balance,
            "balance_status": ledger_service.describe_balance(balance),
        }), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get outstanding balance")
        return jsonify({"error": "Internal server error"}), 500


@khatabook_bp.get("/counterparties")
@require_auth
def counterparty_balances_route():
    try:
        return jsonify(ledger_service.get_counterparty_balances(g.current_user.id)), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get counterparty balances")
        return jsonify({"error": "Internal server error"}), 500


@khatabook_bp.get("/admin/totals")
@require_auth
@require_role(ROLE_ADMIN)
def account_totals_route():
    try:
        return jsonify(ledger_service.get_account_totals()), 200
    except Exception:
        current_app.logger.exception("Failed to get account totals")
        return jsonify({"error": "Internal server error"}), 500


@khatabook_bp.post("/advance-payment")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def advance_payment_route():
    """Request body: {"retailer_id": "...", "amount_cents": 50000, "note": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("retailer_id"):
            raise ValidationError("retailer_id is required")
        result = settlement_service.record_advance_payment(
            g.current_user.id,
            data["retailer_id"],
            data.get("amount_cents"),
            data.get("note"),
        )
        return jsonify(result), 201
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record advance payment")
        return jsonify({"error": "Internal server error"}), 500


@khatabook_bp.post("/settle")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def settle_balance_route():
    """
    Shop owner pays down their outstanding balance with a retailer.

    Request body:
    {
        "retailer_id": "...",
        "amount_cents": 30000,
        "order_id": "...",  (optional, ties the settlement to a partially paid order)
        "note": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("retailer_id"):
            raise ValidationError("retailer_id is required")
        result = settlement_service.settle_balance(
            g.current_user.id,
            data["retailer_id"],
            data.get("amount_cents"),
            order_id=data.get("order_id"),
            note=data.get("note"),
        )
        return jsonify(result), 201
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to settle balance")
        return jsonify({"error": "Internal server error"}), 500
