# Overview: Flask API routes for shop-owner decisions on courier payment change requests.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderFlowError, error_response
from ..models.users import ROLE_SHOP_OWNER
from ..services import settlement_service


payment_changes_bp = Blueprint("payment_changes", __name__, url_prefix="/api/payment-change-requests")


@payment_changes_bp.get("")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def list_requests_route():
    """Requests on the shop owner's orders, newest first. Optional ?status=PENDING"""
    try:
        rows = settlement_service.list_change_requests_for_owner(g.current_user.id, request.args.get("status"))
        return jsonify({"requests": [r.to_dict() for r in rows], "count": len(rows)}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payment change requests")
        return jsonify({"error": "Internal server error"}), 500


@payment_changes_bp.get("/orders/<order_id>")
@require_auth
def list_order_requests_route(order_id: str):
    try:
        rows = settlement_service.list_change_requests_for_order(order_id, g.current_user.id, g.current_user.role)
        return jsonify({"requests": [r.to_dict() for r in rows]}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payment change requests")
        return jsonify({"error": "Internal server error"}), 500


@payment_changes_bp.post("/<request_id>/approve")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def approve_request_route(request_id: str):
    """
    Approve a PENDING request; the requested amount becomes the order total.

    Returns:
        200: Request approved
        404: Request not found (or not on this owner's order)
        409: Request already resolved or expired
    """
    try:
        data = request.get_json(silent=True) or {}
        change = settlement_service.approve_change(request_id, g.current_user.id, data.get("note"))
        return jsonify({"request": change.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve payment change request")
        return jsonify({"error": "Internal server error"}), 500


@payment_changes_bp.post("/<request_id>/reject")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def reject_request_route(request_id: str):
    """Request body (optional): {"reason": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        change = settlement_service.reject_change(request_id, g.current_user.id, data.get("reason"))
        return jsonify({"request": change.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject payment change request")
        return jsonify({"error": "Internal server error"}), 500
