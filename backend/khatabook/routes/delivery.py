# Overview: Flask API routes for courier operations; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderFlowError, error_response
from ..models.users import ROLE_DELIVERY_BOY
from ..services import order_service, settlement_service


delivery_bp = Blueprint("delivery", __name__, url_prefix="/api/delivery")


@delivery_bp.get("/orders")
@require_auth
@require_role(ROLE_DELIVERY_BOY)
def list_assigned_orders_route():
    try:
        orders = order_service.get_orders_by_courier(g.current_user.id, request.args.get("status"))
        return jsonify({"orders": [o.to_dict() for o in orders], "count": len(orders)}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list assigned orders")
        return jsonify({"error": "Internal server error"}), 500


@delivery_bp.post("/orders/<order_id>/status")
@require_auth
@require_role(ROLE_DELIVERY_BOY)
def courier_status_route(order_id: str):
    """Request body: {"status": "OUT_FOR_DELIVERY" | "COMPLETED"}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.advance_status_by_courier(order_id, g.current_user.id, data.get("status"))
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update delivery status")
        return jsonify({"error": "Internal server error"}), 500


@delivery_bp.post("/orders/<order_id>/complete")
@require_auth
@require_role(ROLE_DELIVERY_BOY)
def complete_delivery_route(order_id: str):
    """
    Collect payment and complete the order in one step.

    Request body:
    {
        "amount_received_cents": 90000,  (optional, defaults to order total)
        "note": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        settlement = settlement_service.confirm_payment_and_complete(
            order_id,
            g.current_user.id,
            data.get("amount_received_cents"),
            data.get("note"),
        )
        return jsonify({"settlement": settlement.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete delivery")
        return jsonify({"error": "Internal server error"}), 500


@delivery_bp.post("/orders/<order_id>/payment-change")
@require_auth
@require_role(ROLE_DELIVERY_BOY)
def request_payment_change_route(order_id: str):
    """
    Ask the shop owner to approve a different amount.

    Request body: {"requested_amount_cents": 90000, "reason": "Damaged item"}

    Returns:
        201: Request created (PENDING)
        409: Order not OUT_FOR_DELIVERY, a request is already pending, or the limit is reached
    """
    try:
        data = request.get_json(silent=True) or {}
        change = settlement_service.request_change(
            order_id,
            g.current_user.id,
            data.get("requested_amount_cents"),
            data.get("reason"),
        )
        return jsonify({"request": change.to_dict()}), 201
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to request payment change")
        return jsonify({"error": "Internal server error"}), 500


@delivery_bp.get("/orders/<order_id>/payment-change")
@require_auth
@require_role(ROLE_DELIVERY_BOY)
def list_payment_changes_route(order_id: str):
    try:
        rows = settlement_service.list_change_requests_for_order(order_id, g.current_user.id, g.current_user.role)
        return jsonify({"requests": [r.to_dict() for r in rows]}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payment change requests")
        return jsonify({"error": "Internal server error"}), 500
