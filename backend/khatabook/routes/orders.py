# Overview: Flask API routes for order lifecycle operations; parses input and returns JSON responses.

"""
Order API Routes

DESIGN:
- Shop owners place and cancel orders and correct recorded payments
- Retailers accept/reject, advance status, assign couriers and confirm payment
- Any party to an order (or an admin) can read it, its items, timeline and
  payment audit trail

All amounts are integer paise (*_cents).
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderFlowError, ValidationError, error_response
from ..models.users import ROLE_DELIVERY_BOY, ROLE_RETAILER, ROLE_SHOP_OWNER
from ..services import order_service, settlement_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


# =============================================================================
# PLACEMENT AND READS
# =============================================================================

@orders_bp.post("")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def create_order_route():
    """
    Place an order.

    Request body:
    {
        "store_id": "...",
        "items": [{"listing_id": "...", "qty": 2}],
        "delivery_type": "PICKUP" | "DELIVERY",  (optional)
        "note": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        store_id = data.get("store_id")
        if not store_id:
            raise ValidationError("store_id is required")

        order = order_service.create_order(
            owner_id=g.current_user.id,
            store_id=store_id,
            items=data.get("items") or [],
            delivery_type=data.get("delivery_type") or "PICKUP",
            note=data.get("note"),
        )
        return jsonify({"order": order.to_dict(include_items=True)}), 201

    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
def list_orders_route():
    """Orders for the current user's role, newest first. Optional ?status= filter."""
    try:
        user = g.current_user
        status = request.args.get("status")

        if user.role == ROLE_SHOP_OWNER:
            orders = order_service.get_orders_by_owner(user.id, status)
        elif user.role == ROLE_RETAILER:
            orders = order_service.get_orders_by_retailer(user.id, status)
        elif user.role == ROLE_DELIVERY_BOY:
            orders = order_service.get_orders_by_courier(user.id, status)
        else:
            owner_id = request.args.get("owner_id")
            retailer_id = request.args.get("retailer_id")
            if owner_id:
                orders = order_service.get_orders_by_owner(owner_id, status)
            elif retailer_id:
                orders = order_service.get_orders_by_retailer(retailer_id, status)
            else:
                raise ValidationError("owner_id or retailer_id is required")

        return jsonify({"orders": [o.to_dict() for o in orders], "count": len(orders)}), 200

    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<order_id>")
@require_auth
def get_order_route(order_id: str):
    try:
        order = order_service.get_order_for_user(order_id, g.current_user.id, g.current_user.role)
        return jsonify({"order": order.to_dict(include_items=True)}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<order_id>/items")
@require_auth
def get_order_items_route(order_id: str):
    try:
        items = order_service.get_order_items(order_id, g.current_user.id, g.current_user.role)
        return jsonify({"items": [i.to_dict() for i in items]}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order items")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<order_id>/timeline")
@require_auth
def get_timeline_route(order_id: str):
    try:
        events = order_service.get_timeline(order_id, g.current_user.id, g.current_user.role)
        return jsonify({"events": [e.to_dict() for e in events]}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order timeline")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<order_id>/audit-trail")
@require_auth
def get_audit_trail_route(order_id: str):
    try:
        rows = settlement_service.get_audit_trail(order_id, g.current_user.id, g.current_user.role)
        return jsonify({"audit_trail": [r.to_dict() for r in rows]}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payment audit trail")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RETAILER ACTIONS
# =============================================================================

@orders_bp.post("/<order_id>/accept")
@require_auth
@require_role(ROLE_RETAILER)
def accept_order_route(order_id: str):
    """Request body (optional): {"delivery_at": "2026-01-31T10:00:00Z"}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.accept_order(order_id, g.current_user.id, data.get("delivery_at"))
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to accept order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_id>/reject")
@require_auth
@require_role(ROLE_RETAILER)
def reject_order_route(order_id: str):
    """Request body: {"reason": "Out of stock"}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.reject_order(order_id, g.current_user.id, data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_id>/status")
@require_auth
@require_role(ROLE_RETAILER)
def advance_status_route(order_id: str):
    """
    Move an order to its next status.

    Request body: {"status": "READY"}

    Returns:
        200: Order updated
        409: Transition not allowed from the current status
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.advance_status(order_id, g.current_user.id, data.get("status"))
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_id>/assign")
@require_auth
@require_role(ROLE_RETAILER)
def assign_courier_route(order_id: str):
    """Request body: {"delivery_boy_id": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        courier_id = data.get("delivery_boy_id")
        if not courier_id:
            raise ValidationError("delivery_boy_id is required")
        order = order_service.assign_courier(order_id, g.current_user.id, courier_id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign courier")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_id>/withdraw-assignment")
@require_auth
@require_role(ROLE_RETAILER)
def withdraw_courier_route(order_id: str):
    try:
        order = order_service.withdraw_courier(order_id, g.current_user.id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to withdraw courier assignment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_id>/payment")
@require_auth
@require_role(ROLE_RETAILER)
def confirm_payment_route(order_id: str):
    """
    Confirm payment received for an order.

    Request body:
    {
        "amount_received_cents": 70000,  (optional, defaults to order total)
        "note": "..."  (optional)
    }

    Returns:
        200: Settlement (total, received, remaining, partial flag)
        409: Payment already confirmed, or order not in a payable status
    """
    try:
        data = request.get_json(silent=True) or {}
        settlement = settlement_service.confirm_payment(
            order_id,
            g.current_user.id,
            data.get("amount_received_cents"),
            data.get("note"),
        )
        return jsonify({"settlement": settlement.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SHOP OWNER ACTIONS
# =============================================================================

@orders_bp.post("/<order_id>/cancel")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def cancel_order_route(order_id: str):
    """Request body (optional): {"reason": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, g.current_user.id, data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<order_id>/payment/adjust")
@require_auth
@require_role(ROLE_SHOP_OWNER)
def adjust_amount_route(order_id: str):
    """Request body: {"amount_received_cents": 80000, "note": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        settlement = settlement_service.adjust_amount(
            order_id,
            g.current_user.id,
            data.get("amount_received_cents"),
            data.get("note"),
        )
        return jsonify({"settlement": settlement.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust payment amount")
        return jsonify({"error": "Internal server error"}), 500

