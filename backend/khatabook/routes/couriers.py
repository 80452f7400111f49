# Overview: Flask API routes for a retailer's linked couriers.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderFlowError, ValidationError, error_response
from ..models.users import ROLE_RETAILER
from ..services import courier_service


couriers_bp = Blueprint("couriers", __name__, url_prefix="/api/couriers")


@couriers_bp.get("")
@require_auth
@require_role(ROLE_RETAILER)
def list_couriers_route():
    """Linked couriers. ?all=true includes unlinked ones."""
    try:
        include_inactive = request.args.get("all", "false").lower() == "true"
        links = courier_service.list_couriers(g.current_user.id, include_inactive)
        return jsonify({"couriers": [link.to_dict() for link in links]}), 200
    except Exception:
        current_app.logger.exception("Failed to list couriers")
        return jsonify({"error": "Internal server error"}), 500


@couriers_bp.post("")
@require_auth
@require_role(ROLE_RETAILER)
def link_courier_route():
    """Request body: {"delivery_boy_id": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        courier_id = data.get("delivery_boy_id")
        if not courier_id:
            raise ValidationError("delivery_boy_id is required")
        link = courier_service.link_courier(g.current_user.id, courier_id)
        return jsonify({"courier": link.to_dict()}), 201
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to link courier")
        return jsonify({"error": "Internal server error"}), 500


@couriers_bp.delete("/<courier_id>")
@require_auth
@require_role(ROLE_RETAILER)
def unlink_courier_route(courier_id: str):
    try:
        link = courier_service.unlink_courier(g.current_user.id, courier_id)
        return jsonify({"courier": link.to_dict()}), 200
    except OrderFlowError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to unlink courier")
        return jsonify({"error": "Internal server error"}), 500
