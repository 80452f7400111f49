# Overview: Service-layer operations for retailer <-> courier links; a precondition for order assignment.

from __future__ import annotations

from ..errors import NotFoundError
from ..extensions import db
from ..models import RetailerDeliveryBoy, User
from ..models.users import ROLE_DELIVERY_BOY
from ..time_utils import utcnow


LINK_ACTIVE = "ACTIVE"
LINK_INACTIVE = "INACTIVE"


def _get_courier(courier_id: str) -> User:
    courier = db.session.get(User, courier_id) if courier_id else None
    if courier is None or courier.role != ROLE_DELIVERY_BOY:
        raise NotFoundError(f"Courier {courier_id} not found")
    return courier


def link_courier(retailer_id: str, courier_id: str) -> RetailerDeliveryBoy:
    """
    Allow a retailer to assign orders to a courier.

    Re-linking an INACTIVE courier reactivates the existing row; linking an
    already ACTIVE courier returns the link unchanged.
    """
    courier = _get_courier(courier_id)
    link = db.session.query(RetailerDeliveryBoy).filter_by(
        retailer_id=retailer_id, delivery_boy_id=courier.id
    ).first()

    if link is None:
        link = RetailerDeliveryBoy(
            retailer_id=retailer_id,
            delivery_boy_id=courier.id,
            status=LINK_ACTIVE,
            created_at=utcnow(),
        )
        db.session.add(link)
    elif link.status != LINK_ACTIVE:
        link.status = LINK_ACTIVE
        link.updated_at = utcnow()

    db.session.commit()
    return link


def unlink_courier(retailer_id: str, courier_id: str) -> RetailerDeliveryBoy:
    """Deactivate a link. Existing assignments are left untouched."""
    link = db.session.query(RetailerDeliveryBoy).filter_by(
        retailer_id=retailer_id, delivery_boy_id=courier_id, status=LINK_ACTIVE
    ).first()
    if link is None:
        raise NotFoundError(f"Courier {courier_id} is not linked to this retailer")

    link.status = LINK_INACTIVE
    link.updated_at = utcnow()
    db.session.commit()
    return link


def list_couriers(retailer_id: str, include_inactive: bool = False) -> list[RetailerDeliveryBoy]:
    query = db.session.query(RetailerDeliveryBoy).filter_by(retailer_id=retailer_id)
    if not include_inactive:
        query = query.filter_by(status=LINK_ACTIVE)
    return query.order_by(RetailerDeliveryBoy.created_at.asc()).all()


def is_linked(retailer_id: str, courier_id: str) -> bool:
    return db.session.query(RetailerDeliveryBoy.id).filter_by(
        retailer_id=retailer_id, delivery_boy_id=courier_id, status=LINK_ACTIVE
    ).first() is not None
