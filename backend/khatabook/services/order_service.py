# Overview: Service-layer operations for orders; enforces the order state machine and its ledger side effects.

"""
Order State Machine

STATE MACHINE:
    PENDING -> ACCEPTED | REJECTED
    ACCEPTED -> READY
    READY -> OUT_FOR_DELIVERY | COMPLETED
    OUT_FOR_DELIVERY -> COMPLETED
    any non-terminal -> CANCELLED  (shop owner only)

RULES:
1. Every mutation loads the order FOR UPDATE and is guarded by its version_id,
   so two transitions from the same prior state cannot both commit.
2. Actor ownership is re-checked here. An order that exists but belongs to
   someone else is reported as NotFoundError.
3. The order liability (owner -> retailer, total amount) is posted exactly
   once, at courier assignment or payment confirmation, whichever is first.
4. Repeated calls are not idempotent: accepting an ACCEPTED order fails.
5. Events go to the outbox and are published only after commit.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from ..errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..ids import short_ref
from ..models import Listing, Order, OrderEvent, OrderItem, PaymentChangeRequest, Store, User
from ..models.users import ROLE_ADMIN, ROLE_DELIVERY_BOY
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow
from ..validation import MAX_AMOUNT_CENTS, format_rupees, optional_text, parse_enum, parse_quantity, require_text
from . import courier_service, ledger_service
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import TransactionType
from .notification_service import Outbox


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class DeliveryType(str, Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.REJECTED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.READY}),
    OrderStatus.READY: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.COMPLETED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Subset of the table a courier may drive on orders assigned to them
COURIER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.READY: frozenset({OrderStatus.OUT_FOR_DELIVERY}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.COMPLETED}),
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.REJECTED, OrderStatus.CANCELLED})
ASSIGNABLE_STATUSES = frozenset({OrderStatus.ACCEPTED, OrderStatus.READY})


def can_transition(from_status: str, to_status: str, table=ORDER_TRANSITIONS) -> bool:
    """True when to_status is an allowed next state of from_status in the given table."""
    try:
        current = OrderStatus(from_status)
        target = OrderStatus(to_status)
    except ValueError:
        return False
    return target in table.get(current, frozenset())


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def lock_order(order_id: str) -> Order | None:
    return lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()


def append_order_event(order: Order, event_type: str, message: str, actor_user_id: str | None) -> OrderEvent:
    event = OrderEvent(
        order_id=order.id,
        event_type=event_type,
        message=message,
        actor_user_id=actor_user_id,
        created_at=utcnow(),
    )
    db.session.add(event)
    return event


def order_parties(order: Order) -> list[str | None]:
    return [order.owner_id, order.retailer_id, order.assigned_delivery_boy_id]


def _set_status(order: Order, status: OrderStatus) -> None:
    order.status = status.value
    order.updated_at = utcnow()


def load_for_retailer(order_id: str, retailer_id: str) -> Order:
    order = lock_order(order_id)
    if order is None or order.retailer_id != retailer_id:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def load_for_owner(order_id: str, owner_id: str) -> Order:
    order = lock_order(order_id)
    if order is None or order.owner_id != owner_id:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def load_for_courier(order_id: str, courier_id: str) -> Order:
    order = lock_order(order_id)
    if order is None or order.assigned_delivery_boy_id != courier_id:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _parse_delivery_at(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError("delivery_at must be an ISO-8601 timestamp")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError("delivery_at must be an ISO-8601 timestamp")


def _transition_error(order: Order, action: str, expected: str | None = None) -> InvalidTransitionError:
    if expected:
        message = f"Order cannot be {action}: status is {order.status}, must be {expected}"
    else:
        message = f"Order cannot be {action} from status {order.status}"
    return InvalidTransitionError(message, {"order_id": order.id, "status": order.status})


def post_order_liability(order: Order, actor_user_id: str | None) -> bool:
    """
    Post the order's liability to both ledgers if it has not been posted yet.

    Owner is debited (ORDER_DEBIT) and the retailer credited (ORDER_PLACED)
    for the order total. Returns True when entries were posted.
    """
    if order.liability_posted:
        return False
    ledger_service.transfer(
        from_user_id=order.owner_id,
        to_user_id=order.retailer_id,
        amount_cents=order.total_amount_cents,
        transaction_type=TransactionType.ORDER_DEBIT,
        to_transaction_type=TransactionType.ORDER_PLACED,
        order_id=order.id,
        description=f"Order {short_ref(order.id)} for {format_rupees(order.total_amount_cents)}",
        metadata={"actor_user_id": actor_user_id},
    )
    order.liability_posted = True
    return True


def reject_pending_change_requests(order: Order, note: str, outbox: Outbox, now=None) -> int:
    """Auto-reject every PENDING payment change request on the order."""
    now = now or utcnow()
    pending = lock_for_update(
        db.session.query(PaymentChangeRequest).filter_by(order_id=order.id, status="PENDING")
    ).all()
    for change in pending:
        change.status = "REJECTED"
        change.resolved_at = now
        change.resolution_note = note
        outbox.add("PAYMENT_CHANGE_REJECTED", [change.delivery_boy_id], {
            "order_id": order.id,
            "request_id": change.id,
            "reason": note,
        })
    return len(pending)


# =============================================================================
# PLACEMENT
# =============================================================================

def create_order(
    owner_id: str,
    store_id: str,
    items: list[dict],
    *,
    delivery_type: str = DeliveryType.PICKUP.value,
    note: str | None = None,
) -> Order:
    """
    Place an order from a shop owner to a store.

    Prices are snapshotted from the listings' current retail price into
    OrderItem.price_at_cents; the total is the sum of qty x price.
    """
    if not items:
        raise ValidationError("Order must contain at least one item")
    delivery = parse_enum(DeliveryType, delivery_type or DeliveryType.PICKUP.value, "delivery_type")
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()

        store = db.session.get(Store, store_id)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")
        if not store.is_open:
            raise ValidationError(f"Store {store.name} is not accepting orders")
        if store.owner_id == owner_id:
            raise ValidationError("Cannot place an order with your own store")

        lines = []
        total = 0
        for index, raw in enumerate(items):
            if not isinstance(raw, dict):
                raise ValidationError(f"items[{index}] must be an object")
            listing_id = raw.get("listing_id")
            qty = parse_quantity(raw.get("qty"), f"items[{index}].qty")
            listing = db.session.get(Listing, listing_id) if listing_id else None
            if listing is None or listing.store_id != store.id:
                raise NotFoundError(f"Listing {listing_id} not found in this store")
            if not listing.available:
                raise ValidationError(f"Listing {listing.name} is not available")
            line_total = listing.price_retail_cents * qty
            total += line_total
            lines.append((listing, qty, line_total))

        if total <= 0:
            raise ValidationError("Order total must be positive")
        if total > MAX_AMOUNT_CENTS:
            raise ValidationError(f"Order total cannot exceed {MAX_AMOUNT_CENTS}")

        now = utcnow()
        order = Order(
            owner_id=owner_id,
            retailer_id=store.owner_id,
            store_id=store.id,
            status=OrderStatus.PENDING.value,
            total_amount_cents=total,
            delivery_type=delivery.value,
            note=note,
            remaining_balance_cents=0,
            created_at=now,
            updated_at=now,
        )
        db.session.add(order)
        db.session.flush()

        for listing, qty, line_total in lines:
            db.session.add(OrderItem(
                order_id=order.id,
                listing_id=listing.id,
                qty=qty,
                price_at_cents=listing.price_retail_cents,
                line_total_cents=line_total,
                created_at=now,
            ))

        append_order_event(order, "PLACED", f"Order placed for {format_rupees(total)}", owner_id)
        outbox.add("orderPlaced", [order.retailer_id], {
            "order_id": order.id,
            "status": order.status,
            "total_amount_cents": order.total_amount_cents,
            "owner_id": order.owner_id,
            "store_id": order.store_id,
        })

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


# =============================================================================
# RETAILER TRANSITIONS
# =============================================================================

def accept_order(order_id: str, retailer_id: str, delivery_at: str | None = None) -> Order:
    """PENDING -> ACCEPTED. Optional delivery_at is an ISO-8601 timestamp."""
    when = _parse_delivery_at(delivery_at)

    def _op():
        outbox = Outbox()
        order = load_for_retailer(order_id, retailer_id)
        if order.status != OrderStatus.PENDING.value:
            raise _transition_error(order, "accepted", OrderStatus.PENDING.value)

        _set_status(order, OrderStatus.ACCEPTED)
        if when is not None:
            order.delivery_at = when
        append_order_event(order, OrderStatus.ACCEPTED.value, "Order accepted by retailer", retailer_id)
        outbox.add("orderAccepted", [order.owner_id], {
            "order_id": order.id,
            "status": order.status,
            "delivery_at": to_utc_z(order.delivery_at),
        })

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


def reject_order(order_id: str, retailer_id: str, reason: str) -> Order:
    """PENDING -> REJECTED with a reason shown to the shop owner."""
    reason = require_text(reason, "reason")

    def _op():
        outbox = Outbox()
        order = load_for_retailer(order_id, retailer_id)
        if order.status != OrderStatus.PENDING.value:
            raise _transition_error(order, "rejected", OrderStatus.PENDING.value)

        _set_status(order, OrderStatus.REJECTED)
        append_order_event(order, OrderStatus.REJECTED.value, f"Order rejected: {reason}", retailer_id)
        outbox.add("orderRejected", [order.owner_id], {
            "order_id": order.id,
            "status": order.status,
            "reason": reason,
        })

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


def advance_status(order_id: str, retailer_id: str, new_status: str) -> Order:
    """
    Move an order along ORDER_TRANSITIONS on behalf of its retailer.

    Raises InvalidTransitionError for any pair not in the table.
    Cancellation is not reachable here; only the shop owner may cancel.
    """
    target = parse_enum(OrderStatus, new_status, "status")

    def _op():
        outbox = Outbox()
        order = load_for_retailer(order_id, retailer_id)
        previous = order.status
        if not can_transition(previous, target.value):
            raise InvalidTransitionError(
                f"Order cannot move from {previous} to {target.value}",
                {"order_id": order.id, "status": previous, "requested": target.value},
            )

        _set_status(order, target)
        append_order_event(order, target.value, f"Status changed from {previous} to {target.value}", retailer_id)
        outbox.add("orderStatusChanged", [order.owner_id, order.assigned_delivery_boy_id], {
            "order_id": order.id,
            "status": order.status,
            "previous_status": previous,
        })

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


def assign_courier(order_id: str, retailer_id: str, courier_id: str) -> Order:
    """
    Assign an ACTIVE-linked courier to an ACCEPTED or READY order.

    Posts the order liability if it has not been posted yet.
    """
    def _op():
        outbox = Outbox()
        order = load_for_retailer(order_id, retailer_id)
        if order.status not in {s.value for s in ASSIGNABLE_STATUSES}:
            raise _transition_error(order, "assigned a courier", "ACCEPTED or READY")
        if order.assigned_delivery_boy_id:
            raise InvalidTransitionError(
                "Order already has a courier assigned; withdraw the assignment first",
                {"order_id": order.id, "delivery_boy_id": order.assigned_delivery_boy_id},
            )

        courier = db.session.get(User, courier_id) if courier_id else None
        if courier is None or courier.role != ROLE_DELIVERY_BOY:
            raise NotFoundError(f"Courier {courier_id} not found")
        if not courier.is_active or not courier_service.is_linked(retailer_id, courier.id):
            raise ForbiddenError(f"Courier {courier.full_name} is not linked to this retailer")

        order.assigned_delivery_boy_id = courier.id
        order.updated_at = utcnow()
        post_order_liability(order, retailer_id)

        append_order_event(order, "DELIVERY_ASSIGNED", f"Assigned to {courier.full_name}", retailer_id)
        payload = {
            "order_id": order.id,
            "status": order.status,
            "delivery_boy_id": courier.id,
            "delivery_boy": courier.full_name,
            "delivery_boy_phone": courier.phone,
        }
        outbox.add("deliveryBoyAssigned", [courier.id, order.owner_id], payload)

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


def withdraw_courier(order_id: str, retailer_id: str) -> Order:
    """Clear a courier assignment before the order leaves the store."""
    def _op():
        outbox = Outbox()
        order = load_for_retailer(order_id, retailer_id)
        if not order.assigned_delivery_boy_id:
            raise InvalidTransitionError("Order has no courier assigned", {"order_id": order.id})
        if order.status not in {s.value for s in ASSIGNABLE_STATUSES}:
            raise _transition_error(order, "unassigned", "ACCEPTED or READY")

        courier_id = order.assigned_delivery_boy_id
        order.assigned_delivery_boy_id = None
        order.updated_at = utcnow()
        append_order_event(order, "ASSIGNMENT_WITHDRAWN", "Courier assignment withdrawn", retailer_id)

        payload = {"order_id": order.id, "status": order.status, "delivery_boy_id": courier_id}
        outbox.add("assignmentWithdrawn", [courier_id], payload)
        outbox.add("deliveryAssignmentWithdrawn", [order.owner_id], payload)

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


# =============================================================================
# COURIER AND OWNER TRANSITIONS
# =============================================================================

def advance_status_by_courier(order_id: str, courier_id: str, new_status: str) -> Order:
    """READY -> OUT_FOR_DELIVERY and OUT_FOR_DELIVERY -> COMPLETED for the assigned courier."""
    target = parse_enum(OrderStatus, new_status, "status")

    def _op():
        outbox = Outbox()
        order = load_for_courier(order_id, courier_id)
        previous = order.status
        if not can_transition(previous, target.value, COURIER_TRANSITIONS):
            raise InvalidTransitionError(
                f"Courier cannot move order from {previous} to {target.value}",
                {"order_id": order.id, "status": previous, "requested": target.value},
            )

        _set_status(order, target)
        append_order_event(order, target.value, f"Status changed from {previous} to {target.value}", courier_id)
        outbox.add("orderStatusChanged", [order.owner_id, order.retailer_id], {
            "order_id": order.id,
            "status": order.status,
            "previous_status": previous,
        })

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


def cancel_order(order_id: str, owner_id: str, reason: str | None = None) -> Order:
    """
    Shop-owner cancellation from any non-terminal status.

    If the liability was already posted it is reversed with a REFUND
    transfer, and any PENDING payment change request is auto-rejected.
    """
    reason = optional_text(reason, "reason")

    def _op():
        outbox = Outbox()
        order = load_for_owner(order_id, owner_id)
        if order.status in {s.value for s in TERMINAL_STATUSES}:
            raise InvalidTransitionError(
                f"Order cannot be cancelled: already {order.status}",
                {"order_id": order.id, "status": order.status},
            )

        _set_status(order, OrderStatus.CANCELLED)
        if order.liability_posted:
            ledger_service.transfer(
                from_user_id=order.retailer_id,
                to_user_id=order.owner_id,
                amount_cents=order.total_amount_cents,
                transaction_type=TransactionType.REFUND,
                order_id=order.id,
                description=f"Order {short_ref(order.id)} cancelled",
            )
        reject_pending_change_requests(order, "Order cancelled", outbox)

        message = f"Order cancelled: {reason}" if reason else "Order cancelled by shop owner"
        append_order_event(order, OrderStatus.CANCELLED.value, message, owner_id)
        outbox.add("orderCancelled", [order.retailer_id, order.assigned_delivery_boy_id], {
            "order_id": order.id,
            "status": order.status,
            "reason": reason,
        })

        db.session.commit()
        return order, outbox

    order, outbox = run_with_retry(_op)
    outbox.publish()
    return order


# =============================================================================
# QUERIES
# =============================================================================

def get_order_for_user(order_id: str, user_id: str, role: str | None = None) -> Order:
    """Load an order visible to the user (a party to it, or an admin)."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if role != ROLE_ADMIN and user_id not in order_parties(order):
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _list(column, user_id: str, status: str | None) -> list[Order]:
    query = db.session.query(Order).filter(column == user_id)
    if status:
        query = query.filter(Order.status == parse_enum(OrderStatus, status, "status").value)
    return query.order_by(Order.created_at.desc()).all()


def get_orders_by_owner(owner_id: str, status: str | None = None) -> list[Order]:
    return _list(Order.owner_id, owner_id, status)


def get_orders_by_retailer(retailer_id: str, status: str | None = None) -> list[Order]:
    return _list(Order.retailer_id, retailer_id, status)


def get_orders_by_courier(courier_id: str, status: str | None = None) -> list[Order]:
    return _list(Order.assigned_delivery_boy_id, courier_id, status)


def get_timeline(order_id: str, user_id: str, role: str | None = None) -> list[OrderEvent]:
    order = get_order_for_user(order_id, user_id, role)
    return (
        db.session.query(OrderEvent)
        .filter_by(order_id=order.id)
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
        .all()
    )


def get_order_items(order_id: str, user_id: str, role: str | None = None) -> list[OrderItem]:
    order = get_order_for_user(order_id, user_id, role)
    return db.session.query(OrderItem).filter_by(order_id=order.id).all()
