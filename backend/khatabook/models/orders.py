from __future__ import annotations

from ..extensions import db
from ..ids import generate_id
from ..time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    One purchase from a shop owner (owner_id) to a retailer's store.

    LIFECYCLE (see services/order_service.py for the transition table):
        PENDING -> ACCEPTED | REJECTED
        ACCEPTED -> READY
        READY -> OUT_FOR_DELIVERY | COMPLETED
        OUT_FOR_DELIVERY -> COMPLETED
        any non-terminal -> CANCELLED (shop owner only)

    PAYMENT INVARIANTS (all amounts in paise):
    - Once payment_received is True:
        remaining_balance_cents == total_amount_cents - amount_received_cents
        is_partial_payment == (remaining_balance_cents > 0)
    - total_amount_cents is fixed at placement and only changes through an
      approved payment change request.
    - liability_posted records that the order's ledger liability has been
      posted; it is posted exactly once per order.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_owner_status", "owner_id", "status"),
        db.Index("ix_orders_retailer_status", "retailer_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    owner_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    retailer_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    store_id = db.Column(db.String(36), db.ForeignKey("stores.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default="PENDING", index=True)
    total_amount_cents = db.Column(db.BigInteger, nullable=False, default=0)

    delivery_type = db.Column(db.String(16), nullable=False, default="PICKUP")  # PICKUP, DELIVERY
    delivery_at = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.Text, nullable=True)
    assigned_delivery_boy_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)

    # Payment confirmation
    payment_received = db.Column(db.Boolean, nullable=False, default=False)
    amount_received_cents = db.Column(db.BigInteger, nullable=True)
    original_amount_received_cents = db.Column(db.BigInteger, nullable=True)
    remaining_balance_cents = db.Column(db.BigInteger, nullable=False, default=0)
    is_partial_payment = db.Column(db.Boolean, nullable=False, default=False)
    payment_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_received_by = db.Column(db.String(36), nullable=True)

    # Owner-side amount adjustment
    amount_adjusted_by = db.Column(db.String(36), nullable=True)
    amount_adjusted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    adjustment_note = db.Column(db.Text, nullable=True)

    liability_posted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    owner = db.relationship("User", foreign_keys=[owner_id])
    retailer = db.relationship("User", foreign_keys=[retailer_id])
    delivery_boy = db.relationship("User", foreign_keys=[assigned_delivery_boy_id])
    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "retailer_id": self.retailer_id,
            "store_id": self.store_id,
            "status": self.status,
            "total_amount_cents": self.total_amount_cents,
            "delivery_type": self.delivery_type,
            "delivery_at": to_utc_z(self.delivery_at),
            "note": self.note,
            "assigned_delivery_boy_id": self.assigned_delivery_boy_id,
            "payment_received": self.payment_received,
            "amount_received_cents": self.amount_received_cents,
            "original_amount_received_cents": self.original_amount_received_cents,
            "remaining_balance_cents": self.remaining_balance_cents,
            "is_partial_payment": self.is_partial_payment,
            "payment_received_at": to_utc_z(self.payment_received_at),
            "payment_received_by": self.payment_received_by,
            "amount_adjusted_by": self.amount_adjusted_by,
            "amount_adjusted_at": to_utc_z(self.amount_adjusted_at),
            "adjustment_note": self.adjustment_note,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Immutable snapshot of one listing's quantity and price at order time."""
    __tablename__ = "order_items"

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    price_at_cents = db.Column(db.BigInteger, nullable=False)
    line_total_cents = db.Column(db.BigInteger, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", backref=db.backref("items", lazy=True, order_by="OrderItem.created_at"))
    listing = db.relationship("Listing")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "listing_id": self.listing_id,
            "listing_name": self.listing.name if self.listing else None,
            "qty": self.qty,
            "price_at_cents": self.price_at_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderEvent(db.Model):
    """
    Append-only order timeline.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.Index("ix_order_events_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    event_type = db.Column(db.String(48), nullable=False)
    message = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "type": self.event_type,
            "message": self.message,
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentAuditTrail(db.Model):
    """
    Append-only record of every change to what was collected for an order.

    ACTIONS: PAYMENT_RECEIVED, AMOUNT_ADJUSTED, PAYMENT_CHANGE_APPROVED, BALANCE_SETTLED
    """
    __tablename__ = "payment_audit_trail"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=True, index=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    old_amount_cents = db.Column(db.BigInteger, nullable=True)
    new_amount_cents = db.Column(db.BigInteger, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "action": self.action,
            "old_amount_cents": self.old_amount_cents,
            "new_amount_cents": self.new_amount_cents,
            "reason": self.reason,
            "metadata": self.metadata_json,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentChangeRequest(db.Model):
    """
    A courier's proposal to change the amount collected for an order.

    LIFECYCLE:
        PENDING -> APPROVED | REJECTED   (resolved exactly once, by the shop owner,
                                          or auto-rejected when expired/superseded)
    """
    __tablename__ = "payment_change_requests"
    __table_args__ = (
        db.Index("ix_payment_change_requests_order_status", "order_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    delivery_boy_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    original_amount_cents = db.Column(db.BigInteger, nullable=False)
    requested_amount_cents = db.Column(db.BigInteger, nullable=False)
    reason = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    resolved_by = db.Column(db.String(36), nullable=True)  # shop owner, or None when auto-resolved
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payment_change_requests", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "delivery_boy_id": self.delivery_boy_id,
            "original_amount_cents": self.original_amount_cents,
            "requested_amount_cents": self.requested_amount_cents,
            "reason": self.reason,
            "status": self.status,
            "resolved_by": self.resolved_by,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolution_note": self.resolution_note,
            "created_at": to_utc_z(self.created_at),
        }
