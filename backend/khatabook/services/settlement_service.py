# Overview: Service-layer operations for payment settlement; confirmation, adjustment and courier change negotiation.

"""
Payment Settlement Service

WHY: Reconcile the gap between an order's total and the cash actually
collected, including the courier <-> shop owner negotiation over what
should be collected at the door.

DESIGN PRINCIPLES:
- Payment is confirmed at most once per order, by the retailer
  (confirm_payment) or by the assigned courier (confirm_payment_and_complete).
  Both paths check payment_received under the order row lock, so they are
  mutually exclusive.
- remaining_balance = total - amount_received, is_partial = remaining > 0,
  re-derived after every confirmation, adjustment, approval and settlement.
- Every money movement goes through ledger_service.transfer().
- Every change to what was collected appends a PaymentAuditTrail row.

NEGOTIATION (PaymentChangeRequest):
    PENDING -> APPROVED | REJECTED
- Only the assigned courier may request, only while OUT_FOR_DELIVERY.
- At most one PENDING request per order. Confirming payment on either
  path rejects it as superseded; a paid order's total never changes.
- At most PAYMENT_CHANGE_MAX_REQUESTS requests per courier per order.
- PENDING requests older than PAYMENT_CHANGE_REQUEST_TTL_MINUTES are
  auto-rejected when touched, and by expire_stale_requests().
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import timedelta

from flask import current_app

from ..errors import AlreadyProcessedError, InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..ids import short_ref
from ..models import Order, PaymentAuditTrail, PaymentChangeRequest, User
from ..models.users import ROLE_RETAILER
from ..time_utils import expired, utcnow
from ..validation import format_rupees, optional_text, parse_amount_cents, require_text
from . import ledger_service, order_service
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import TransactionType
from .notification_service import Outbox
from .order_service import OrderStatus


# =============================================================================
# CONSTANTS
# =============================================================================

AUDIT_PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
AUDIT_AMOUNT_ADJUSTED = "AMOUNT_ADJUSTED"
AUDIT_PAYMENT_CHANGE_APPROVED = "PAYMENT_CHANGE_APPROVED"
AUDIT_BALANCE_SETTLED = "BALANCE_SETTLED"
AUDIT_ADVANCE_PAYMENT = "ADVANCE_PAYMENT"

REQUEST_PENDING = "PENDING"
REQUEST_APPROVED = "APPROVED"
REQUEST_REJECTED = "REJECTED"

PAYABLE_STATUSES = frozenset({
    OrderStatus.ACCEPTED.value,
    OrderStatus.READY.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.COMPLETED.value,
})

EXPIRED_NOTE = "Expired without a decision"
SUPERSEDED_NOTE = "Superseded by payment confirmation"


@dataclass
class Settlement:
    order_id: str
    total_amount_cents: int
    amount_received_cents: int
    remaining_balance_cents: int
    is_partial_payment: bool

    @classmethod
    def from_order(cls, order: Order) -> "Settlement":
        return cls(
            order_id=order.id,
            total_amount_cents=order.total_amount_cents,
            amount_received_cents=order.amount_received_cents or 0,
            remaining_balance_cents=order.remaining_balance_cents,
            is_partial_payment=order.is_partial_payment,
        )

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _audit(order_id, user_id, action, old_amount, new_amount, reason=None, metadata=None) -> PaymentAuditTrail:
    row = PaymentAuditTrail(
        order_id=order_id,
        user_id=user_id,
        action=action,
        old_amount_cents=old_amount,
        new_amount_cents=new_amount,
        reason=reason,
        metadata_json=metadata,
        created_at=utcnow(),
    )
    db.session.add(row)
    return row


def _recompute_balance(order: Order) -> None:
    order.remaining_balance_cents = order.total_amount_cents - (order.amount_received_cents or 0)
    order.is_partial_payment = order.remaining_balance_cents > 0


def _payment_payload(order: Order) -> dict:
    return {
        "order_id": order.id,
        "amount_received_cents": order.amount_received_cents,
        "total_amount_cents": order.total_amount_cents,
        "remaining_balance_cents": order.remaining_balance_cents,
        "is_partial_payment": order.is_partial_payment,
    }


def _record_payment(order: Order, actor_id: str, amount_cents: int, note: str | None, path: str) -> None:
    """
    Mark the order paid and post the money movements.

    Ledger: the liability if not yet posted, then the payment as a transfer
    retailer -> owner (PAYMENT_RECEIVED on the retailer, PAYMENT_CREDIT on
    the owner). Caller holds the order lock.
    """
    now = utcnow()
    order.payment_received = True
    order.amount_received_cents = amount_cents
    order.original_amount_received_cents = amount_cents
    order.payment_received_at = now
    order.payment_received_by = actor_id
    order.updated_at = now
    _recompute_balance(order)

    _audit(order.id, actor_id, AUDIT_PAYMENT_RECEIVED, None, amount_cents, note, {
        "total_amount_cents": order.total_amount_cents,
        "remaining_balance_cents": order.remaining_balance_cents,
        "is_partial_payment": order.is_partial_payment,
        "path": path,
    })

    if order.is_partial_payment:
        message = (
            f"Partial payment of {format_rupees(amount_cents)} received; "
            f"{format_rupees(order.remaining_balance_cents)} remaining"
        )
    else:
        message = f"Full payment of {format_rupees(amount_cents)} received"
    if note:
        message = f"{message} ({note})"
    order_service.append_order_event(order, "PAYMENT_RECEIVED", message, actor_id)

    order_service.post_order_liability(order, actor_id)
    ledger_service.transfer(
        from_user_id=order.retailer_id,
        to_user_id=order.owner_id,
        amount_cents=amount_cents,
        transaction_type=TransactionType.PAYMENT_RECEIVED,
        to_transaction_type=TransactionType.PAYMENT_CREDIT,
        order_id=order.id,
        description=f"Payment of {format_rupees(amount_cents)} for order {short_ref(order.id)}",
        metadata={"path": path},
    )


def _post_delta(order: Order, delta: int, description: str) -> None:
    """Mirror a change in what the owner owes: positive delta means the owner owes more."""
    if delta == 0:
        return
    from_user, to_user = (order.owner_id, order.retailer_id) if delta > 0 else (order.retailer_id, order.owner_id)
    ledger_service.transfer(
        from_user_id=from_user,
        to_user_id=to_user,
        amount_cents=abs(delta),
        transaction_type=TransactionType.PAYMENT_ADJUSTED,
        order_id=order.id,
        description=description,
        metadata={"delta_cents": delta},
    )


def _ttl_minutes() -> int:
    return current_app.config.get("PAYMENT_CHANGE_REQUEST_TTL_MINUTES", 0)


def _expire(change: PaymentChangeRequest, outbox: Outbox, now) -> None:
    change.status = REQUEST_REJECTED
    change.resolved_at = now
    change.resolution_note = EXPIRED_NOTE
    outbox.add("PAYMENT_CHANGE_REJECTED", [change.delivery_boy_id], {
        "order_id": change.order_id,
        "request_id": change.id,
        "reason": EXPIRED_NOTE,
    })


def _expire_stale_for_order(order: Order, outbox: Outbox, now) -> int:
    ttl = _ttl_minutes()
    if ttl <= 0:
        return 0
    pending = lock_for_update(
        db.session.query(PaymentChangeRequest).filter_by(order_id=order.id, status=REQUEST_PENDING)
    ).all()
    count = 0
    for change in pending:
        if expired(change.created_at, ttl, now):
            _expire(change, outbox, now)
            count += 1
    return count


def _load_request_for_owner(request_id: str, owner_id: str) -> tuple[PaymentChangeRequest, Order]:
    change = lock_for_update(db.session.query(PaymentChangeRequest).filter_by(id=request_id)).first()
    if change is None:
        raise NotFoundError(f"Payment change request {request_id} not found")
    order = order_service.lock_order(change.order_id)
    if order is None or order.owner_id != owner_id:
        raise NotFoundError(f"Payment change request {request_id} not found")
    return change, order


def _already_processed(change: PaymentChangeRequest) -> AlreadyProcessedError:
    return AlreadyProcessedError(
        f"Payment change request is already {change.status}",
        {"request_id": change.id, "status": change.status},
    )


# =============================================================================
# PAYMENT CONFIRMATION
# =============================================================================

def confirm_payment(
    order_id: str,
    retailer_id: str,
    amount_received_cents=None,
    note: str | None = None,
) -> Settlement:
    """
    Retailer confirms what was collected for an order (once per order).

    amount_received defaults to the order total. Collecting more than the
    total is allowed and leaves a negative remaining balance. Any PENDING
    payment change request is auto-rejected as superseded.

    Raises:
        NotFoundError: order missing or not this retailer's
        AlreadyProcessedError: payment already confirmed
        InvalidTransitionError: order not ACCEPTED/READY/OUT_FOR_DELIVERY/COMPLETED
    """
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()
        order = order_service.load_for_retailer(order_id, retailer_id)
        if order.payment_received:
            raise AlreadyProcessedError("Payment already confirmed for this order", {"order_id": order.id})
        if order.status not in PAYABLE_STATUSES:
            raise InvalidTransitionError(
                f"Payment cannot be confirmed while order is {order.status}",
                {"order_id": order.id, "status": order.status},
            )

        if amount_received_cents is None:
            amount = order.total_amount_cents
        else:
            amount = parse_amount_cents(amount_received_cents, "amount_received_cents")

        order_service.reject_pending_change_requests(order, SUPERSEDED_NOTE, outbox)
        _record_payment(order, retailer_id, amount, note, "retailer")
        outbox.add("paymentReceived", [order.owner_id, order.assigned_delivery_boy_id], _payment_payload(order))

        db.session.commit()
        return Settlement.from_order(order), outbox

    settlement, outbox = run_with_retry(_op)
    outbox.publish()
    return settlement


def confirm_payment_and_complete(
    order_id: str,
    courier_id: str,
    amount_received_cents=None,
    note: str | None = None,
) -> Settlement:
    """
    Courier collects payment at the door and completes the order in one step.

    Any PENDING payment change request on the order is auto-rejected as
    superseded.
    """
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()
        order = order_service.load_for_courier(order_id, courier_id)
        if order.payment_received:
            raise AlreadyProcessedError("Payment already confirmed for this order", {"order_id": order.id})
        if order.status != OrderStatus.OUT_FOR_DELIVERY.value:
            raise InvalidTransitionError(
                f"Order cannot be completed: status is {order.status}, must be OUT_FOR_DELIVERY",
                {"order_id": order.id, "status": order.status},
            )

        if amount_received_cents is None:
            amount = order.total_amount_cents
        else:
            amount = parse_amount_cents(amount_received_cents, "amount_received_cents")

        order_service.reject_pending_change_requests(order, SUPERSEDED_NOTE, outbox)
        _record_payment(order, courier_id, amount, note, "courier")

        previous = order.status
        order.status = OrderStatus.COMPLETED.value
        order_service.append_order_event(
            order, OrderStatus.COMPLETED.value, "Delivered and payment collected by courier", courier_id
        )

        outbox.add("paymentReceived", [order.owner_id, order.retailer_id], _payment_payload(order))
        outbox.add("orderStatusChanged", [order.owner_id, order.retailer_id], {
            "order_id": order.id,
            "status": order.status,
            "previous_status": previous,
        })

        db.session.commit()
        return Settlement.from_order(order), outbox

    settlement, outbox = run_with_retry(_op)
    outbox.publish()
    return settlement


def adjust_amount(order_id: str, owner_id: str, new_amount_cents, note: str | None = None) -> Settlement:
    """
    Shop owner corrects the amount recorded as received after confirmation.

    delta = new - previous. A positive delta is posted owner -> retailer,
    a negative one retailer -> owner; a zero delta posts nothing.
    """
    new_amount = parse_amount_cents(new_amount_cents, "amount_received_cents", allow_zero=True)
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()
        order = order_service.load_for_owner(order_id, owner_id)
        if not order.payment_received:
            raise InvalidTransitionError(
                "Amount cannot be adjusted before payment is confirmed",
                {"order_id": order.id},
            )

        previous = order.amount_received_cents or 0
        delta = new_amount - previous
        now = utcnow()

        order.amount_received_cents = new_amount
        order.amount_adjusted_by = owner_id
        order.amount_adjusted_at = now
        order.adjustment_note = note
        order.updated_at = now
        _recompute_balance(order)

        _post_delta(
            order,
            delta,
            f"Amount received for order {short_ref(order.id)} adjusted "
            f"from {format_rupees(previous)} to {format_rupees(new_amount)}",
        )
        _audit(order.id, owner_id, AUDIT_AMOUNT_ADJUSTED, previous, new_amount, note, {"delta_cents": delta})
        order_service.append_order_event(
            order,
            "PAYMENT_ADJUSTED",
            f"Amount received adjusted from {format_rupees(previous)} to {format_rupees(new_amount)}",
            owner_id,
        )
        outbox.add("paymentAdjusted", [order.retailer_id, order.assigned_delivery_boy_id], {
            "order_id": order.id,
            "adjusted_amount_cents": new_amount,
            "adjustment_cents": delta,
            "remaining_balance_cents": order.remaining_balance_cents,
            "note": note,
        })

        db.session.commit()
        return Settlement.from_order(order), outbox

    settlement, outbox = run_with_retry(_op)
    outbox.publish()
    return settlement


# =============================================================================
# PAYMENT CHANGE NEGOTIATION
# =============================================================================

def request_change(order_id: str, courier_id: str, requested_amount_cents, reason: str) -> PaymentChangeRequest:
    """Courier proposes a different amount to collect for an OUT_FOR_DELIVERY order."""
    requested = parse_amount_cents(requested_amount_cents, "requested_amount_cents")
    reason = require_text(reason, "reason")
    max_requests = current_app.config.get("PAYMENT_CHANGE_MAX_REQUESTS", 0)

    def _op():
        outbox = Outbox()
        order = order_service.load_for_courier(order_id, courier_id)
        if order.status != OrderStatus.OUT_FOR_DELIVERY.value:
            raise InvalidTransitionError(
                f"Payment change can only be requested while OUT_FOR_DELIVERY (order is {order.status})",
                {"order_id": order.id, "status": order.status},
            )
        if order.payment_received:
            raise AlreadyProcessedError("Payment already confirmed for this order", {"order_id": order.id})
        if requested == order.total_amount_cents:
            raise ValidationError("Requested amount must differ from the current order total")

        now = utcnow()
        _expire_stale_for_order(order, outbox, now)

        pending = db.session.query(PaymentChangeRequest).filter_by(
            order_id=order.id, status=REQUEST_PENDING
        ).first()
        if pending is not None:
            raise InvalidTransitionError(
                "A payment change request is already awaiting the shop owner's decision",
                {"order_id": order.id, "request_id": pending.id},
            )

        if max_requests > 0:
            submitted = db.session.query(PaymentChangeRequest).filter_by(
                order_id=order.id, delivery_boy_id=courier_id
            ).count()
            if submitted >= max_requests:
                raise InvalidTransitionError(
                    f"Payment change request limit reached ({max_requests}) for this order",
                    {"order_id": order.id, "limit": max_requests},
                )

        change = PaymentChangeRequest(
            order_id=order.id,
            delivery_boy_id=courier_id,
            original_amount_cents=order.total_amount_cents,
            requested_amount_cents=requested,
            reason=reason,
            status=REQUEST_PENDING,
            created_at=now,
        )
        db.session.add(change)
        db.session.flush()

        order_service.append_order_event(
            order,
            "PAYMENT_CHANGE_REQUESTED",
            f"Courier requested {format_rupees(requested)} instead of "
            f"{format_rupees(order.total_amount_cents)}: {reason}",
            courier_id,
        )
        outbox.add("PAYMENT_CHANGE_REQUEST", [order.owner_id], {
            "order_id": order.id,
            "request_id": change.id,
            "original_amount_cents": change.original_amount_cents,
            "requested_amount_cents": change.requested_amount_cents,
            "reason": reason,
        })

        db.session.commit()
        return change, outbox

    change, outbox = run_with_retry(_op)
    outbox.publish()
    return change


def approve_change(request_id: str, owner_id: str, note: str | None = None) -> PaymentChangeRequest:
    """
    Shop owner accepts the courier's amount; it becomes the order total.

    When the liability is already on the ledgers the difference is posted
    as a PAYMENT_ADJUSTED transfer. A paid order's total is final.
    """
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()
        change, order = _load_request_for_owner(request_id, owner_id)
        if change.status != REQUEST_PENDING:
            raise _already_processed(change)
        if order.payment_received:
            raise AlreadyProcessedError(
                "Payment already confirmed for this order; its total can no longer change",
                {"order_id": order.id, "request_id": change.id},
            )

        now = utcnow()
        if expired(change.created_at, _ttl_minutes(), now):
            _expire(change, outbox, now)
            db.session.commit()
            return None, change, outbox

        old_total = order.total_amount_cents
        new_total = change.requested_amount_cents
        order.total_amount_cents = new_total
        order.updated_at = now
        if order.liability_posted:
            _post_delta(
                order,
                new_total - old_total,
                f"Order {short_ref(order.id)} total changed from "
                f"{format_rupees(old_total)} to {format_rupees(new_total)}",
            )

        change.status = REQUEST_APPROVED
        change.resolved_by = owner_id
        change.resolved_at = now
        change.resolution_note = note

        _audit(order.id, owner_id, AUDIT_PAYMENT_CHANGE_APPROVED, old_total, new_total, change.reason, {
            "request_id": change.id,
        })
        order_service.append_order_event(
            order,
            "PAYMENT_CHANGE_APPROVED",
            f"Order total changed from {format_rupees(old_total)} to {format_rupees(new_total)}",
            owner_id,
        )
        outbox.add("PAYMENT_CHANGE_APPROVED", [change.delivery_boy_id, order.retailer_id], {
            "order_id": order.id,
            "request_id": change.id,
            "new_amount_cents": new_total,
        })

        db.session.commit()
        return change, None, outbox

    change, expired_change, outbox = run_with_retry(_op)
    outbox.publish()
    if expired_change is not None:
        raise AlreadyProcessedError(
            "Payment change request expired and was rejected automatically",
            {"request_id": expired_change.id, "status": expired_change.status},
        )
    return change


def reject_change(request_id: str, owner_id: str, reason: str | None = None) -> PaymentChangeRequest:
    """Shop owner declines the courier's amount. The courier may submit again, up to the cap."""
    reason = optional_text(reason, "reason")

    def _op():
        outbox = Outbox()
        change, order = _load_request_for_owner(request_id, owner_id)
        if change.status != REQUEST_PENDING:
            raise _already_processed(change)

        now = utcnow()
        if expired(change.created_at, _ttl_minutes(), now):
            _expire(change, outbox, now)
            db.session.commit()
            return None, change, outbox

        change.status = REQUEST_REJECTED
        change.resolved_by = owner_id
        change.resolved_at = now
        change.resolution_note = reason

        order_service.append_order_event(
            order,
            "PAYMENT_CHANGE_REJECTED",
            f"Requested amount {format_rupees(change.requested_amount_cents)} rejected"
            + (f": {reason}" if reason else ""),
            owner_id,
        )
        outbox.add("PAYMENT_CHANGE_REJECTED", [change.delivery_boy_id], {
            "order_id": order.id,
            "request_id": change.id,
            "reason": reason,
        })

        db.session.commit()
        return change, None, outbox

    change, expired_change, outbox = run_with_retry(_op)
    outbox.publish()
    if expired_change is not None:
        raise AlreadyProcessedError(
            "Payment change request expired and was rejected automatically",
            {"request_id": expired_change.id, "status": expired_change.status},
        )
    return change


def expire_stale_requests(now=None) -> int:
    """
    Auto-reject every PENDING request older than the configured TTL.

    Returns the number of requests expired. A TTL of 0 disables expiry.
    """
    ttl = _ttl_minutes()
    if ttl <= 0:
        return 0

    def _op():
        outbox = Outbox()
        at = now or utcnow()
        cutoff = at - timedelta(minutes=ttl)
        stale = lock_for_update(
            db.session.query(PaymentChangeRequest).filter(
                PaymentChangeRequest.status == REQUEST_PENDING,
                PaymentChangeRequest.created_at <= cutoff,
            )
        ).all()
        for change in stale:
            _expire(change, outbox, at)
        db.session.commit()
        return len(stale), outbox

    count, outbox = run_with_retry(_op)
    outbox.publish()
    return count


# =============================================================================
# BALANCE SETTLEMENT (NOT TIED TO A SINGLE CONFIRMATION)
# =============================================================================

def _get_retailer(retailer_id: str) -> User:
    retailer = db.session.get(User, retailer_id) if retailer_id else None
    if retailer is None or retailer.role != ROLE_RETAILER:
        raise NotFoundError(f"Retailer {retailer_id} not found")
    return retailer


def record_advance_payment(owner_id: str, retailer_id: str, amount_cents, note: str | None = None) -> dict:
    """
    Shop owner records money paid to a retailer outside any order.

    Posted as BALANCE_CLEAR_CREDIT retailer -> owner; it may leave the owner
    in credit (a negative outstanding balance).
    """
    amount = parse_amount_cents(amount_cents, "amount_cents")
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()
        retailer = _get_retailer(retailer_id)
        retailer_entry, owner_entry = ledger_service.transfer(
            from_user_id=retailer.id,
            to_user_id=owner_id,
            amount_cents=amount,
            transaction_type=TransactionType.BALANCE_CLEAR_CREDIT,
            description=f"Advance payment of {format_rupees(amount)}" + (f": {note}" if note else ""),
            metadata={"payment_type": "advance"},
        )
        _audit(None, owner_id, AUDIT_ADVANCE_PAYMENT, None, amount, note, {"retailer_id": retailer.id})
        outbox.add("advancePaymentReceived", [retailer.id], {
            "owner_id": owner_id,
            "amount_cents": amount,
            "balance_cents": retailer_entry.balance_cents,
        })

        db.session.commit()
        return {
            "retailer_id": retailer.id,
            "amount_cents": amount,
            "retailer_entry": retailer_entry.to_dict(),
            "owner_entry": owner_entry.to_dict(),
            "outstanding_balance_cents": -owner_entry.balance_cents,
        }, outbox

    result, outbox = run_with_retry(_op)
    outbox.publish()
    return result


def settle_balance(
    owner_id: str,
    retailer_id: str,
    amount_cents,
    order_id: str | None = None,
    note: str | None = None,
) -> dict:
    """
    Shop owner pays down what they owe a retailer.

    The amount may not exceed what the owner's ledger shows as owed to this
    retailer. When tied to a paid order, the order's amount received grows
    by the amount, which may not exceed its remaining balance.
    """
    amount = parse_amount_cents(amount_cents, "amount_cents")
    note = optional_text(note, "note")

    def _op():
        outbox = Outbox()
        retailer = _get_retailer(retailer_id)

        # The owner's balance toward the retailer is negative while they owe.
        outstanding = -ledger_service.get_outstanding_balance(owner_id, retailer.id)
        if amount > outstanding:
            raise ValidationError(
                f"Settlement of {format_rupees(amount)} exceeds outstanding balance {format_rupees(max(outstanding, 0))}",
                {"outstanding_balance_cents": outstanding},
            )

        order = None
        old_received = None
        if order_id:
            order = order_service.load_for_owner(order_id, owner_id)
            if order.retailer_id != retailer.id:
                raise NotFoundError(f"Order {order_id} not found")
            if not order.payment_received:
                raise InvalidTransitionError(
                    "Confirm payment for the order before settling its balance",
                    {"order_id": order.id},
                )
            if amount > order.remaining_balance_cents:
                raise ValidationError(
                    f"Settlement exceeds the order's remaining balance {format_rupees(order.remaining_balance_cents)}",
                    {"remaining_balance_cents": order.remaining_balance_cents},
                )
            old_received = order.amount_received_cents or 0
            order.amount_received_cents = old_received + amount
            order.updated_at = utcnow()
            _recompute_balance(order)

        retailer_entry, owner_entry = ledger_service.transfer(
            from_user_id=retailer.id,
            to_user_id=owner_id,
            amount_cents=amount,
            transaction_type=TransactionType.PAYMENT_RECEIVED,
            to_transaction_type=TransactionType.BALANCE_CLEAR_CREDIT,
            order_id=order.id if order else None,
            description=f"Balance settlement of {format_rupees(amount)}" + (f": {note}" if note else ""),
        )
        _audit(
            order.id if order else None,
            owner_id,
            AUDIT_BALANCE_SETTLED,
            old_received if order else outstanding,
            order.amount_received_cents if order else amount,
            note,
            {"retailer_id": retailer.id, "amount_cents": amount},
        )
        if order is not None:
            order_service.append_order_event(
                order,
                "BALANCE_SETTLED",
                f"Balance of {format_rupees(amount)} settled; {format_rupees(order.remaining_balance_cents)} remaining",
                owner_id,
            )

        payload = {
            "owner_id": owner_id,
            "order_id": order.id if order else None,
            "amount_cents": amount,
            "outstanding_balance_cents": -owner_entry.balance_cents,
        }
        outbox.add("balanceSettled", [retailer.id], payload)

        db.session.commit()
        result = dict(payload)
        result["retailer_id"] = retailer.id
        result["settlement"] = Settlement.from_order(order).to_dict() if order else None
        return result, outbox

    result, outbox = run_with_retry(_op)
    outbox.publish()
    return result


# =============================================================================
# QUERIES
# =============================================================================

def get_audit_trail(order_id: str, user_id: str, role: str | None = None) -> list[PaymentAuditTrail]:
    order = order_service.get_order_for_user(order_id, user_id, role)
    return (
        db.session.query(PaymentAuditTrail)
        .filter_by(order_id=order.id)
        .order_by(PaymentAuditTrail.created_at.asc(), PaymentAuditTrail.id.asc())
        .all()
    )


def list_change_requests_for_owner(owner_id: str, status: str | None = None) -> list[PaymentChangeRequest]:
    query = (
        db.session.query(PaymentChangeRequest)
        .join(Order, Order.id == PaymentChangeRequest.order_id)
        .filter(Order.owner_id == owner_id)
    )
    if status:
        query = query.filter(PaymentChangeRequest.status == status.strip().upper())
    return query.order_by(PaymentChangeRequest.created_at.desc()).all()


def list_change_requests_for_order(order_id: str, user_id: str, role: str | None = None) -> list[PaymentChangeRequest]:
    order = order_service.get_order_for_user(order_id, user_id, role)
    return (
        db.session.query(PaymentChangeRequest)
        .filter_by(order_id=order.id)
        .order_by(PaymentChangeRequest.created_at.asc())
        .all()
    )
