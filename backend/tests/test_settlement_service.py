"""
Settlement service tests.

Verifies:
- Partial payments derive remaining balance and mirror on both ledgers
- Payment is confirmed at most once per order
- Owner adjustments post only the delta
- Courier payment change requests: cap, single pending, expiry, resolution
- Off-order advance payments and balance settlements
"""

from datetime import timedelta

import pytest

from khatabook.errors import AlreadyProcessedError, InvalidTransitionError, NotFoundError, ValidationError
from khatabook.models import LedgerEntry, Order, PaymentAuditTrail, PaymentChangeRequest
from khatabook.services import ledger_service, order_service, settlement_service
from khatabook.time_utils import utcnow


def _balances(retailer, owner):
    return (
        ledger_service.get_outstanding_balance(retailer.id, owner.id),
        ledger_service.get_outstanding_balance(owner.id, retailer.id),
    )


def _age_request(db_session, request_id, minutes):
    change = db_session.get(PaymentChangeRequest, request_id)
    change.created_at = utcnow() - timedelta(minutes=minutes)
    db_session.commit()


# =============================================================================
# PAYMENT CONFIRMATION
# =============================================================================


class TestConfirmPayment:

    def test_partial_payment_after_assignment(self, db_session, place_order, retailer, owner, linked_courier, transport):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)

        settlement = settlement_service.confirm_payment(order.id, retailer.id, 70000, "cash")

        assert settlement.total_amount_cents == 100000
        assert settlement.amount_received_cents == 70000
        assert settlement.remaining_balance_cents == 30000
        assert settlement.is_partial_payment is True

        owner_entries = (
            db_session.query(LedgerEntry)
            .filter_by(user_id=owner.id)
            .order_by(LedgerEntry.sequence)
            .all()
        )
        assert [(e.entry_type, e.amount_cents, e.balance_cents) for e in owner_entries] == [
            ("DEBIT", 100000, -100000),
            ("CREDIT", 70000, -30000),
        ]
        assert owner_entries[1].transaction_type == "PAYMENT_CREDIT"

        # The retailer side mirrors each owner posting with the opposite sign.
        retailer_entries = (
            db_session.query(LedgerEntry)
            .filter_by(user_id=retailer.id)
            .order_by(LedgerEntry.sequence)
            .all()
        )
        assert [(e.entry_type, e.transaction_type, e.amount_cents, e.balance_cents) for e in retailer_entries] == [
            ("CREDIT", "ORDER_PLACED", 100000, 100000),
            ("DEBIT", "PAYMENT_RECEIVED", 70000, 30000),
        ]
        assert _balances(retailer, owner) == (30000, -30000)

        received = transport.of_type("paymentReceived")
        assert set(received[0]["recipients"]) == {owner.id, linked_courier.id}
        assert received[0]["payload"]["remaining_balance_cents"] == 30000

        audit = db_session.query(PaymentAuditTrail).filter_by(order_id=order.id).one()
        assert audit.action == "PAYMENT_RECEIVED"
        assert audit.new_amount_cents == 70000

    def test_confirmation_posts_liability_when_no_courier(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)

        settlement = settlement_service.confirm_payment(order.id, retailer.id)

        assert settlement.amount_received_cents == 100000
        assert settlement.is_partial_payment is False
        assert _balances(retailer, owner) == (0, 0)
        assert db_session.get(Order, order.id).liability_posted is True
        assert db_session.query(LedgerEntry).filter_by(order_id=order.id).count() == 4

    def test_overpayment_leaves_negative_remaining(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement = settlement_service.confirm_payment(order.id, retailer.id, 120000)

        assert settlement.remaining_balance_cents == -20000
        assert settlement.is_partial_payment is False
        assert _balances(retailer, owner) == (-20000, 20000)

    def test_payment_is_confirmed_once(self, db_session, place_order, retailer):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement_service.confirm_payment(order.id, retailer.id, 50000)

        with pytest.raises(AlreadyProcessedError):
            settlement_service.confirm_payment(order.id, retailer.id, 50000)
        assert db_session.query(LedgerEntry).filter_by(order_id=order.id).count() == 4

    @pytest.mark.parametrize("amount", [0, -100, 10.5, "7e4", "700.50"])
    def test_rejects_malformed_amounts(self, db_session, place_order, retailer, amount):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        with pytest.raises(ValidationError):
            settlement_service.confirm_payment(order.id, retailer.id, amount)
        assert db_session.get(Order, order.id).payment_received is False

    def test_pending_order_is_not_payable(self, db_session, place_order, retailer):
        order = place_order()
        with pytest.raises(InvalidTransitionError):
            settlement_service.confirm_payment(order.id, retailer.id)

    def test_owner_cannot_confirm_payment(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        with pytest.raises(NotFoundError):
            settlement_service.confirm_payment(order.id, owner.id)


class TestConfirmPaymentAndComplete:

    def test_courier_collects_and_completes(self, db_session, out_for_delivery_order, retailer, owner, linked_courier, transport):
        settlement = settlement_service.confirm_payment_and_complete(
            out_for_delivery_order.id, linked_courier.id, 90000
        )

        order = db_session.get(Order, out_for_delivery_order.id)
        assert order.status == "COMPLETED"
        assert order.payment_received_by == linked_courier.id
        assert settlement.remaining_balance_cents == 10000
        assert _balances(retailer, owner) == (10000, -10000)

        changed = transport.of_type("orderStatusChanged")
        assert changed[-1]["payload"]["status"] == "COMPLETED"
        assert set(changed[-1]["recipients"]) == {owner.id, retailer.id}

    def test_supersedes_pending_change_request(self, db_session, out_for_delivery_order, linked_courier, transport):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        settlement_service.confirm_payment_and_complete(out_for_delivery_order.id, linked_courier.id)

        change = db_session.get(PaymentChangeRequest, change.id)
        assert change.status == "REJECTED"
        assert change.resolution_note == settlement_service.SUPERSEDED_NOTE
        assert transport.of_type("PAYMENT_CHANGE_REJECTED")[0]["recipients"] == [linked_courier.id]

    def test_retailer_confirmation_also_supersedes_pending_request(self, db_session, out_for_delivery_order, retailer, owner, linked_courier, transport):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        settlement_service.confirm_payment(out_for_delivery_order.id, retailer.id, 100000)

        change = db_session.get(PaymentChangeRequest, change.id)
        assert change.status == "REJECTED"
        assert change.resolution_note == settlement_service.SUPERSEDED_NOTE
        assert transport.of_type("PAYMENT_CHANGE_REJECTED")[0]["recipients"] == [linked_courier.id]

        with pytest.raises(AlreadyProcessedError):
            settlement_service.approve_change(change.id, owner.id)

        order = db_session.get(Order, out_for_delivery_order.id)
        assert order.total_amount_cents == 100000
        assert order.remaining_balance_cents == 0
        assert _balances(retailer, owner) == (0, 0)

    def test_paid_order_total_cannot_be_changed(self, db_session, out_for_delivery_order, retailer, owner, linked_courier):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        settlement_service.confirm_payment(out_for_delivery_order.id, retailer.id, 100000)

        # A request left PENDING on a paid order still cannot rewrite its total.
        stored = db_session.get(PaymentChangeRequest, change.id)
        stored.status = "PENDING"
        stored.resolution_note = None
        db_session.commit()
        adjusted_before = db_session.query(LedgerEntry).filter_by(transaction_type="PAYMENT_ADJUSTED").count()

        with pytest.raises(AlreadyProcessedError) as exc:
            settlement_service.approve_change(change.id, owner.id)
        assert exc.value.details["order_id"] == out_for_delivery_order.id

        db_session.expire_all()
        assert db_session.get(PaymentChangeRequest, change.id).status == "PENDING"
        assert db_session.get(Order, out_for_delivery_order.id).total_amount_cents == 100000
        assert db_session.query(LedgerEntry).filter_by(transaction_type="PAYMENT_ADJUSTED").count() == adjusted_before
        assert _balances(retailer, owner) == (0, 0)

    def test_retailer_and_courier_paths_are_exclusive(self, db_session, out_for_delivery_order, retailer, linked_courier):
        settlement_service.confirm_payment(out_for_delivery_order.id, retailer.id)
        with pytest.raises(AlreadyProcessedError):
            settlement_service.confirm_payment_and_complete(out_for_delivery_order.id, linked_courier.id)

    def test_requires_out_for_delivery(self, db_session, place_order, retailer, linked_courier):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        with pytest.raises(InvalidTransitionError):
            settlement_service.confirm_payment_and_complete(order.id, linked_courier.id)


# =============================================================================
# OWNER ADJUSTMENT
# =============================================================================


class TestAdjustAmount:

    def test_adjust_up_posts_delta_owner_to_retailer(self, db_session, place_order, retailer, owner, transport):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement_service.confirm_payment(order.id, retailer.id, 70000)

        settlement = settlement_service.adjust_amount(order.id, owner.id, 80000, "counted again")

        assert settlement.amount_received_cents == 80000
        assert settlement.remaining_balance_cents == 20000
        adjusted = db_session.query(LedgerEntry).filter_by(
            order_id=order.id, transaction_type="PAYMENT_ADJUSTED"
        ).all()
        assert {(e.user_id, e.entry_type, e.amount_cents) for e in adjusted} == {
            (owner.id, "DEBIT", 10000),
            (retailer.id, "CREDIT", 10000),
        }
        payload = transport.of_type("paymentAdjusted")[0]["payload"]
        assert payload["adjustment_cents"] == 10000

        order = db_session.get(Order, order.id)
        assert order.original_amount_received_cents == 70000
        assert order.amount_adjusted_by == owner.id

    def test_adjust_down_posts_delta_retailer_to_owner(self, db_session, place_order, retailer, owner, transport):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement_service.confirm_payment(order.id, retailer.id, 70000)
        before = _balances(retailer, owner)

        settlement = settlement_service.adjust_amount(order.id, owner.id, 60000, "one note was fake")

        assert settlement.amount_received_cents == 60000
        assert settlement.remaining_balance_cents == 40000
        assert settlement.is_partial_payment is True
        adjusted = db_session.query(LedgerEntry).filter_by(
            order_id=order.id, transaction_type="PAYMENT_ADJUSTED"
        ).all()
        assert {(e.user_id, e.entry_type, e.amount_cents) for e in adjusted} == {
            (retailer.id, "DEBIT", 10000),
            (owner.id, "CREDIT", 10000),
        }
        assert _balances(retailer, owner) == (before[0] - 10000, before[1] + 10000)
        assert transport.of_type("paymentAdjusted")[0]["payload"]["adjustment_cents"] == -10000

        audit = db_session.query(PaymentAuditTrail).filter_by(order_id=order.id, action="AMOUNT_ADJUSTED").one()
        assert (audit.old_amount_cents, audit.new_amount_cents) == (70000, 60000)
        assert ledger_service.verify_ledger()["ok"] is True

    def test_zero_delta_posts_nothing(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement_service.confirm_payment(order.id, retailer.id, 70000)
        before = db_session.query(LedgerEntry).count()

        settlement_service.adjust_amount(order.id, owner.id, 70000)

        assert db_session.query(LedgerEntry).count() == before
        audit = db_session.query(PaymentAuditTrail).filter_by(order_id=order.id, action="AMOUNT_ADJUSTED").one()
        assert audit.old_amount_cents == 70000

    def test_adjust_requires_confirmed_payment(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        with pytest.raises(InvalidTransitionError):
            settlement_service.adjust_amount(order.id, owner.id, 50000)


# =============================================================================
# PAYMENT CHANGE NEGOTIATION
# =============================================================================


class TestPaymentChangeRequests:

    def test_approved_request_becomes_order_total(self, db_session, out_for_delivery_order, retailer, owner, linked_courier, transport):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "One bag torn")
        assert transport.of_type("PAYMENT_CHANGE_REQUEST")[0]["recipients"] == [owner.id]

        approved = settlement_service.approve_change(change.id, owner.id)

        assert approved.status == "APPROVED"
        assert approved.resolved_by == owner.id
        order = db_session.get(Order, out_for_delivery_order.id)
        assert order.total_amount_cents == 90000
        assert _balances(retailer, owner) == (90000, -90000)

        adjusted = db_session.query(LedgerEntry).filter_by(
            user_id=owner.id, transaction_type="PAYMENT_ADJUSTED"
        ).one()
        assert adjusted.entry_type == "CREDIT"
        assert adjusted.amount_cents == 10000

        assert set(transport.of_type("PAYMENT_CHANGE_APPROVED")[0]["recipients"]) == {linked_courier.id, retailer.id}

        settlement = settlement_service.confirm_payment_and_complete(out_for_delivery_order.id, linked_courier.id)
        assert settlement.amount_received_cents == 90000
        assert settlement.remaining_balance_cents == 0
        assert _balances(retailer, owner) == (0, 0)

    def test_only_one_pending_request(self, db_session, out_for_delivery_order, linked_courier):
        settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        with pytest.raises(InvalidTransitionError):
            settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 80000, "More damage")

    def test_request_cap_per_order(self, db_session, out_for_delivery_order, owner, linked_courier):
        for amount in (90000, 80000, 70000):
            change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, amount, "retry")
            settlement_service.reject_change(change.id, owner.id, "No")

        with pytest.raises(InvalidTransitionError) as exc:
            settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 60000, "last try")
        assert exc.value.details["limit"] == 3

    def test_request_must_differ_from_total(self, db_session, out_for_delivery_order, linked_courier):
        with pytest.raises(ValidationError):
            settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 100000, "same")

    def test_request_requires_out_for_delivery(self, db_session, place_order, retailer, linked_courier):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        with pytest.raises(InvalidTransitionError):
            settlement_service.request_change(order.id, linked_courier.id, 90000, "early")

    def test_resolved_request_cannot_be_resolved_again(self, db_session, out_for_delivery_order, owner, linked_courier):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        settlement_service.reject_change(change.id, owner.id, "Photos please")

        with pytest.raises(AlreadyProcessedError):
            settlement_service.approve_change(change.id, owner.id)
        with pytest.raises(AlreadyProcessedError):
            settlement_service.reject_change(change.id, owner.id)
        assert db_session.get(Order, out_for_delivery_order.id).total_amount_cents == 100000

    def test_other_owner_sees_not_found(self, db_session, out_for_delivery_order, retailer, linked_courier):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        with pytest.raises(NotFoundError):
            settlement_service.approve_change(change.id, retailer.id)

    def test_expired_request_is_auto_rejected_on_approval(self, db_session, out_for_delivery_order, owner, linked_courier, transport):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        _age_request(db_session, change.id, 121)

        with pytest.raises(AlreadyProcessedError):
            settlement_service.approve_change(change.id, owner.id)

        db_session.expire_all()
        change = db_session.get(PaymentChangeRequest, change.id)
        assert change.status == "REJECTED"
        assert change.resolution_note == settlement_service.EXPIRED_NOTE
        assert db_session.get(Order, out_for_delivery_order.id).total_amount_cents == 100000
        assert transport.of_type("PAYMENT_CHANGE_REJECTED")[0]["payload"]["reason"] == settlement_service.EXPIRED_NOTE

    def test_expired_pending_request_does_not_block_a_new_one(self, db_session, out_for_delivery_order, linked_courier):
        first = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        _age_request(db_session, first.id, 180)

        second = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 85000, "Worse")
        assert second.status == "PENDING"
        assert db_session.get(PaymentChangeRequest, first.id).status == "REJECTED"

    def test_expire_stale_requests_sweep(self, db_session, out_for_delivery_order, linked_courier):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        assert settlement_service.expire_stale_requests() == 0

        _age_request(db_session, change.id, 121)
        assert settlement_service.expire_stale_requests() == 1
        assert db_session.get(PaymentChangeRequest, change.id).status == "REJECTED"

    def test_cancel_rejects_pending_request(self, db_session, out_for_delivery_order, owner, linked_courier):
        change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "Damaged")
        order_service.cancel_order(out_for_delivery_order.id, owner.id)

        assert db_session.get(PaymentChangeRequest, change.id).status == "REJECTED"

    def test_request_after_payment_is_refused(self, db_session, out_for_delivery_order, retailer, linked_courier):
        settlement_service.confirm_payment(out_for_delivery_order.id, retailer.id, 50000)
        with pytest.raises(AlreadyProcessedError):
            settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 90000, "late")


# =============================================================================
# OFF-ORDER SETTLEMENT
# =============================================================================


class TestBalanceSettlement:

    def test_advance_payment_puts_owner_in_credit(self, db_session, retailer, owner, transport):
        result = settlement_service.record_advance_payment(owner.id, retailer.id, 50000, "Diwali advance")

        assert result["outstanding_balance_cents"] == -50000
        assert _balances(retailer, owner) == (-50000, 50000)
        entry = db_session.query(LedgerEntry).filter_by(user_id=owner.id).one()
        assert entry.transaction_type == "BALANCE_CLEAR_CREDIT"
        assert transport.of_type("advancePaymentReceived")[0]["recipients"] == [retailer.id]
        audit = db_session.query(PaymentAuditTrail).filter_by(action="ADVANCE_PAYMENT").one()
        assert audit.user_id == owner.id

    def test_advance_payment_requires_retailer(self, db_session, owner, courier):
        with pytest.raises(NotFoundError):
            settlement_service.record_advance_payment(owner.id, courier.id, 50000)
        assert db_session.query(LedgerEntry).count() == 0

    def test_settle_against_partially_paid_order(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement_service.confirm_payment(order.id, retailer.id, 70000)

        result = settlement_service.settle_balance(owner.id, retailer.id, 30000, order_id=order.id)

        assert result["outstanding_balance_cents"] == 0
        assert result["settlement"]["remaining_balance_cents"] == 0
        assert result["settlement"]["is_partial_payment"] is False
        assert _balances(retailer, owner) == (0, 0)
        assert ledger_service.verify_ledger()["ok"] is True

    def test_settlement_cannot_exceed_outstanding(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        settlement_service.confirm_payment(order.id, retailer.id, 70000)

        with pytest.raises(ValidationError):
            settlement_service.settle_balance(owner.id, retailer.id, 40000)
        assert _balances(retailer, owner) == (30000, -30000)

    def test_settlement_against_unpaid_order_is_refused(self, db_session, place_order, retailer, owner, linked_courier):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        with pytest.raises(InvalidTransitionError):
            settlement_service.settle_balance(owner.id, retailer.id, 10000, order_id=order.id)


# =============================================================================
# CONSERVATION ACROSS A FULL FLOW
# =============================================================================


def test_full_flow_keeps_ledger_consistent(db_session, out_for_delivery_order, retailer, owner, linked_courier):
    change = settlement_service.request_change(out_for_delivery_order.id, linked_courier.id, 95000, "Short by one")
    settlement_service.approve_change(change.id, owner.id)
    settlement_service.confirm_payment_and_complete(out_for_delivery_order.id, linked_courier.id, 60000)
    settlement_service.settle_balance(owner.id, retailer.id, 35000, order_id=out_for_delivery_order.id)

    report = ledger_service.verify_ledger()
    assert report["ok"] is True, report["problems"]
    assert _balances(retailer, owner) == (0, 0)

    order = db_session.get(Order, out_for_delivery_order.id)
    assert order.remaining_balance_cents == 0
    actions = [row.action for row in settlement_service.get_audit_trail(order.id, owner.id)]
    assert actions == ["PAYMENT_CHANGE_APPROVED", "PAYMENT_RECEIVED", "BALANCE_SETTLED"]
