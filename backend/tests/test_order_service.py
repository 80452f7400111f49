"""
Order service tests.

Verifies:
- The transition table admits exactly the listed pairs
- Ownership is enforced (other parties see NotFound)
- Courier assignment requires an ACTIVE link and posts the liability once
- Cancellation reverses a posted liability
"""

import itertools

import pytest

from khatabook.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from khatabook.models import LedgerEntry, Order, OrderEvent, OrderItem, RetailerDeliveryBoy, User
from khatabook.models.users import ROLE_DELIVERY_BOY, ROLE_SHOP_OWNER
from khatabook.services import courier_service, ledger_service, order_service
from khatabook.services.order_service import ORDER_TRANSITIONS, OrderStatus, can_transition


ALLOWED = {
    ("PENDING", "ACCEPTED"),
    ("PENDING", "REJECTED"),
    ("ACCEPTED", "READY"),
    ("READY", "OUT_FOR_DELIVERY"),
    ("READY", "COMPLETED"),
    ("OUT_FOR_DELIVERY", "COMPLETED"),
}


def _liability_entries(db_session, order_id):
    return db_session.query(LedgerEntry).filter(
        LedgerEntry.order_id == order_id,
        LedgerEntry.transaction_type.in_(["ORDER_DEBIT", "ORDER_PLACED"]),
    ).all()


# =============================================================================
# STATE MACHINE
# =============================================================================


class TestTransitionTable:

    @pytest.mark.parametrize(
        "from_status,to_status",
        list(itertools.product([s.value for s in OrderStatus], repeat=2)),
    )
    def test_only_listed_pairs_are_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status) == ((from_status, to_status) in ALLOWED)

    def test_terminal_states_have_no_exits(self):
        for status in (OrderStatus.COMPLETED, OrderStatus.REJECTED, OrderStatus.CANCELLED):
            assert ORDER_TRANSITIONS[status] == frozenset()

    def test_unknown_status_never_transitions(self):
        assert can_transition("PENDING", "SHIPPED") is False
        assert can_transition("LOST", "READY") is False


# =============================================================================
# PLACEMENT
# =============================================================================


class TestCreateOrder:

    def test_snapshots_prices_and_totals(self, db_session, owner, store, listing, transport):
        order = order_service.create_order(owner.id, store.id, [{"listing_id": listing.id, "qty": 3}])

        assert order.status == "PENDING"
        assert order.total_amount_cents == 150000
        assert order.retailer_id == store.owner_id
        assert order.payment_received is False

        item = db_session.query(OrderItem).filter_by(order_id=order.id).one()
        assert item.price_at_cents == 50000
        assert item.line_total_cents == 150000

        listing.price_retail_cents = 60000
        db_session.commit()
        item = db_session.query(OrderItem).filter_by(order_id=order.id).one()
        assert item.price_at_cents == 50000

        events = transport.of_type("orderPlaced")
        assert len(events) == 1
        assert events[0]["recipients"] == [store.owner_id]

    def test_placement_writes_no_ledger_entries(self, db_session, place_order):
        place_order()
        assert db_session.query(LedgerEntry).count() == 0

    def test_rejects_listing_from_another_store(self, db_session, owner, store, listing):
        from khatabook.models import Listing, Store
        from khatabook.models.users import ROLE_RETAILER

        other_retailer = User(email="other@khatabook.test", full_name="Other", role=ROLE_RETAILER)
        db_session.add(other_retailer)
        db_session.flush()
        other_store = Store(owner_id=other_retailer.id, name="Other Store")
        db_session.add(other_store)
        db_session.flush()
        foreign = Listing(store_id=other_store.id, name="Oil", price_retail_cents=1000)
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(NotFoundError):
            order_service.create_order(owner.id, store.id, [{"listing_id": foreign.id, "qty": 1}])

    def test_rejects_closed_store_and_bad_quantities(self, db_session, owner, store, listing):
        with pytest.raises(ValidationError):
            order_service.create_order(owner.id, store.id, [])
        with pytest.raises(ValidationError):
            order_service.create_order(owner.id, store.id, [{"listing_id": listing.id, "qty": 0}])

        store.is_open = False
        db_session.commit()
        with pytest.raises(ValidationError):
            order_service.create_order(owner.id, store.id, [{"listing_id": listing.id, "qty": 1}])
        assert db_session.query(Order).count() == 0

    def test_retailer_cannot_order_from_own_store(self, db_session, retailer, store, listing):
        with pytest.raises(ValidationError):
            order_service.create_order(retailer.id, store.id, [{"listing_id": listing.id, "qty": 1}])


# =============================================================================
# RETAILER TRANSITIONS
# =============================================================================


class TestRetailerTransitions:

    def test_accept_sets_delivery_time_and_notifies_owner(self, db_session, place_order, retailer, owner, transport):
        order = place_order()
        order = order_service.accept_order(order.id, retailer.id, "2026-10-20T10:00:00+05:30")

        assert order.status == "ACCEPTED"
        assert order.delivery_at.hour == 4
        assert order.delivery_at.minute == 30
        accepted = transport.of_type("orderAccepted")
        assert accepted[0]["recipients"] == [owner.id]

    def test_accept_twice_is_refused(self, db_session, place_order, retailer):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        with pytest.raises(InvalidTransitionError):
            order_service.accept_order(order.id, retailer.id)

    def test_reject_requires_reason(self, db_session, place_order, retailer):
        order = place_order()
        with pytest.raises(ValidationError):
            order_service.reject_order(order.id, retailer.id, "  ")

        order = order_service.reject_order(order.id, retailer.id, "Out of stock")
        assert order.status == "REJECTED"

    def test_other_retailer_sees_not_found(self, db_session, place_order):
        from khatabook.models.users import ROLE_RETAILER

        stranger = User(email="stranger@khatabook.test", full_name="Stranger", role=ROLE_RETAILER)
        db_session.add(stranger)
        db_session.commit()
        order = place_order()

        with pytest.raises(NotFoundError):
            order_service.accept_order(order.id, stranger.id)
        with pytest.raises(NotFoundError):
            order_service.get_order_for_user(order.id, stranger.id)

    def test_illegal_transition_leaves_order_unchanged(self, db_session, place_order, retailer):
        order = place_order()
        with pytest.raises(InvalidTransitionError):
            order_service.advance_status(order.id, retailer.id, "COMPLETED")

        db_session.expire_all()
        assert db_session.get(Order, order.id).status == "PENDING"
        events = db_session.query(OrderEvent).filter_by(order_id=order.id).all()
        assert [e.event_type for e in events] == ["PLACED"]

    def test_retailer_cannot_cancel_through_status(self, db_session, place_order, retailer):
        order = place_order()
        with pytest.raises(InvalidTransitionError):
            order_service.advance_status(order.id, retailer.id, "CANCELLED")

    def test_timeline_records_each_step(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.advance_status(order.id, retailer.id, "READY")
        order_service.advance_status(order.id, retailer.id, "COMPLETED")

        timeline = order_service.get_timeline(order.id, owner.id)
        assert [e.event_type for e in timeline] == ["PLACED", "ACCEPTED", "READY", "COMPLETED"]


# =============================================================================
# COURIER ASSIGNMENT
# =============================================================================


class TestAssignCourier:

    def test_assign_posts_liability_once(self, db_session, place_order, retailer, owner, linked_courier, transport):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order = order_service.assign_courier(order.id, retailer.id, linked_courier.id)

        assert order.assigned_delivery_boy_id == linked_courier.id
        assert order.liability_posted is True
        assert len(_liability_entries(db_session, order.id)) == 2
        assert ledger_service.get_outstanding_balance(retailer.id, owner.id) == 100000
        assert ledger_service.get_outstanding_balance(owner.id, retailer.id) == -100000

        assigned = transport.of_type("deliveryBoyAssigned")
        assert set(assigned[0]["recipients"]) == {linked_courier.id, owner.id}
        assert assigned[0]["payload"]["delivery_boy"] == "Arjun"
        assert assigned[0]["payload"]["delivery_boy_phone"] == "9800000003"

        order_service.withdraw_courier(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        assert len(_liability_entries(db_session, order.id)) == 2

    def test_assign_to_unlinked_courier_is_forbidden(self, db_session, place_order, retailer, courier):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)

        with pytest.raises(ForbiddenError):
            order_service.assign_courier(order.id, retailer.id, courier.id)

        db_session.expire_all()
        order = db_session.get(Order, order.id)
        assert order.assigned_delivery_boy_id is None
        assert order.liability_posted is False
        assert db_session.query(LedgerEntry).count() == 0

    def test_assign_to_inactive_link_is_forbidden(self, db_session, place_order, retailer, linked_courier):
        courier_service.unlink_courier(retailer.id, linked_courier.id)
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        with pytest.raises(ForbiddenError):
            order_service.assign_courier(order.id, retailer.id, linked_courier.id)

    def test_assign_non_courier_is_not_found(self, db_session, place_order, retailer, owner):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        with pytest.raises(NotFoundError):
            order_service.assign_courier(order.id, retailer.id, owner.id)

    def test_assign_requires_accepted_or_ready(self, db_session, place_order, retailer, linked_courier):
        order = place_order()
        with pytest.raises(InvalidTransitionError):
            order_service.assign_courier(order.id, retailer.id, linked_courier.id)

    def test_second_assignment_requires_withdrawal(self, db_session, place_order, retailer, linked_courier):
        second = User(email="second@khatabook.test", full_name="Vikram", role=ROLE_DELIVERY_BOY)
        db_session.add(second)
        db_session.commit()
        courier_service.link_courier(retailer.id, second.id)

        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        with pytest.raises(InvalidTransitionError):
            order_service.assign_courier(order.id, retailer.id, second.id)

    def test_withdraw_notifies_both_sides(self, db_session, place_order, retailer, owner, linked_courier, transport):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        order = order_service.withdraw_courier(order.id, retailer.id)

        assert order.assigned_delivery_boy_id is None
        assert transport.of_type("assignmentWithdrawn")[0]["recipients"] == [linked_courier.id]
        assert transport.of_type("deliveryAssignmentWithdrawn")[0]["recipients"] == [owner.id]


# =============================================================================
# COURIER TRANSITIONS
# =============================================================================


class TestCourierTransitions:

    def test_courier_drives_delivery(self, db_session, out_for_delivery_order, linked_courier):
        order = order_service.advance_status_by_courier(out_for_delivery_order.id, linked_courier.id, "COMPLETED")
        assert order.status == "COMPLETED"

    def test_courier_cannot_skip_ahead(self, db_session, place_order, retailer, linked_courier):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        with pytest.raises(InvalidTransitionError):
            order_service.advance_status_by_courier(order.id, linked_courier.id, "OUT_FOR_DELIVERY")

    def test_unassigned_courier_sees_not_found(self, db_session, out_for_delivery_order):
        other = User(email="other-courier@khatabook.test", full_name="Other", role=ROLE_DELIVERY_BOY)
        db_session.add(other)
        db_session.commit()
        with pytest.raises(NotFoundError):
            order_service.advance_status_by_courier(out_for_delivery_order.id, other.id, "COMPLETED")

    def test_courier_lists_only_assigned_orders(self, db_session, out_for_delivery_order, place_order, linked_courier):
        place_order()
        orders = order_service.get_orders_by_courier(linked_courier.id)
        assert [o.id for o in orders] == [out_for_delivery_order.id]


# =============================================================================
# CANCELLATION
# =============================================================================


class TestCancelOrder:

    def test_cancel_pending_order_posts_nothing(self, db_session, place_order, owner, retailer, transport):
        order = place_order()
        order = order_service.cancel_order(order.id, owner.id, "Ordered by mistake")

        assert order.status == "CANCELLED"
        assert db_session.query(LedgerEntry).count() == 0
        assert transport.of_type("orderCancelled")[0]["recipients"] == [retailer.id]

    def test_cancel_after_assignment_refunds_liability(self, db_session, place_order, owner, retailer, linked_courier):
        order = place_order()
        order_service.accept_order(order.id, retailer.id)
        order_service.assign_courier(order.id, retailer.id, linked_courier.id)
        order_service.cancel_order(order.id, owner.id)

        refunds = db_session.query(LedgerEntry).filter_by(order_id=order.id, transaction_type="REFUND").all()
        assert len(refunds) == 2
        assert ledger_service.get_outstanding_balance(retailer.id, owner.id) == 0
        assert ledger_service.get_outstanding_balance(owner.id, retailer.id) == 0

    def test_cancel_terminal_order_is_refused(self, db_session, place_order, owner, retailer):
        order = place_order()
        order_service.reject_order(order.id, retailer.id, "Closed today")
        with pytest.raises(InvalidTransitionError) as exc:
            order_service.cancel_order(order.id, owner.id)
        assert "already REJECTED" in exc.value.message

    def test_only_the_placing_owner_can_cancel(self, db_session, place_order):
        other_owner = User(email="other-owner@khatabook.test", full_name="Gupta", role=ROLE_SHOP_OWNER)
        db_session.add(other_owner)
        db_session.commit()
        order = place_order()
        with pytest.raises(NotFoundError):
            order_service.cancel_order(order.id, other_owner.id)


# =============================================================================
# COURIER LINKS
# =============================================================================


class TestCourierLinks:

    def test_link_is_idempotent_and_reactivates(self, db_session, retailer, courier):
        first = courier_service.link_courier(retailer.id, courier.id)
        again = courier_service.link_courier(retailer.id, courier.id)
        assert first.id == again.id

        courier_service.unlink_courier(retailer.id, courier.id)
        assert courier_service.is_linked(retailer.id, courier.id) is False
        assert courier_service.list_couriers(retailer.id) == []
        assert len(courier_service.list_couriers(retailer.id, include_inactive=True)) == 1

        courier_service.link_courier(retailer.id, courier.id)
        assert courier_service.is_linked(retailer.id, courier.id) is True
        assert db_session.query(RetailerDeliveryBoy).count() == 1

    def test_only_couriers_can_be_linked(self, db_session, retailer, owner):
        with pytest.raises(NotFoundError):
            courier_service.link_courier(retailer.id, owner.id)

    def test_unlink_without_active_link(self, db_session, retailer, courier):
        with pytest.raises(NotFoundError):
            courier_service.unlink_courier(retailer.id, courier.id)
