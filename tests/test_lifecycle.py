import pytest

from fabrix_orders import crud, lifecycle, models, schemas
from fabrix_orders.auth import CurrentUser
from fabrix_orders.errors import ConcurrentModification, DuplicateOrderNumber, Forbidden, IllegalTransition, ValidationError


@pytest.fixture
def order_in(order_payload):
    return schemas.OrderCreate(**order_payload)


@pytest.fixture
def placed(db, order_in, settings):
    return lifecycle.place_order(db, order_in, None, settings)


def test_place_order_logs_creation(db, placed):
    events = crud.get_order_events(db, placed.id)
    assert [e.event_type for e in events] == ["created"]
    assert placed.version == 1


def test_colliding_order_number_is_regenerated(db, order_in, settings, placed):
    numbers = iter([placed.order_number, "FBX-20250308-NEW001"])
    order = lifecycle.place_order(db, order_in, None, settings, number_factory=lambda: next(numbers))
    assert order.order_number == "FBX-20250308-NEW001"


def test_order_number_collisions_give_up(db, order_in, settings, placed):
    with pytest.raises(DuplicateOrderNumber):
        lifecycle.place_order(db, order_in, None, settings, number_factory=lambda: placed.order_number)
    assert crud.count_orders(db) == 1


def test_placed_orders_get_distinct_numbers(db, order_in, settings):
    orders = [lifecycle.place_order(db, order_in, None, settings) for _ in range(200)]

    assert crud.count_orders(db) == 200
    stored = {number for (number,) in db.query(models.Order.order_number)}
    assert len(stored) == 200
    assert stored == {order.order_number for order in orders}


def test_stale_version_is_rejected(db, placed):
    crud.conditional_update(db, placed.id, placed.version, {"notes": "first writer"})
    db.commit()

    with pytest.raises(ConcurrentModification):
        crud.conditional_update(db, placed.id, 1, {"notes": "second writer"})
    db.rollback()

    assert crud.get_order(db, placed.id).notes == "first writer"
    assert crud.get_order(db, placed.id).version == 2


def test_lost_race_is_retried(db, placed, monkeypatch):
    real_update = crud.conditional_update
    calls = []

    def racing_update(session, order_id, expected_version, patch):
        calls.append(expected_version)
        if len(calls) == 1:
            # another writer commits between our read and our write
            real_update(session, order_id, expected_version, {"notes": "concurrent edit"})
            session.commit()
        return real_update(session, order_id, expected_version, patch)

    monkeypatch.setattr(crud, "conditional_update", racing_update)
    order, applied = lifecycle.mark_paid(db, placed.id, transaction_id="txn_1")

    assert applied
    assert calls == [1, 2]
    assert order.is_paid
    assert order.notes == "concurrent edit"
    assert order.version == 3
    assert crud.count_notifications(db, placed.id, lifecycle.ORDER_CONFIRMED) == 1


def test_retries_are_bounded(db, placed, monkeypatch):
    def always_stale(session, order_id, expected_version, patch):
        raise ConcurrentModification("stale")

    monkeypatch.setattr(crud, "conditional_update", always_stale)
    with pytest.raises(ConcurrentModification):
        lifecycle.update_status(db, placed.id, "cancelled", max_attempts=2)
    assert crud.get_order(db, placed.id).status == "pending"


def test_concurrent_payments_apply_once(db, placed):
    # two reconciliations racing on the same order: the loser sees it paid and does nothing
    first, first_applied = lifecycle.mark_paid(db, placed.id, transaction_id="txn_a")
    second, second_applied = lifecycle.mark_paid(db, placed.id, transaction_id="txn_b")

    assert (first_applied, second_applied) == (True, False)
    assert second.transaction_id == "txn_a"
    assert crud.count_notifications(db, placed.id) == 1


def test_mark_paid_requires_transaction_reference(db, placed):
    with pytest.raises(ValidationError):
        lifecycle.mark_paid(db, placed.id, transaction_id="")


def test_mark_paid_rejects_cancelled_order(db, placed):
    lifecycle.update_status(db, placed.id, "cancelled")
    with pytest.raises(IllegalTransition):
        lifecycle.mark_paid(db, placed.id, transaction_id="txn_1")


def test_shipping_enqueues_notification(db, placed):
    lifecycle.mark_paid(db, placed.id, transaction_id="txn_1")
    order = lifecycle.update_status(db, placed.id, "shipped", shipping_method="express",
                                    estimated_delivery="2-3 business days")

    assert order.status == "shipped"
    assert order.shipping_method == "express"
    assert order.estimated_delivery == "2-3 business days"
    assert crud.count_notifications(db, placed.id, lifecycle.ORDER_SHIPPED) == 1


def test_cancel_checks_ownership(db, settings, order_in):
    owner = CurrentUser(id=1, email="a@example.com", role="user")
    stranger = CurrentUser(id=2, email="b@example.com", role="user")
    order = lifecycle.place_order(db, order_in, owner, settings)

    with pytest.raises(Forbidden):
        lifecycle.cancel_order(db, order.id, stranger)

    cancelled = lifecycle.cancel_order(db, order.id, owner)
    assert cancelled.status == "cancelled"
    assert crud.get_order_events(db, order.id)[-1].event_type == "cancelled"


def test_attach_payment_intent_records_previous_value(db, placed):
    lifecycle.attach_payment_intent(db, placed.id, "pi_1")
    lifecycle.attach_payment_intent(db, placed.id, "pi_2")
    lifecycle.attach_payment_intent(db, placed.id, "pi_2")

    events = [e for e in crud.get_order_events(db, placed.id) if e.event_type == "payment_intent_created"]
    assert [(e.old_value, e.new_value) for e in events] == [(None, "pi_1"), ("pi_1", "pi_2")]
    assert crud.get_order(db, placed.id).payment_intent_id == "pi_2"
