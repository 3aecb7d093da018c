from decimal import Decimal

import pytest

from freight_escrow import models
from freight_escrow.models import LoadStatus, PaymentStatus, RoleName
from freight_escrow.services.errors import ExternalProcessorError

from conftest import CARRIER_A, CARRIER_B, OTHER_SHIPPER_ID, SHIPPER_ID


@pytest.fixture
def open_load(seed):
    load = seed.load(status=LoadStatus.bidding)
    bid = seed.bid(load, carrier_id=CARRIER_A)
    return load, bid


def _hold_payload(load, bid=None, *, amount="1000.00", carrier_id=CARRIER_A):
    payload = {"load_id": load.id, "amount": amount, "carrier_id": carrier_id}
    if bid is not None:
        payload["bid_id"] = bid.id
    return payload


def test_create_hold_records_pending_payment(client, login, gateway, open_load, db_session):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert r.status_code == 200
    body = r.json()
    assert body["reused"] is False
    assert body["client_secret"] == f"{body['payment_intent_id']}_secret"
    assert body["payment"]["status"] == "pending"
    assert Decimal(body["payment"]["amount"]) == Decimal("1000.00")

    assert gateway.count("create_hold") == 1
    call = gateway.params("create_hold")[0]
    assert call["amount_cents"] == 100000
    assert call["metadata"]["load_id"] == load.id

    payment = db_session.query(models.Payment).one()
    assert payment.status == PaymentStatus.pending
    assert payment.amount_cents == 100000
    assert payment.stripe_payment_intent_id == body["payment_intent_id"]
    assert payment.bid_id == bid.id

    audit = db_session.query(models.AuditLog).filter_by(action="payment.hold_created").one()
    assert audit.load_id == load.id


def test_double_submit_reuses_pending_hold(client, login, gateway, open_load, db_session):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)

    first = client.post("/api/payments/holds", json=_hold_payload(load, bid))
    second = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["reused"] is True
    assert second.json()["payment_intent_id"] == first.json()["payment_intent_id"]
    assert gateway.count("create_hold") == 1
    assert db_session.query(models.Payment).count() == 1


def test_hold_on_new_terms_replaces_pending_hold(client, login, gateway, open_load, db_session):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)

    first = client.post("/api/payments/holds", json=_hold_payload(load, bid))
    second = client.post("/api/payments/holds", json=_hold_payload(load, bid, amount="900.00"))

    assert second.status_code == 200
    old_intent = first.json()["payment_intent_id"]
    assert second.json()["payment_intent_id"] != old_intent
    assert gateway.intents[old_intent]["status"] == "canceled"
    assert gateway.params("cancel_hold")[0]["payment_intent_id"] == old_intent

    old = db_session.get(models.Payment, first.json()["payment"]["id"])
    assert old.status == PaymentStatus.failed
    assert old.error_message == "superseded by a new hold"
    active = db_session.query(models.Payment).filter_by(status=PaymentStatus.pending).one()
    assert active.amount_cents == 90000

    audit = db_session.query(models.AuditLog).filter_by(action="payment.hold_cancelled").one()
    assert audit.load_id == load.id


def test_rejected_bid_does_not_lock_the_load(client, login, gateway, open_load, seed, db_session):
    load, bid_a = open_load
    bid_b = seed.bid(load, carrier_id=CARRIER_B, amount="1100.00")
    login(SHIPPER_ID, RoleName.shipper)

    first = client.post("/api/payments/holds", json=_hold_payload(load, bid_a))
    assert first.status_code == 200
    rejected = client.post(f"/api/loads/{load.id}/bids/{bid_a.id}/reject")
    assert rejected.status_code == 200

    r = client.post(
        "/api/payments/holds",
        json=_hold_payload(load, bid_b, amount="1100.00", carrier_id=CARRIER_B),
    )

    assert r.status_code == 200
    assert r.json()["payment"]["carrier_id"] == CARRIER_B
    assert gateway.intents[first.json()["payment_intent_id"]]["status"] == "canceled"
    keys = [p["idempotency_key"] for p in gateway.params("create_hold")]
    assert keys[1].endswith("-1")

    confirm = client.post(
        "/api/payments/holds/confirm",
        json={
            "payment_intent_id": r.json()["payment_intent_id"],
            "load_id": load.id,
            "bid_id": bid_b.id,
        },
    )
    assert confirm.status_code == 200
    db_session.refresh(load)
    assert load.status == LoadStatus.booked
    assert load.carrier_id == CARRIER_B


def test_cancelled_intent_is_replaced_on_resubmit(client, login, gateway, open_load, db_session):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)
    first = client.post("/api/payments/holds", json=_hold_payload(load, bid))
    gateway.intents[first.json()["payment_intent_id"]]["status"] = "canceled"

    second = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert second.status_code == 200
    assert second.json()["reused"] is False
    assert second.json()["payment_intent_id"] != first.json()["payment_intent_id"]
    assert gateway.count("create_hold") == 2
    failed = db_session.query(models.Payment).filter_by(status=PaymentStatus.failed).one()
    assert failed.error_message == "hold was cancelled"


def test_held_payment_still_blocks_a_new_hold(client, login, gateway, open_load, seed):
    load, bid = open_load
    seed.payment(load, gateway=gateway, status=PaymentStatus.held_in_escrow)
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid, amount="900.00"))

    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_STATE"
    assert gateway.count("cancel_hold") == 0
    assert gateway.count("create_hold") == 0


def test_non_owner_is_rejected_before_processor(client, login, gateway, open_load, db_session):
    load, bid = open_load
    login(OTHER_SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert r.status_code == 403
    assert r.json()["code"] == "UNAUTHORIZED"
    assert gateway.calls == []
    assert db_session.query(models.Payment).count() == 0


@pytest.mark.parametrize("amount", ["10.005", "0", "-5.00"])
def test_invalid_amount_is_rejected_before_processor(client, login, gateway, open_load, amount):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid, amount=amount))

    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_AMOUNT"
    assert gateway.calls == []


def test_amount_above_platform_maximum_is_rejected(client, login, gateway, open_load):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid, amount="100000.01"))

    assert r.status_code == 400
    assert gateway.calls == []


def test_booked_load_cannot_take_a_hold(client, login, gateway, seed):
    load = seed.load(status=LoadStatus.booked, carrier_id=CARRIER_A)
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load))

    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_STATE"
    assert gateway.calls == []


def test_bid_from_another_carrier_is_rejected(client, login, gateway, open_load):
    load, bid = open_load
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid, carrier_id=CARRIER_B))

    assert r.status_code == 409
    assert r.json()["code"] == "BID_ACCEPT_FAILED"
    assert gateway.calls == []


def test_carrier_cannot_create_hold(client, login, gateway, open_load):
    load, bid = open_load
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert r.status_code == 403


def test_processor_rejection_leaves_no_payment(client, login, gateway, open_load, db_session):
    load, bid = open_load
    gateway.fail("create_hold", ExternalProcessorError("card declined", transient=False))
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert r.status_code == 502
    body = r.json()
    assert body["code"] == "PAYMENT_PROCESSOR_ERROR"
    assert "card declined" not in body["detail"]
    assert db_session.query(models.Payment).count() == 0


def test_new_hold_allowed_after_failed_payment(client, login, gateway, open_load, seed):
    load, bid = open_load
    seed.payment(load, status=PaymentStatus.failed, gateway=gateway)
    login(SHIPPER_ID, RoleName.shipper)

    r = client.post("/api/payments/holds", json=_hold_payload(load, bid))

    assert r.status_code == 200
    key = gateway.params("create_hold")[0]["idempotency_key"]
    assert key.endswith("-1")
