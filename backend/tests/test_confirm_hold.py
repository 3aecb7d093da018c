import pytest

from freight_escrow import models
from freight_escrow.models import BidStatus, LoadStatus, PaymentStatus, RoleName
from freight_escrow.services import escrow
from freight_escrow.services.errors import BidAcceptFailed

from conftest import CARRIER_A, CARRIER_B, CARRIER_C, OTHER_SHIPPER_ID, SHIPPER_ID


@pytest.fixture
def bidding_load(seed):
    load = seed.load(status=LoadStatus.bidding)
    offers = ((CARRIER_A, "1000.00"), (CARRIER_B, "1100.00"), (CARRIER_C, "1200.00"))
    bids = {carrier: seed.bid(load, carrier_id=carrier, amount=amt) for carrier, amt in offers}
    return load, bids


def _create_hold(client, load, bid):
    r = client.post(
        "/api/payments/holds",
        json={
            "load_id": load.id,
            "amount": "1000.00",
            "carrier_id": bid.carrier_id,
            "bid_id": bid.id,
        },
    )
    assert r.status_code == 200
    return r.json()["payment_intent_id"]


def _confirm(client, load, bid, intent_id):
    return client.post(
        "/api/payments/holds/confirm",
        json={"payment_intent_id": intent_id, "load_id": load.id, "bid_id": bid.id},
    )


def test_confirm_books_load_and_rejects_other_bids(
    client, login, gateway, bidding_load, db_session
):
    load, bids = bidding_load
    login(SHIPPER_ID, RoleName.shipper)
    intent_id = _create_hold(client, load, bids[CARRIER_A])

    r = _confirm(client, load, bids[CARRIER_A], intent_id)

    assert r.status_code == 200
    body = r.json()
    assert body["hold_status"] == "requires_capture"
    assert body["rejected_bids"] == 2
    assert body["payment"]["status"] == "held_in_escrow"
    assert body["payment"]["escrow_held_at"] is not None

    db_session.refresh(load)
    assert load.status == LoadStatus.booked
    assert load.carrier_id == CARRIER_A

    db_session.expire_all()
    statuses = {b.carrier_id: b.status for b in db_session.query(models.Bid).all()}
    assert statuses == {
        CARRIER_A: BidStatus.accepted,
        CARRIER_B: BidStatus.rejected,
        CARRIER_C: BidStatus.rejected,
    }

    payment = db_session.query(models.Payment).one()
    assert payment.status == PaymentStatus.held_in_escrow
    assert payment.bid_id == bids[CARRIER_A].id


def test_confirm_retry_is_idempotent(client, login, gateway, bidding_load, db_session):
    load, bids = bidding_load
    login(SHIPPER_ID, RoleName.shipper)
    intent_id = _create_hold(client, load, bids[CARRIER_A])

    first = _confirm(client, load, bids[CARRIER_A], intent_id)
    held_at = first.json()["payment"]["escrow_held_at"]
    second = _confirm(client, load, bids[CARRIER_A], intent_id)

    assert second.status_code == 200
    assert second.json()["rejected_bids"] == 0
    assert second.json()["payment"]["escrow_held_at"] == held_at
    assert gateway.count("confirm_hold") == 1

    db_session.refresh(load)
    assert load.status == LoadStatus.booked
    confirmed_audits = (
        db_session.query(models.AuditLog).filter_by(action="payment.hold_confirmed").count()
    )
    assert confirmed_audits == 1


def test_unconfirmable_hold_changes_nothing(client, login, gateway, bidding_load, db_session):
    load, bids = bidding_load
    login(SHIPPER_ID, RoleName.shipper)
    intent_id = _create_hold(client, load, bids[CARRIER_A])
    gateway.intents[intent_id]["status"] = "requires_payment_method"

    r = _confirm(client, load, bids[CARRIER_A], intent_id)

    assert r.status_code == 502
    assert r.json()["code"] == "HOLD_NOT_CONFIRMABLE"
    db_session.refresh(load)
    assert load.status == LoadStatus.bidding
    db_session.expire_all()
    assert db_session.query(models.Payment).one().status == PaymentStatus.pending
    assert {b.status for b in db_session.query(models.Bid).all()} == {BidStatus.pending}


def test_confirm_with_mismatched_bid_is_rejected(client, login, gateway, bidding_load):
    load, bids = bidding_load
    login(SHIPPER_ID, RoleName.shipper)
    intent_id = _create_hold(client, load, bids[CARRIER_A])

    r = _confirm(client, load, bids[CARRIER_B], intent_id)

    assert r.status_code == 409
    assert r.json()["code"] == "BID_ACCEPT_FAILED"
    assert gateway.count("confirm_hold") == 0


def test_confirm_unknown_intent_is_404(client, login, gateway, bidding_load):
    load, bids = bidding_load
    login(SHIPPER_ID, RoleName.shipper)

    r = _confirm(client, load, bids[CARRIER_A], "pi_unknown")

    assert r.status_code == 404
    assert r.json()["code"] == "PAYMENT_NOT_FOUND"


def test_other_shipper_cannot_confirm(client, login, gateway, bidding_load):
    load, bids = bidding_load
    login(SHIPPER_ID, RoleName.shipper)
    intent_id = _create_hold(client, load, bids[CARRIER_A])

    login(OTHER_SHIPPER_ID, RoleName.shipper)
    r = _confirm(client, load, bids[CARRIER_A], intent_id)

    assert r.status_code == 404
    assert gateway.count("confirm_hold") == 0


def test_second_booking_loses_to_accepted_bid(db_session, seed):
    load = seed.load(status=LoadStatus.bidding)
    bid_a = seed.bid(load, carrier_id=CARRIER_A)
    bid_b = seed.bid(load, carrier_id=CARRIER_B)
    payment_a = seed.payment(
        load, carrier_id=CARRIER_A, bid=bid_a, status=PaymentStatus.pending
    )
    payment_b = seed.payment(
        load, carrier_id=CARRIER_B, bid=bid_b, status=PaymentStatus.pending
    )

    escrow.apply_booking(db_session, payment=payment_a, bid=bid_a)
    db_session.commit()

    with pytest.raises(BidAcceptFailed):
        escrow.apply_booking(db_session, payment=payment_b, bid=bid_b)
    db_session.rollback()

    for row in (load, bid_a, bid_b, payment_a, payment_b):
        db_session.refresh(row)
    assert load.status == LoadStatus.booked
    assert load.carrier_id == CARRIER_A
    assert bid_a.status == BidStatus.accepted
    assert bid_b.status == BidStatus.rejected
    assert payment_a.status == PaymentStatus.held_in_escrow
    assert payment_b.status == PaymentStatus.pending


def test_pending_bid_cannot_be_accepted_next_to_accepted_one(db_session, seed):
    load = seed.load(status=LoadStatus.bidding)
    seed.bid(load, carrier_id=CARRIER_A, status=BidStatus.accepted)
    bid_b = seed.bid(load, carrier_id=CARRIER_B)
    payment_b = seed.payment(
        load, carrier_id=CARRIER_B, bid=bid_b, status=PaymentStatus.pending
    )

    with pytest.raises(BidAcceptFailed):
        escrow.apply_booking(db_session, payment=payment_b, bid=bid_b)
    db_session.rollback()

    db_session.refresh(bid_b)
    db_session.refresh(payment_b)
    db_session.refresh(load)
    assert bid_b.status == BidStatus.pending
    assert payment_b.status == PaymentStatus.pending
    assert payment_b.escrow_held_at is None
    assert load.status == LoadStatus.bidding
