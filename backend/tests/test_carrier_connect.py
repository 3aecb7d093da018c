import json

from freight_escrow import models
from freight_escrow.config import settings
from freight_escrow.models import RoleName
from freight_escrow.services.audit import audit_event
from freight_escrow.services.payment_gateway import ConnectAccount

from conftest import CARRIER_A, CARRIER_B


def test_refresh_enables_payouts_when_account_ready(client, login, gateway, seed, db_session):
    carrier = seed.carrier(CARRIER_A, account_id="acct_a")
    gateway.accounts["acct_a"] = ConnectAccount(
        id="acct_a", charges_enabled=True, payouts_enabled=True, details_submitted=True
    )
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/refresh")

    assert r.status_code == 200
    assert r.json()["stripe_connect_enabled"] is True
    db_session.refresh(carrier)
    assert carrier.has_enabled_payout_account


def test_refresh_keeps_payouts_disabled_until_both_flags(client, login, gateway, seed):
    seed.carrier(CARRIER_A, account_id="acct_a")
    gateway.accounts["acct_a"] = ConnectAccount(
        id="acct_a", charges_enabled=True, payouts_enabled=False, details_submitted=True
    )
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/refresh")

    assert r.status_code == 200
    body = r.json()
    assert body["stripe_connect_charges_enabled"] is True
    assert body["stripe_connect_enabled"] is False


def test_refresh_without_account_is_rejected(client, login, gateway, seed):
    seed.carrier(CARRIER_A)
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/refresh")

    assert r.status_code == 409
    assert gateway.calls == []


def test_refresh_for_unknown_carrier_is_404(client, login, gateway):
    login(CARRIER_B, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/refresh")

    assert r.status_code == 404
    assert r.json()["code"] == "CARRIER_NOT_FOUND"


def test_audit_event_deduplicates_on_idempotency_key(db_session):
    first = audit_event(
        "payment.released", "shipper-1", {"amount_cents": 100}, db=db_session, idempotency_key="k1"
    )
    second = audit_event(
        "payment.released", "shipper-1", {"amount_cents": 100}, db=db_session, idempotency_key="k1"
    )

    assert first is not None
    assert first == second
    rows = db_session.query(models.AuditLog).all()
    assert len(rows) == 1
    assert json.loads(rows[0].payload_json) == {"amount_cents": 100}


def test_create_connect_account_links_new_account(client, login, gateway, seed, db_session):
    carrier = seed.carrier(CARRIER_A)
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/account", json={"email": "ops@carrier-a.test"})

    assert r.status_code == 200
    body = r.json()
    assert body["exists"] is False
    call = gateway.params("create_connect_account")[0]
    assert call["company_name"] == "carrier-a trucking"
    assert call["email"] == "ops@carrier-a.test"
    assert call["idempotency_key"] == f"connect-account-{CARRIER_A}"

    db_session.refresh(carrier)
    assert carrier.stripe_connect_account_id == body["account_id"]
    assert not carrier.has_enabled_payout_account
    audit = (
        db_session.query(models.AuditLog)
        .filter_by(action="carrier.connect_account_created")
        .one()
    )
    assert json.loads(audit.payload_json) == {"account_id": body["account_id"]}


def test_create_connect_account_keeps_existing_account(client, login, gateway, seed):
    seed.carrier(CARRIER_A, account_id="acct_existing")
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/account")

    assert r.status_code == 200
    assert r.json() == {"account_id": "acct_existing", "exists": True}
    assert gateway.count("create_connect_account") == 0


def test_create_connect_account_requires_carrier_profile(client, login, gateway):
    login(CARRIER_B, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/account")

    assert r.status_code == 404
    assert gateway.calls == []


def test_onboarding_link_for_linked_account(client, login, gateway, seed):
    seed.carrier(CARRIER_A, account_id="acct_a")
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/onboarding-link")

    assert r.status_code == 200
    assert r.json()["url"] == "https://connect.stripe.test/setup/acct_a"
    call = gateway.params("create_onboarding_link")[0]
    assert call["return_url"] == settings.connect_return_url
    assert call["refresh_url"] == settings.connect_refresh_url


def test_onboarding_link_needs_account_first(client, login, gateway, seed):
    seed.carrier(CARRIER_A)
    login(CARRIER_A, RoleName.carrier)

    r = client.post("/api/carriers/me/connect/onboarding-link")

    assert r.status_code == 409
    assert gateway.calls == []


def test_shipper_cannot_create_connect_account(client, login, gateway, seed):
    seed.carrier(CARRIER_A)
    login(CARRIER_A, RoleName.shipper)

    r = client.post("/api/carriers/me/connect/account")

    assert r.status_code == 403
