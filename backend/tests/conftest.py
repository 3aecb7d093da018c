import os
import tempfile

# CRITICAL: Set environment variables BEFORE any freight_escrow imports
# These must be set before freight_escrow.config.settings is loaded
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"test_freight_escrow_{os.getpid()}.db")
os.environ["SECRET_KEY"] = "test-secret-key-1234567890"
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"  # Ensure /api prefix is used in tests
os.environ["SWEEP_TOKEN"] = "test-sweep-token"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ.pop("RATE_LIMIT_REDIS_URL", None)

import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Now import app modules - they will use the test DATABASE_URL
from freight_escrow import models
from freight_escrow.api import deps
from freight_escrow.core.rate_limit import get_rate_limiter
from freight_escrow.core.security import Principal, create_access_token
from freight_escrow.database import Base, get_db, engine as app_engine
from freight_escrow.main import app
from freight_escrow.models import (
    BidStatus,
    DocumentType,
    EquipmentType,
    LoadStatus,
    PaymentStatus,
    RoleName,
)
from freight_escrow.services.errors import ExternalProcessorError, HoldNotConfirmable
from freight_escrow.services.payment_gateway import (
    CANCELED,
    REQUIRES_CAPTURE,
    REQUIRES_CONFIRMATION,
    SUCCEEDED,
    ConnectAccount,
    HoldIntent,
    RefundResult,
    TransferResult,
    get_payment_gateway,
)

SHIPPER_ID = "shipper-1"
OTHER_SHIPPER_ID = "shipper-2"
CARRIER_A = "carrier-a"
CARRIER_B = "carrier-b"
CARRIER_C = "carrier-c"
ADMIN_ID = "admin-1"

# Use the same engine that the app uses
TEST_ENGINE = app_engine

TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=TEST_ENGINE, future=True
)


def override_get_db():
    """Test database session that uses the test engine."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


# The key is to override the ORIGINAL function from database module
app.dependency_overrides[get_db] = override_get_db


class FakeGateway:
    """In-memory stand-in for the Stripe gateway.

    Intents move through the same statuses Stripe uses. ``fail(operation, exc)``
    makes every later call of that operation raise ``exc``.
    """

    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.transfers: dict[str, TransferResult] = {}
        self.accounts: dict[str, ConnectAccount] = {}
        self.failures: dict[str, Exception] = {}
        self.confirm_outcome = REQUIRES_CAPTURE
        self._hold_keys: dict[str, str] = {}

    def fail(self, operation: str, exc: Exception) -> None:
        self.failures[operation] = exc

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def params(self, operation: str) -> list[dict]:
        return [p for op, p in self.calls if op == operation]

    def _record(self, operation: str, **params):
        self.calls.append((operation, params))
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    def add_intent(
        self, *, status: str = REQUIRES_CONFIRMATION, amount: int = 100000, currency: str = "usd"
    ) -> str:
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "status": status,
            "amount": amount,
            "amount_received": amount if status == SUCCEEDED else 0,
            "currency": currency,
        }
        return intent_id

    def _hold(self, intent_id: str) -> HoldIntent:
        intent = self.intents[intent_id]
        return HoldIntent(
            id=intent_id,
            status=intent["status"],
            amount=intent["amount"],
            amount_received=intent["amount_received"],
            currency=intent["currency"],
            client_secret=f"{intent_id}_secret",
        )

    def create_hold(
        self, *, amount_cents, currency, idempotency_key, metadata=None, description=None
    ) -> HoldIntent:
        self._record(
            "create_hold",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        if idempotency_key in self._hold_keys:
            return self._hold(self._hold_keys[idempotency_key])
        intent_id = self.add_intent(amount=int(amount_cents), currency=currency)
        self._hold_keys[idempotency_key] = intent_id
        return self._hold(intent_id)

    def retrieve_hold(self, payment_intent_id: str) -> HoldIntent:
        self._record("retrieve_hold", payment_intent_id=payment_intent_id)
        if payment_intent_id not in self.intents:
            raise ExternalProcessorError("no such payment intent", transient=False)
        return self._hold(payment_intent_id)

    def confirm_hold(self, payment_intent_id: str, *, idempotency_key: str) -> HoldIntent:
        self._record(
            "confirm_hold", payment_intent_id=payment_intent_id, idempotency_key=idempotency_key
        )
        intent = self.intents[payment_intent_id]
        if intent["status"] == REQUIRES_CONFIRMATION:
            intent["status"] = self.confirm_outcome
        hold = self._hold(payment_intent_id)
        if not hold.is_uncaptured:
            raise HoldNotConfirmable("payment intent did not reach requires_capture")
        return hold

    def capture(self, payment_intent_id: str, *, idempotency_key: str, amount_to_capture=None):
        self._record(
            "capture",
            payment_intent_id=payment_intent_id,
            idempotency_key=idempotency_key,
            amount_to_capture=amount_to_capture,
        )
        intent = self.intents[payment_intent_id]
        if intent["status"] == REQUIRES_CAPTURE:
            intent["status"] = SUCCEEDED
            intent["amount_received"] = (
                intent["amount"] if amount_to_capture is None else int(amount_to_capture)
            )
        elif intent["status"] != SUCCEEDED:
            raise ExternalProcessorError("payment capture did not succeed", transient=False)
        return self._hold(payment_intent_id)

    def cancel_hold(self, payment_intent_id: str, *, idempotency_key: str) -> RefundResult:
        self._record(
            "cancel_hold", payment_intent_id=payment_intent_id, idempotency_key=idempotency_key
        )
        intent = self.intents[payment_intent_id]
        if intent["status"] == SUCCEEDED:
            raise ExternalProcessorError("captured payment cannot be cancelled", transient=False)
        intent["status"] = CANCELED
        return RefundResult(id=payment_intent_id, status=CANCELED, kind="cancel")

    def refund(self, payment_intent_id: str, *, idempotency_key: str) -> RefundResult:
        self._record("refund", payment_intent_id=payment_intent_id, idempotency_key=idempotency_key)
        intent = self.intents[payment_intent_id]
        if intent["status"] in {REQUIRES_CAPTURE, CANCELED}:
            intent["status"] = CANCELED
            return RefundResult(id=payment_intent_id, status=CANCELED, kind="cancel")
        return RefundResult(id=f"re_{payment_intent_id}", status="succeeded", kind="refund")

    def create_transfer(
        self,
        *,
        amount_cents,
        currency,
        destination,
        idempotency_key,
        description=None,
        metadata=None,
    ) -> TransferResult:
        self._record(
            "create_transfer",
            amount_cents=amount_cents,
            currency=currency,
            destination=destination,
            idempotency_key=idempotency_key,
        )
        if idempotency_key not in self.transfers:
            self.transfers[idempotency_key] = TransferResult(
                id=f"tr_test_{len(self.transfers) + 1}",
                amount=int(amount_cents),
                destination=destination,
            )
        return self.transfers[idempotency_key]

    def retrieve_account(self, account_id: str) -> ConnectAccount:
        self._record("retrieve_account", account_id=account_id)
        return self.accounts[account_id]

    def create_connect_account(
        self, *, company_name, idempotency_key, email=None, metadata=None
    ) -> ConnectAccount:
        self._record(
            "create_connect_account",
            company_name=company_name,
            email=email,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        account_id = f"acct_{idempotency_key}"
        self.accounts.setdefault(
            account_id,
            ConnectAccount(
                id=account_id,
                charges_enabled=False,
                payouts_enabled=False,
                details_submitted=False,
            ),
        )
        return self.accounts[account_id]

    def create_onboarding_link(self, account_id: str, *, refresh_url, return_url) -> str:
        self._record(
            "create_onboarding_link",
            account_id=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
        )
        return f"https://connect.stripe.test/setup/{account_id}"


class Seeder:
    """Writes rows straight into the test database."""

    def __init__(self, db):
        self.db = db

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def load(
        self,
        *,
        status: LoadStatus = LoadStatus.posted,
        shipper_id: str = SHIPPER_ID,
        carrier_id: str | None = None,
    ) -> models.Load:
        return self._save(
            models.Load(
                shipper_id=shipper_id,
                carrier_id=carrier_id,
                origin_city="Dallas",
                origin_state="TX",
                destination_city="Atlanta",
                destination_state="GA",
                equipment_type=EquipmentType.dry_van,
                posted_rate=Decimal("1000.00"),
                status=status,
            )
        )

    def bid(
        self,
        load: models.Load,
        *,
        carrier_id: str,
        amount: str = "1000.00",
        status: BidStatus = BidStatus.pending,
        expires_at: datetime | None = None,
    ) -> models.Bid:
        return self._save(
            models.Bid(
                load_id=load.id,
                carrier_id=carrier_id,
                bid_amount=Decimal(amount),
                status=status,
                expires_at=expires_at,
            )
        )

    def carrier(
        self, user_id: str, *, account_id: str | None = None, enabled: bool = False
    ) -> models.Carrier:
        return self._save(
            models.Carrier(
                user_id=user_id,
                company_name=f"{user_id} trucking",
                stripe_connect_account_id=account_id,
                stripe_connect_enabled=enabled,
                stripe_connect_charges_enabled=enabled,
                stripe_connect_payouts_enabled=enabled,
                stripe_connect_details_submitted=enabled,
            )
        )

    def payment(
        self,
        load: models.Load,
        *,
        carrier_id: str = CARRIER_A,
        gateway: FakeGateway | None = None,
        amount_cents: int = 100000,
        status: PaymentStatus = PaymentStatus.held_in_escrow,
        intent_status: str = REQUIRES_CAPTURE,
        bid: models.Bid | None = None,
        escrow_held_at: datetime | None = None,
        dispute_reason: str | None = None,
    ) -> models.Payment:
        if gateway is not None:
            intent_id = gateway.add_intent(status=intent_status, amount=amount_cents)
        else:
            intent_id = f"pi_seed_{uuid.uuid4().hex[:12]}"
        if escrow_held_at is None and status != PaymentStatus.pending:
            escrow_held_at = datetime.utcnow()
        return self._save(
            models.Payment(
                load_id=load.id,
                bid_id=bid.id if bid is not None else None,
                shipper_id=load.shipper_id,
                carrier_id=carrier_id,
                amount_cents=amount_cents,
                currency="usd",
                status=status,
                stripe_payment_intent_id=intent_id,
                escrow_held_at=escrow_held_at,
                dispute_reason=dispute_reason,
            )
        )

    def document(
        self,
        load: models.Load,
        *,
        document_type: DocumentType = DocumentType.pod,
        approved: bool = True,
    ) -> models.Document:
        return self._save(
            models.Document(
                load_id=load.id,
                user_id=load.carrier_id or CARRIER_A,
                document_type=document_type,
                file_name=f"{document_type.value}.pdf",
                approved=approved,
                approved_by=load.shipper_id if approved else None,
                approved_at=datetime.utcnow() if approved else None,
            )
        )


@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """
    Create all tables before each test and clean up after.
    Also restores dependency overrides and the rate limiter window so tests
    stay isolated.
    """
    original_overrides = dict(app.dependency_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    get_rate_limiter().reset()

    yield

    app.dependency_overrides.clear()
    app.dependency_overrides.update(original_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db_session():
    """Database session for seeding and assertions outside requests."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def seed(db_session):
    return Seeder(db_session)


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: fake
    return fake


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def login():
    """Authenticate every following request as ``user_id`` with ``role``."""

    def _login(user_id: str, role: RoleName) -> Principal:
        principal = Principal(user_id=user_id, role=role)
        app.dependency_overrides[deps.get_current_principal] = lambda: principal
        return principal

    return _login


def bearer(user_id: str, role: RoleName) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def auth_headers():
    return bearer
