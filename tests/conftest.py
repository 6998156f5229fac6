"""
Pytest configuration and shared fixtures.

Test settings are written to the environment before any smsrelay import,
then the settings cache is cleared so they take effect.

Carrier gateways are replaced with in-memory fakes through FastAPI
dependency overrides; tests queue results on the fakes and inspect the
calls they received.
"""

import os
import tempfile

import pytest

TEST_AUTH_TOKEN = "test_auth_token"

os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.gettempdir(), "smsrelay_test.db")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest"
os.environ["TWILIO_AUTH_TOKEN"] = TEST_AUTH_TOKEN
os.environ["TWILIO_MESSAGING_SERVICE_SID"] = "MGtest"
os.environ["TEXTBEE_API_KEY"] = "tb_test_key"
os.environ["STATUS_POLL_DELAY_SECONDS"] = "0"
os.environ["BATCH_SEND_DELAY_SECONDS"] = "0"
os.environ["VALIDATE_WEBHOOK_SIGNATURE"] = "true"

# Clear settings cache before any app imports to ensure test env vars are used
from smsrelay.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from smsrelay import storage  # noqa: E402
from smsrelay.conversations import resolve_conversation  # noqa: E402
from smsrelay.gateway import BatchReceipt, SendReceipt, StatusReport, TextBeeGateway, TwilioGateway  # noqa: E402
from smsrelay.main import app, get_campaign_gateway, get_sms_gateway  # noqa: E402
from smsrelay.models import Message, OptOut, Profile  # noqa: E402
from smsrelay.storage import Base, SessionLocal, engine  # noqa: E402

ADMIN_TOKEN = "admin-token"
CUSTOMER_TOKEN = "customer-token"
SENDER_NUMBER = "+15550000000"


class FakeTwilioGateway:
    """
    Stands in for TwilioGateway.

    send_results is a queue of results (or exceptions to raise) handed out
    in order; once empty every send is accepted with status "queued".
    statuses maps a SID to the status string (or result, or exception)
    fetch_status returns; unknown SIDs report "sent".
    """

    NOT_CONFIGURED_MESSAGE = TwilioGateway.NOT_CONFIGURED_MESSAGE

    def __init__(self):
        self.configured = True
        self.sent = []
        self.lookups = []
        self.send_results = []
        self.statuses = {}

    def is_configured(self):
        return self.configured

    async def send(self, destination, body):
        self.sent.append((destination, body))
        if self.send_results:
            result = self.send_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        sid = f"SM{len(self.sent):032d}"
        return SendReceipt(
            gateway_id=sid,
            status="queued",
            from_number=SENDER_NUMBER,
            to_number=destination,
            body=body,
            raw={"sid": sid, "status": "queued", "from": SENDER_NUMBER, "to": destination, "body": body},
        )

    async def fetch_status(self, gateway_id):
        self.lookups.append(gateway_id)
        result = self.statuses.get(gateway_id, "sent")
        if isinstance(result, Exception):
            raise result
        if not isinstance(result, str):
            return result
        return StatusReport(
            gateway_id=gateway_id,
            status=result,
            date_sent="Mon, 05 Jan 2026 10:00:00 +0000",
            date_updated="Mon, 05 Jan 2026 10:00:05 +0000",
            price="-0.00790",
            price_unit="USD",
            to_number="+15551234567",
            from_number=SENDER_NUMBER,
        )


class FakeTextBeeGateway:
    """Stands in for TextBeeGateway; result is returned from every send_batch call."""

    NOT_CONFIGURED_MESSAGE = TextBeeGateway.NOT_CONFIGURED_MESSAGE

    def __init__(self):
        self.configured = True
        self.calls = []
        self.result = BatchReceipt(raw={"data": {"success": True, "smsBatchId": "batch_1"}})

    def is_configured(self):
        return self.configured

    async def send_batch(self, device_id, recipients, message):
        self.calls.append((device_id, list(recipients), message))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def twilio():
    return FakeTwilioGateway()


@pytest.fixture
def textbee():
    return FakeTextBeeGateway()


@pytest.fixture(scope="function")
def client(twilio, textbee):
    """Create test client with fresh database and fake gateways for each test."""
    # Create tables
    Base.metadata.create_all(bind=engine)

    app.dependency_overrides[get_sms_gateway] = lambda: twilio
    app.dependency_overrides[get_campaign_gateway] = lambda: textbee

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session for seeding and inspecting rows directly."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_profile(db):
    """Factory inserting a profile row."""
    counter = {"n": 0}

    def _make(phone=None, first_name=None, last_name=None, sms_consent=True,
              role="customer", access_token=None, profile_id=None):
        counter["n"] += 1
        profile = Profile(
            id=profile_id or f"user-{counter['n']}",
            first_name=first_name,
            last_name=last_name,
            email=f"user{counter['n']}@example.com",
            phone=phone,
            sms_consent=sms_consent,
            role=role,
            access_token=access_token,
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def admin(make_profile):
    return make_profile(first_name="Ada", last_name="Admin", role="admin",
                        access_token=ADMIN_TOKEN, profile_id="admin-1")


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def customer_headers(make_profile):
    make_profile(first_name="Cody", last_name="Customer", access_token=CUSTOMER_TOKEN,
                 profile_id="customer-1")
    return {"Authorization": f"Bearer {CUSTOMER_TOKEN}"}


@pytest.fixture
def opt_out(db):
    """Factory adding a number to the opt-out registry."""
    def _opt_out(phone):
        storage.upsert_opt_out(db, phone, method="manual", notes="added by test")

    return _opt_out


@pytest.fixture
def seed_message(db):
    """
    Factory inserting an outbound message row.

    created_at and status_check_count can be forced so ordering and check
    ceilings can be exercised.
    """
    def _seed(to="+15551234567", status="sent", gateway_id=None, batch_id=None,
              direction="outbound", created_at=None, status_check_count=None,
              error_code=None, error_message=None):
        conversation_id = resolve_conversation(db, to)
        message = storage.create_message(
            db,
            conversation_id=conversation_id,
            direction=direction,
            from_number=SENDER_NUMBER,
            to_number=to,
            body="Test message",
            status=status,
            gateway_message_id=gateway_id,
            error_code=error_code,
            error_message=error_message,
            batch_id=batch_id,
        )
        overrides = {}
        if created_at is not None:
            overrides[Message.created_at] = created_at
        if status_check_count is not None:
            overrides[Message.status_check_count] = status_check_count
        if overrides:
            db.query(Message).filter(Message.id == message.id).update(overrides, synchronize_session=False)
            db.commit()
        return message.id

    return _seed


@pytest.fixture
def fetch(db):
    """Fresh read of every row of a model, bypassing the session's identity map."""
    def _fetch(model, **filters):
        db.expire_all()
        query = db.query(model)
        for name, value in filters.items():
            query = query.filter(getattr(model, name) == value)
        return query.all()

    return _fetch


@pytest.fixture
def fetch_message(db):
    def _fetch_message(message_id):
        db.expire_all()
        return db.get(Message, message_id)

    return _fetch_message


@pytest.fixture
def is_opted_out(db):
    def _is_opted_out(phone):
        db.expire_all()
        return db.get(OptOut, phone) is not None

    return _is_opted_out
