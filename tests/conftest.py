import hashlib
import hmac
import json
import os
import tempfile
from contextlib import ExitStack
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

# Throwaway defaults for the module-level app; tests build their own engine below
_TMP = tempfile.mkdtemp(prefix="tixpay-tests-")
TEST_DATABASE_URL = f"sqlite:///{_TMP}/tixpay.sqlite3"
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("STORAGE_DIR", os.path.join(_TMP, "storage"))

from tixpay.config import Settings  # noqa: E402
from tixpay.db import make_engine, make_session_factory  # noqa: E402
from tixpay.main import create_app  # noqa: E402
from tixpay.models import Base, Organizer, Product, TicketType  # noqa: E402
from tixpay.services.gateway import GatewayClient  # noqa: E402
from tixpay.services.mailer import LogMailer  # noqa: E402
from tixpay.services.storage import LocalStorage  # noqa: E402

SECRET = "sk_test_tixpay"
GATEWAY_URL = "https://gateway.test"


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


class FakePaystack:
    """httpx.MockTransport handler answering like the gateway's REST API."""

    def __init__(self):
        self.calls = []
        self.initialize_reference = None
        self.initialize_failures = []
        self.verify_data = {"status": "abandoned"}
        self.verify_failure = None
        self.splits_created = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.calls.append((request.method, path, body))

        if path == "/transaction/initialize":
            if self.initialize_failures:
                status, text = self.initialize_failures.pop(0)
                return httpx.Response(status, text=text)
            reference = self.initialize_reference or body["reference"]
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.gateway.test/{reference}",
                    "access_code": "ac_test",
                    "reference": reference,
                },
            })
        if path.startswith("/transaction/verify/"):
            if self.verify_failure:
                status, text = self.verify_failure
                return httpx.Response(status, text=text)
            data = dict(self.verify_data, reference=path.rsplit("/", 1)[-1])
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": data})
        if path == "/subaccount":
            return httpx.Response(200, json={"status": True, "data": {"subaccount_code": "ACCT_test123"}})
        if path == "/split":
            self.splits_created += 1
            return httpx.Response(200, json={"status": True, "data": {"split_code": f"SPL_{self.splits_created}"}})
        if path == "/bank/resolve":
            return httpx.Response(200, json={"status": True, "data": {
                "account_number": request.url.params["account_number"],
                "account_name": " ADA OBI ",
            }})
        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def requests_to(self, path):
        return [body for _, p, body in self.calls if p == path]


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "DATABASE_URL": TEST_DATABASE_URL,
        "APP_URL": "http://testserver",
        "STORAGE_DIR": str(tmp_path / "storage"),
        "GATEWAY_SECRET_KEY": None,
        "GATEWAY_WEBHOOK_SECRET": None,
        "GATEWAY_BASE_URL": GATEWAY_URL,
        "SMTP_HOST": None,
        "SMTP_PORT": None,
        "TICKET_CODE_PREFIX": "TIX",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(scope="session")
def engine():
    eng = make_engine(TEST_DATABASE_URL)
    yield eng
    eng.dispose()


@pytest.fixture(autouse=True)
def create_schema_and_clean_db(engine):
    # Fresh tables per test so they don't interfere
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "storage"), "http://testserver/static")


@pytest.fixture
def mailer():
    return LogMailer()


@pytest.fixture
def fake_gateway():
    return FakePaystack()


@pytest.fixture
def build_client(session_factory, tmp_path, mailer, storage, fake_gateway):
    with ExitStack() as stack:
        def _build(live=True, **gateway_kwargs):
            settings = make_settings(tmp_path, GATEWAY_SECRET_KEY=SECRET if live else None)
            gateway = GatewayClient(
                settings.gateway_secret_key,
                base_url=GATEWAY_URL,
                transport=httpx.MockTransport(fake_gateway),
                **gateway_kwargs,
            )
            app = create_app(settings, session_factory, gateway=gateway, mailer=mailer, storage=storage)
            return stack.enter_context(TestClient(app))

        yield _build


@pytest.fixture
def live_client(build_client):
    return build_client(live=True)


@pytest.fixture
def mock_client(build_client):
    return build_client(live=False)


@pytest.fixture
def seed(session_factory):
    """One organizer with bank details, an event with 3 seats at 5,000.00 NGN, and a second event."""
    with session_factory() as db:
        organizer = Organizer(
            name="Lagos Live",
            email="events@lagoslive.test",
            bank_details={"bank_code": "058", "account_number": "0123456789", "account_name": "Lagos Live Ltd"},
        )
        db.add(organizer)
        db.flush()

        product = Product(
            organizer_id=organizer.id,
            title="Afrobeats Night",
            venue_name="Eko Hall",
            start_at=datetime(2026, 12, 12, 19, 0, tzinfo=timezone.utc),
        )
        other_product = Product(organizer_id=organizer.id, title="Comedy Hour")
        db.add_all([product, other_product])
        db.flush()

        ticket_type = TicketType(
            product_id=product.id, name="Regular", price_cents=500000, currency="NGN",
            quantity_total=3, quantity_available=3,
        )
        other_type = TicketType(
            product_id=other_product.id, name="VIP", price_cents=100000, currency="NGN",
            quantity_total=5, quantity_available=5,
        )
        db.add_all([ticket_type, other_type])
        db.commit()

        return SimpleNamespace(
            organizer_id=organizer.id,
            product_id=product.id,
            ticket_type_id=ticket_type.id,
            other_product_id=other_product.id,
            other_ticket_type_id=other_type.id,
        )


@pytest.fixture
def checkout_body(seed):
    def _body(quantity=2, **overrides):
        body = {
            "organizer_id": str(seed.organizer_id),
            "product_id": str(seed.product_id),
            "ticket_type_id": str(seed.ticket_type_id),
            "quantity": quantity,
            "buyer_name": "Ada Obi",
            "buyer_email": "ada@example.com",
            "buyer_phone": "+2348000000000",
        }
        body.update(overrides)
        return body
    return _body


@pytest.fixture
def charge_event():
    def _event(reference, event="charge.success", ticket_type_id=None, quantity=1, **data):
        metadata = {"quantity": quantity}
        if ticket_type_id is not None:
            metadata["ticket_type_id"] = str(ticket_type_id)
        payload = {
            "reference": reference,
            "status": "success",
            "amount": 1000000,
            "currency": "NGN",
            "metadata": metadata,
            "customer": {"email": "ada@example.com", "first_name": "Ada"},
        }
        payload.update(data)
        return {"event": event, "data": payload}
    return _event


@pytest.fixture
def post_webhook():
    def _post(client, payload, signature=None, header="X-Signature"):
        body = json.dumps(payload).encode()
        headers = {"content-type": "application/json"}
        headers[header] = sign(body) if signature is None else signature
        return client.post("/webhooks/gateway", content=body, headers=headers)
    return _post


def wait_for_issuance(client):
    client.app.state.services.queue.join()


@pytest.fixture
def drain():
    return wait_for_issuance
