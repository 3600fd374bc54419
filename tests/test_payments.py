from uuid import UUID, uuid4

import httpx
from sqlalchemy import func, select

from tixpay.models import Order, OrderStatus, Organizer, Payment, PaymentStatus, Ticket, TicketType


def _only_order(session_factory):
    with session_factory() as db:
        orders = db.execute(select(Order)).scalars().all()
        assert len(orders) == 1
        order = orders[0]
        payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one()
        return order, payment


def _available(session_factory, ticket_type_id):
    with session_factory() as db:
        return db.get(TicketType, ticket_type_id).quantity_available


def test_live_checkout_creates_pending_order(live_client, seed, checkout_body, fake_gateway, session_factory):
    # 1) checkout for 2 seats at 5,000.00
    r = live_client.post("/payments/initialize", json=checkout_body(quantity=2))
    assert r.status_code == 200
    session = r.json()
    assert session["amount"] == 1000000
    assert session["currency"] == "NGN"
    assert session["reference"].startswith("order_")
    assert session["redirectUrl"] == f"https://checkout.gateway.test/{session['reference']}"

    # 2) order + payment wait for confirmation, nothing issued yet
    order, payment = _only_order(session_factory)
    assert order.status == OrderStatus.PENDING
    assert order.gateway_reference == session["reference"]
    assert order.total_cents == 1000000
    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway_reference == session["reference"]
    assert _available(session_factory, seed.ticket_type_id) == 3

    # 3) the gateway got the metadata needed to issue later
    init = fake_gateway.requests_to("/transaction/initialize")[0]
    assert init["amount"] == 1000000
    assert init["subaccount"] == "ACCT_test123"
    assert init["metadata"]["order_id"] == str(order.id)
    assert init["metadata"]["ticket_type_id"] == str(seed.ticket_type_id)
    assert init["metadata"]["quantity"] == 2
    assert init["callback_url"] == "http://testserver/checkout/success"


def test_subaccount_is_provisioned_once(live_client, seed, checkout_body, fake_gateway, session_factory):
    assert live_client.post("/payments/initialize", json=checkout_body(quantity=1)).status_code == 200
    assert live_client.post("/payments/initialize", json=checkout_body(quantity=1)).status_code == 200

    assert len(fake_gateway.requests_to("/subaccount")) == 1
    with session_factory() as db:
        organizer = db.get(Organizer, seed.organizer_id)
        assert organizer.subaccount_code == "ACCT_test123"
        assert organizer.percentage_charge == 3.0


def test_buyer_redirect_url_is_used_as_callback(live_client, checkout_body, fake_gateway):
    r = live_client.post("/payments/initialize", json=checkout_body(redirect_url="https://shop.test/thanks"))
    assert r.status_code == 200
    assert fake_gateway.requests_to("/transaction/initialize")[0]["callback_url"] == "https://shop.test/thanks"


def test_mock_checkout_issues_without_gateway(mock_client, seed, checkout_body, fake_gateway, session_factory, mailer, drain):
    r = mock_client.post("/payments/initialize", json=checkout_body(quantity=2))
    assert r.status_code == 200
    session = r.json()
    assert session["reference"].startswith("mock_")

    url = httpx.URL(session["redirectUrl"])
    assert str(url).startswith("http://testserver/checkout/success")
    assert url.params["mock"] == "1"
    assert url.params["reference"] == session["reference"]
    order_id = UUID(url.params["order_id"])

    drain(mock_client)

    # no outbound calls at all
    assert fake_gateway.calls == []
    with session_factory() as db:
        order = db.get(Order, order_id)
        assert order.status == OrderStatus.PAID
        tickets = db.execute(select(Ticket).where(Ticket.order_id == order_id)).scalars().all()
    assert len(tickets) == 2
    assert all(t.ticket_code.startswith("TIX-") for t in tickets)
    assert all(t.qr_url.startswith(f"http://testserver/static/orders/{order_id}/") for t in tickets)
    assert _available(session_factory, seed.ticket_type_id) == 1

    # receipt to the buyer (with PDF), notice to the organizer
    recipients = [m["To"] for m in mailer.outbox]
    assert recipients == ["ada@example.com", "events@lagoslive.test"]
    attachments = list(mailer.outbox[0].iter_attachments())
    assert attachments[0].get_filename() == f"receipt-{order_id}.pdf"


def test_insufficient_inventory_returns_409(live_client, checkout_body, session_factory):
    r = live_client.post("/payments/initialize", json=checkout_body(quantity=4))
    assert r.status_code == 409
    assert "availability" in r.json()["error"]

    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Order)).scalar_one() == 0


def test_ticket_type_from_another_product_is_404(live_client, seed, checkout_body):
    r = live_client.post("/payments/initialize", json=checkout_body(ticket_type_id=str(seed.other_ticket_type_id)))
    assert r.status_code == 404
    assert r.json() == {"error": "Ticket type not found"}


def test_product_of_another_organizer_is_404(live_client, checkout_body):
    r = live_client.post("/payments/initialize", json=checkout_body(organizer_id=str(uuid4())))
    assert r.status_code == 404


def test_quantity_over_limit_is_400(live_client, checkout_body):
    r = live_client.post("/payments/initialize", json=checkout_body(quantity=11))
    assert r.status_code == 400
    assert "quantity" in r.json()["error"]


def test_per_customer_limit(live_client, seed, checkout_body, session_factory):
    with session_factory() as db:
        db.get(TicketType, seed.ticket_type_id).sales_limit_per_customer = 1
        db.commit()

    r = live_client.post("/payments/initialize", json=checkout_body(quantity=2))
    assert r.status_code == 400


def test_bad_email_is_400(live_client, checkout_body):
    r = live_client.post("/payments/initialize", json=checkout_body(buyer_email="not-an-email"))
    assert r.status_code == 400


def test_invalid_split_is_cleared_and_retried_once(build_client, seed, checkout_body, fake_gateway, session_factory):
    client = build_client(enable_splits=True)
    fake_gateway.initialize_failures = [(400, '{"status": false, "message": "Invalid split code"}')]

    r = client.post("/payments/initialize", json=checkout_body())
    assert r.status_code == 200

    attempts = fake_gateway.requests_to("/transaction/initialize")
    assert [a["split_code"] for a in attempts] == ["SPL_1", "SPL_2"]
    with session_factory() as db:
        assert db.get(Organizer, seed.organizer_id).split_code == "SPL_2"
    order, payment = _only_order(session_factory)
    assert order.status == OrderStatus.PENDING
    assert payment.status == PaymentStatus.PENDING


def test_invalid_split_twice_gives_up(build_client, checkout_body, fake_gateway, session_factory):
    client = build_client(enable_splits=True)
    rejected = (400, '{"status": false, "message": "Invalid split code"}')
    fake_gateway.initialize_failures = [rejected, rejected]

    r = client.post("/payments/initialize", json=checkout_body())
    assert r.status_code == 502

    assert len(fake_gateway.requests_to("/transaction/initialize")) == 2
    order, payment = _only_order(session_factory)
    assert order.status == OrderStatus.CANCELLED
    assert payment.status == PaymentStatus.FAILED


def test_gateway_failure_cancels_the_order(live_client, checkout_body, fake_gateway, session_factory):
    fake_gateway.initialize_failures = [(500, "upstream down")]

    r = live_client.post("/payments/initialize", json=checkout_body())
    assert r.status_code == 502

    order, payment = _only_order(session_factory)
    assert order.status == OrderStatus.CANCELLED
    assert payment.status == PaymentStatus.FAILED
    assert payment.raw_response["body"] == "upstream down"


def test_live_checkout_needs_bank_details(live_client, seed, checkout_body, session_factory, fake_gateway):
    with session_factory() as db:
        db.get(Organizer, seed.organizer_id).bank_details = {}
        db.commit()

    r = live_client.post("/payments/initialize", json=checkout_body())
    assert r.status_code == 500
    assert "bank details" in r.json()["error"]
    assert fake_gateway.calls == []
