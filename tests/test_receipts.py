from sqlalchemy import select

from tixpay.models import Order, OrderStatus, Payment, PaymentStatus, Ticket


def _live_checkout(client, checkout_body, fake_gateway, reference="order_abc"):
    fake_gateway.initialize_reference = reference
    assert client.post("/payments/initialize", json=checkout_body(quantity=2)).status_code == 200
    return fake_gateway.requests_to("/transaction/initialize")[-1]["metadata"]


def _verified(metadata):
    return {"status": "success", "amount": 1000000, "currency": "NGN", "metadata": metadata}


def _assert_pdf(r, order_id=None):
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert r.headers["cache-control"] == "no-store"
    assert r.headers["content-disposition"].startswith("attachment;")
    if order_id:
        assert f"receipt-{order_id}.pdf" in r.headers["content-disposition"]
    assert r.content.startswith(b"%PDF")


def test_unknown_reference_is_404(mock_client, live_client):
    assert mock_client.get("/orders/nope/receipt").status_code == 404
    # live: the gateway doesn't know it either and carries no order_id
    assert live_client.get("/orders/nope/receipt").status_code == 404


def test_unpaid_order_is_409(live_client, checkout_body, fake_gateway):
    _live_checkout(live_client, checkout_body, fake_gateway)

    r = live_client.get("/orders/order_abc/receipt")
    assert r.status_code == 409
    assert r.json() == {"error": "Payment not completed yet"}


def test_verified_redirect_settles_the_order(live_client, checkout_body, fake_gateway, session_factory, drain):
    metadata = _live_checkout(live_client, checkout_body, fake_gateway)
    fake_gateway.verify_data = _verified(metadata)

    r = live_client.get("/orders/order_abc/receipt")
    _assert_pdf(r, metadata["order_id"])
    drain(live_client)

    with session_factory() as db:
        order = db.execute(select(Order).where(Order.gateway_reference == "order_abc")).scalar_one()
        payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one()
        tickets = db.execute(select(Ticket).where(Ticket.order_id == order.id)).scalars().all()
    assert order.status == OrderStatus.PAID
    assert payment.status == PaymentStatus.PAID
    assert len(tickets) == 2

    # paid orders are served without asking the gateway again
    verifies = len(fake_gateway.requests_to("/transaction/verify/order_abc"))
    _assert_pdf(live_client.get("/orders/order_abc/receipt"))
    assert len(fake_gateway.requests_to("/transaction/verify/order_abc")) == verifies


def test_redirect_and_webhook_converge(
    live_client, seed, checkout_body, fake_gateway, charge_event, post_webhook, session_factory, drain,
):
    metadata = _live_checkout(live_client, checkout_body, fake_gateway)
    fake_gateway.verify_data = _verified(metadata)

    _assert_pdf(live_client.get("/orders/order_abc/receipt"))
    post_webhook(live_client, charge_event("order_abc", ticket_type_id=seed.ticket_type_id, quantity=2))
    drain(live_client)

    with session_factory() as db:
        assert len(db.execute(select(Ticket)).scalars().all()) == 2


def test_lookup_falls_back_to_order_id_in_metadata(live_client, checkout_body, fake_gateway):
    metadata = _live_checkout(live_client, checkout_body, fake_gateway)
    fake_gateway.verify_data = _verified(metadata)

    _assert_pdf(live_client.get("/orders/other_ref/receipt"), metadata["order_id"])


def test_gateway_error_during_verification_is_502(live_client, checkout_body, fake_gateway):
    _live_checkout(live_client, checkout_body, fake_gateway)
    fake_gateway.verify_failure = (503, "maintenance")

    assert live_client.get("/orders/order_abc/receipt").status_code == 502


def test_refunded_order_has_no_receipt(
    live_client, checkout_body, fake_gateway, charge_event, post_webhook,
):
    _live_checkout(live_client, checkout_body, fake_gateway)
    post_webhook(live_client, charge_event("order_abc", event="charge.refund"))

    r = live_client.get("/orders/order_abc/receipt")
    assert r.status_code == 409


def test_mock_receipt_once_issued(mock_client, checkout_body, drain):
    session = mock_client.post("/payments/initialize", json=checkout_body(quantity=1)).json()
    drain(mock_client)

    _assert_pdf(mock_client.get(f"/orders/{session['reference']}/receipt"))


def test_verified_redirect_with_unusable_metadata_still_settles(
    live_client, checkout_body, fake_gateway, session_factory, drain,
):
    metadata = _live_checkout(live_client, checkout_body, fake_gateway)
    fake_gateway.verify_data = _verified(dict(metadata, quantity=0))

    _assert_pdf(live_client.get("/orders/order_abc/receipt"))
    drain(live_client)

    with session_factory() as db:
        order = db.execute(select(Order).where(Order.gateway_reference == "order_abc")).scalar_one()
        payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one()
        tickets = db.execute(select(Ticket).where(Ticket.order_id == order.id)).scalars().all()
    assert order.status == OrderStatus.PAID
    assert payment.status == PaymentStatus.PAID
    assert tickets == []
