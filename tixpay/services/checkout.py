# tixpay/services/checkout.py
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

import httpx
from sqlalchemy.orm import Session

from tixpay.config import Settings
from tixpay.errors import (
    GatewayError, InsufficientInventoryError, InvalidSplitError, NotFoundError, TixPayError,
    ValidationError,
)
from tixpay.metrics import checkout_errors, checkout_sessions_total
from tixpay.models import OrderStatus, PaymentStatus
from tixpay.repository import Repository
from tixpay.schemas import CheckoutRequest
from tixpay.services.gateway import GatewayClient, InitializeResult
from tixpay.services.issuance import IssuanceTask
from tixpay.services.settlement import clear_split, ensure_organizer_settlement

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    redirect_url: str
    reference: str
    amount: int
    currency: str


def create_checkout_session(
    db: Session,
    payload: CheckoutRequest,
    gateway: GatewayClient,
    enqueue: Callable[[IssuanceTask], None],
    settings: Settings,
) -> CheckoutSession:
    """
    Create a pending order + payment and hand the buyer to the gateway.

    Mock mode (no gateway secret): the order gets a local ``mock_`` reference,
    issuance is enqueued right away and the buyer goes straight to the success page.
    Live mode: the gateway is initialised; a rejected split code is cleared,
    re-provisioned and retried exactly once.

    Tickets are never issued here, only enqueued (mock) or left to payment confirmation.
    """
    try:
        return _create_checkout_session(db, payload, gateway, enqueue, settings)
    except TixPayError as e:
        checkout_errors.labels(type(e).__name__).inc()
        raise


def _create_checkout_session(db, payload, gateway, enqueue, settings) -> CheckoutSession:
    repo = Repository(db)

    if payload.quantity > settings.max_tickets_per_checkout:
        raise ValidationError(f"At most {settings.max_tickets_per_checkout} tickets per checkout")

    product = repo.get_product_with_ticket_types(payload.product_id)
    if product is None or product.organizer_id != payload.organizer_id:
        raise NotFoundError("Product not found for organizer")

    organizer = repo.get_organizer(payload.organizer_id)
    if organizer is None:
        raise NotFoundError("Organizer not found")

    ticket_type = next((t for t in product.ticket_types if t.id == payload.ticket_type_id), None)
    if ticket_type is None:
        raise NotFoundError("Ticket type not found")

    if ticket_type.quantity_available < payload.quantity:
        raise InsufficientInventoryError("Requested quantity exceeds availability")

    if ticket_type.sales_limit_per_customer and payload.quantity > ticket_type.sales_limit_per_customer:
        raise ValidationError(
            f"At most {ticket_type.sales_limit_per_customer} tickets of this type per customer"
        )

    total_cents = ticket_type.price_cents * payload.quantity
    currency = ticket_type.currency
    callback_url = payload.redirect_url or settings.success_url

    settlement = ensure_organizer_settlement(repo, gateway, organizer, settings.platform_fee_percent)
    logger.info(
        "settlement for organizer %s: subaccount=%s split=%s charge=%s mock=%s",
        organizer.id, settlement.subaccount_code, settlement.split_code,
        settlement.percentage_charge, settlement.is_mock,
    )

    order = repo.create_order(
        organizer_id=organizer.id,
        product_id=product.id,
        total_cents=total_cents,
        currency=currency,
        buyer_name=payload.buyer_name,
        buyer_email=payload.buyer_email,
        buyer_phone=payload.buyer_phone,
        redirect_url=callback_url,
    )
    payment = repo.create_payment_record(
        order_id=order.id, amount_cents=total_cents, currency=currency, status=PaymentStatus.INITIALIZED,
    )

    if gateway.mock_mode:
        reference = f"mock_{order.id}"
        result = gateway.initialize(
            payload.buyer_email, total_cents, reference, currency, {}, callback_url,
        )
        repo.set_order_reference(order.id, reference)
        repo.update_payment(payment, PaymentStatus.PENDING, gateway_reference=reference, raw_response=result.raw)
        db.commit()

        enqueue(IssuanceTask(
            order_id=order.id,
            payment_id=payment.id,
            ticket_type_id=ticket_type.id,
            quantity=payload.quantity,
            buyer_email=payload.buyer_email,
            buyer_name=payload.buyer_name,
            buyer_phone=payload.buyer_phone,
            metadata={"mock": True},
        ))
        redirect = str(
            httpx.URL(result.redirect_url).copy_merge_params({"order_id": str(order.id)})
        )
        checkout_sessions_total.labels("mock").inc()
        logger.info("mock checkout %s for order %s (%d %s)", reference, order.id, total_cents, currency)
        return CheckoutSession(redirect_url=redirect, reference=reference, amount=total_cents, currency=currency)

    # Live: persist the pending order before talking to the gateway
    db.commit()
    reference = f"order_{order.id.hex}"
    metadata: Dict[str, Any] = {
        "order_id": str(order.id),
        "organizer_id": str(organizer.id),
        "product_id": str(product.id),
        "ticket_type_id": str(ticket_type.id),
        "quantity": payload.quantity,
        "buyer_name": payload.buyer_name,
        "buyer_phone": payload.buyer_phone,
        "redirect_url": callback_url,
    }

    def attempt() -> InitializeResult:
        meta = dict(metadata, subaccount=settlement.subaccount_code)
        if settlement.split_code:
            meta["split_code"] = settlement.split_code
        return gateway.initialize(
            payload.buyer_email, total_cents, reference, currency, meta, callback_url,
            subaccount=settlement.subaccount_code, split_code=settlement.split_code,
        )

    try:
        try:
            result = attempt()
        except InvalidSplitError:
            logger.warning(
                "gateway rejected split %s for organizer %s; clearing and retrying once",
                settlement.split_code, organizer.id,
            )
            clear_split(repo, organizer)
            db.commit()
            settlement = ensure_organizer_settlement(repo, gateway, organizer, settings.platform_fee_percent)
            db.commit()
            result = attempt()
    except GatewayError as e:
        repo.update_payment(payment, PaymentStatus.FAILED, raw_response={"error": e.message, "body": e.body})
        repo.update_order_status(order.id, OrderStatus.CANCELLED)
        db.commit()
        logger.error("gateway initialize failed for order %s: %s", order.id, e.message)
        raise

    repo.set_order_reference(order.id, result.reference)
    repo.update_payment(
        payment, PaymentStatus.PENDING, gateway_reference=result.reference, raw_response=result.raw,
    )
    db.commit()

    checkout_sessions_total.labels("live").inc()
    logger.info("checkout %s initialised for order %s (%d %s)", result.reference, order.id, total_cents, currency)
    return CheckoutSession(
        redirect_url=result.redirect_url, reference=result.reference, amount=total_cents, currency=currency,
    )
