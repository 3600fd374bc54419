# tixpay/services/webhooks.py
import json
import logging
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import pydantic
from sqlalchemy.orm import Session

from tixpay.errors import NotFoundError, PaymentNotCompletedError, SignatureError, ValidationError
from tixpay.metrics import notification_failures, webhook_events_total, webhook_signature_failures
from tixpay.models import LedgerStatus, Order, OrderStatus, PaymentStatus
from tixpay.repository import Repository
from tixpay.schemas import (
    ChargeData, ChargeRefundEvent, ChargeSuccessEvent, Customer, WebhookEnvelope, issuance_metadata,
    parse_gateway_event,
)
from tixpay.services.emails import refund_notification_email
from tixpay.services.gateway import GatewayClient
from tixpay.services.issuance import IssuanceTask
from tixpay.services.mailer import Mailer

logger = logging.getLogger(__name__)

Enqueue = Callable[[IssuanceTask], None]


def process_webhook(
    db: Session,
    raw_body: bytes,
    signature: Optional[str],
    gateway: GatewayClient,
    enqueue: Enqueue,
    mailer: Mailer,
) -> dict:
    """
    Verify, log and apply one gateway event.

    Nothing is written unless the signature matches. Once the event row is
    stored the gateway always gets a 200: notification failures are logged,
    and issuance happens later on the queue.
    """
    if not gateway.verify_signature(raw_body, signature):
        webhook_signature_failures.inc()
        raise SignatureError("Invalid signature")

    try:
        envelope = WebhookEnvelope.model_validate(json.loads(raw_body))
    except (ValueError, pydantic.ValidationError) as e:
        raise ValidationError(f"Invalid webhook payload: {e}") from e

    repo = Repository(db)
    record = repo.record_webhook_event("paystack", envelope.event, envelope.model_dump(), signature)
    db.commit()
    webhook_events_total.labels(envelope.event).inc()
    logger.info("webhook %s logged as #%s", envelope.event, record.id)

    try:
        event = parse_gateway_event(envelope)
    except pydantic.ValidationError as e:
        logger.warning("webhook #%s (%s) has unusable data: %s", record.id, envelope.event, e)
        event = None

    if isinstance(event, ChargeSuccessEvent):
        _handle_charge_success(db, repo, event.data, enqueue)
    elif isinstance(event, ChargeRefundEvent):
        _handle_refund(db, repo, event.data, mailer)
    elif event is not None:
        logger.info("webhook #%s: ignoring event type %s", record.id, envelope.event)

    repo.mark_webhook_processed(record.id)
    db.commit()
    return {"ok": True}


def _issuance_task(
    order: Order,
    payment_id: Optional[UUID],
    metadata: Dict[str, Any],
    customer: Optional[Customer] = None,
) -> Optional[IssuanceTask]:
    """Build the issuance task from charge metadata, or None when it cannot drive issuance."""
    try:
        meta = issuance_metadata(metadata)
    except pydantic.ValidationError as e:
        logger.warning("order %s is paid but its charge metadata is unusable; issuance skipped: %s", order.id, e)
        return None
    if meta.ticket_type_id is None:
        logger.warning("order %s is paid but its charge metadata has no ticket_type_id; issuance skipped", order.id)
        return None

    return IssuanceTask(
        order_id=order.id,
        payment_id=payment_id,
        ticket_type_id=meta.ticket_type_id,
        quantity=meta.quantity,
        # stored buyer fields win; the gateway's customer object is only a fallback
        buyer_email=order.buyer_email or (customer.email if customer else None),
        buyer_name=order.buyer_name or meta.buyer_name or (customer.first_name if customer else None),
        buyer_phone=order.buyer_phone or meta.buyer_phone or (customer.phone if customer else None),
        metadata=meta.model_dump(mode="json"),
    )


def _handle_charge_success(db: Session, repo: Repository, data: ChargeData, enqueue: Enqueue) -> None:
    order = repo.get_order_by_reference(data.reference)
    if order is None:
        logger.warning("charge.success for unknown reference %s", data.reference)
        return
    if order.status in (OrderStatus.REFUNDED, OrderStatus.CANCELLED):
        logger.warning("charge.success for %s order %s; not issuing", order.status.value, order.id)
        return

    # keyed on the reference alone; metadata only matters for the enqueue below
    if order.status != OrderStatus.PAID:
        if repo.update_order_status(order.id, OrderStatus.PAID):
            logger.info("order %s paid (webhook)", order.id)
    raw = data.model_dump(mode="json")
    payment = repo.update_payment_status_by_reference(data.reference, PaymentStatus.PAID, raw)
    db.commit()

    task = _issuance_task(order, payment.id if payment is not None else None, data.metadata, data.customer)
    if task is not None:
        enqueue(task)


def _handle_refund(db: Session, repo: Repository, data: ChargeData, mailer: Mailer) -> None:
    order = repo.get_order_by_reference(data.reference)
    if order is None:
        logger.warning("refund for unknown reference %s", data.reference)
        return

    moved = repo.update_order_status(order.id, OrderStatus.REFUNDED)
    repo.update_payment_status_by_reference(data.reference, PaymentStatus.REFUNDED, data.model_dump(mode="json"))
    repo.update_ledger_status(order.id, LedgerStatus.REFUNDED)
    db.commit()

    # redelivered refunds don't email again
    if not moved:
        logger.info("order %s already %s; refund notice not resent", order.id, order.status.value)
        return
    logger.info("order %s refunded", order.id)

    organizer = repo.get_organizer(order.organizer_id)
    # release the SQLite write lock before talking to SMTP
    db.commit()
    if organizer is None or not order.buyer_email:
        return
    try:
        content = refund_notification_email(order, organizer, data.message or "Refund processed")
        mailer.send(order.buyer_email, content.subject, content.html)
    except Exception:
        notification_failures.labels("refund").inc()
        logger.exception("refund notification failed for order %s", order.id)


def verify_and_settle(
    db: Session,
    reference: str,
    gateway: GatewayClient,
    enqueue: Enqueue,
) -> Order:
    """
    Redirect-verification path used by the receipt page.

    A paid order is returned as-is. Otherwise the gateway is asked directly and,
    on success, the order/payment move to paid inline so the buyer does not depend
    on the webhook winning the race. Issuance is enqueued as well; it is idempotent.
    """
    repo = Repository(db)
    order = repo.get_order_by_reference(reference)
    if order is not None and order.status == OrderStatus.PAID:
        return order
    if order is not None and order.status in (OrderStatus.REFUNDED, OrderStatus.CANCELLED):
        raise PaymentNotCompletedError(f"Order is {order.status.value}")

    if gateway.mock_mode:
        if order is None:
            raise NotFoundError("Receipt not found")
        raise PaymentNotCompletedError("Payment not completed yet")

    verification = gateway.verify(reference)

    if order is None:
        order_id = verification.metadata.get("order_id")
        if order_id:
            try:
                order = repo.get_order_by_id(UUID(str(order_id)))
            except ValueError:
                order = None
    if order is None:
        raise NotFoundError("Receipt not found")

    if not verification.success:
        raise PaymentNotCompletedError("Payment not completed yet")

    if order.status == OrderStatus.PAID:
        return order

    if repo.update_order_status(order.id, OrderStatus.PAID):
        logger.info("order %s paid (redirect verification)", order.id)
    payment = repo.update_payment_status_by_reference(reference, PaymentStatus.PAID, verification.raw)
    db.commit()
    db.refresh(order)

    task = _issuance_task(order, payment.id if payment is not None else None, verification.metadata)
    if task is not None:
        enqueue(task)
    return order
