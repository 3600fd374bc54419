# tixpay/services/issuance.py
import io
import logging
import secrets
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Dict, List, Optional, Set
from uuid import UUID

import qrcode
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from tixpay.config import Settings
from tixpay.errors import FatalReconciliationError, NotFoundError
from tixpay.metrics import (
    issuance_idempotency_hits, issuance_latency, notification_failures, tickets_issued_total,
)
from tixpay.models import (
    LedgerStatus, Order, OrderStatus, Payment, PaymentStatus, Ticket, TicketStatus,
)
from tixpay.repository import Repository
from tixpay.services.emails import organizer_notification_email, purchase_receipt_email
from tixpay.services.ledger import compute_ledger
from tixpay.services.mailer import Attachment, Mailer
from tixpay.services.receipts import build_receipt_pdf, receipt_file_name
from tixpay.services.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class IssuanceTask:
    order_id: UUID
    payment_id: Optional[UUID]
    ticket_type_id: UUID
    quantity: int
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_phone: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=8, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class TicketIssuer:
    """
    Idempotent unit of work run for every confirmed payment:

      1. load the order (pending orders are moved to paid first, mock checkout)
      2. if the order already has tickets, reuse them
      3. otherwise decrement inventory with one conditional update, then mint
         codes + QR images and insert the batch in the same transaction
      4. write the ledger entry unless one exists
      5. email buyer (with PDF receipt) and organizer, once per order

    Steps 2-4 can be replayed any number of times without a second batch of
    tickets, a second ledger entry or a second decrement.
    """

    def __init__(self, session_factory: sessionmaker, storage: Storage, mailer: Mailer, settings: Settings):
        self.session_factory = session_factory
        self.storage = storage
        self.mailer = mailer
        self.settings = settings

    def __call__(self, task: IssuanceTask) -> List[Ticket]:
        return self.issue(task)

    def issue(self, task: IssuanceTask) -> List[Ticket]:
        start = perf_counter()
        try:
            with self.session_factory() as db:
                repo = Repository(db)
                order = repo.get_order_with_relations(task.order_id)
                if order is None:
                    raise NotFoundError("Order not found for ticket issuance", context={"order_id": str(task.order_id)})

                if order.status in (OrderStatus.REFUNDED, OrderStatus.CANCELLED):
                    logger.warning("skipping issuance for %s order %s", order.status.value, order.id)
                    return []

                if order.status == OrderStatus.PENDING:
                    self._mark_paid(db, repo, order, task.payment_id)

                tickets = self._save_tickets(db, repo, order, task)
                self._update_ledger(db, repo, order)
                self._notify(db, repo, order, tickets)
                return tickets
        finally:
            issuance_latency.observe(perf_counter() - start)

    def _mark_paid(self, db: Session, repo: Repository, order: Order, payment_id: Optional[UUID]) -> None:
        repo.update_order_status(order.id, OrderStatus.PAID)
        payment = _find_payment(order, payment_id)
        if payment is not None and payment.status != PaymentStatus.PAID:
            repo.update_payment(payment, PaymentStatus.PAID)
        db.commit()
        logger.info("order %s marked paid by issuance", order.id)

    def _save_tickets(self, db: Session, repo: Repository, order: Order, task: IssuanceTask) -> List[Ticket]:
        existing = repo.list_tickets_for_order(order.id)
        if existing:
            issuance_idempotency_hits.labels("tickets").inc()
            logger.warning("order %s already has %d tickets; not minting again", order.id, len(existing))
            return existing

        ticket_type = repo.get_ticket_type(task.ticket_type_id)
        if ticket_type is None or ticket_type.product_id != order.product_id:
            raise FatalReconciliationError(
                "Ticket type does not belong to the paid order",
                context={"order_id": str(order.id), "ticket_type_id": str(task.ticket_type_id)},
            )

        context = {"order_id": str(order.id), "ticket_type_id": str(task.ticket_type_id), "quantity": task.quantity}
        if not repo.adjust_ticket_inventory(task.ticket_type_id, -task.quantity):
            db.rollback()
            raise FatalReconciliationError("Insufficient inventory for a paid order", context=context)

        try:
            seen: Set[str] = set()
            batch = [self._mint(repo, order, task, seen) for _ in range(task.quantity)]
            tickets = repo.create_tickets(batch)
            db.commit()
        except Exception:
            # the decrement is rolled back together with the batch
            db.rollback()
            raise

        tickets_issued_total.inc(len(tickets))
        logger.info("issued %d tickets for order %s", len(tickets), order.id)
        return tickets

    def _mint(self, repo: Repository, order: Order, task: IssuanceTask, seen: Set[str]) -> Ticket:
        code = self._new_code()
        while code in seen or repo.ticket_code_exists(code):
            code = self._new_code()
        seen.add(code)

        qr_url = self.storage.upload(render_qr_png(code), f"orders/{order.id}/{code}.png")
        return Ticket(
            order_id=order.id,
            product_id=order.product_id,
            ticket_type_id=task.ticket_type_id,
            ticket_code=code,
            qr_url=qr_url,
            status=TicketStatus.UNUSED,
            attendee_name=order.buyer_name or task.buyer_name,
            attendee_email=order.buyer_email or task.buyer_email,
            attendee_phone=order.buyer_phone or task.buyer_phone,
        )

    def _new_code(self) -> str:
        return f"{self.settings.ticket_code_prefix}-{secrets.token_hex(5).upper()}"

    def _update_ledger(self, db: Session, repo: Repository, order: Order) -> None:
        if repo.get_ledger_entry_for_order(order.id) is not None:
            issuance_idempotency_hits.labels("ledger").inc()
            return

        split = compute_ledger(order.total_cents, self.settings.gateway_fee_rate, self.settings.platform_fee_rate)
        try:
            repo.create_ledger_entry(
                order_id=order.id,
                platform_fee_cents=split.platform_fee,
                gateway_fee_cents=split.gateway_fee,
                organizer_net_cents=split.organizer_net,
                currency=order.currency,
                status=LedgerStatus.PENDING,
            )
            db.commit()
        except IntegrityError:
            # another process wrote it between the check and the insert
            db.rollback()
            issuance_idempotency_hits.labels("ledger").inc()
            return
        logger.info(
            "ledger for order %s: gross=%d gateway=%d platform=%d net=%d",
            order.id, order.total_cents, split.gateway_fee, split.platform_fee, split.organizer_net,
        )

    def _notify(self, db: Session, repo: Repository, order: Order, tickets: List[Ticket]) -> None:
        if order.notified_at is not None:
            issuance_idempotency_hits.labels("notifications").inc()
            return

        organizer = repo.get_organizer(order.organizer_id)
        product = repo.get_product_with_ticket_types(order.product_id)
        # end the read transaction; on SQLite it holds the write lock through PDF + SMTP otherwise
        db.commit()
        if organizer is None or product is None:
            logger.error("cannot notify for order %s: organizer or product missing", order.id)
            return

        try:
            content = purchase_receipt_email(order, organizer, product, tickets)
            receipt = Attachment(
                filename=receipt_file_name(order),
                content=build_receipt_pdf(order, organizer, product, tickets),
            )
            self.mailer.send(order.buyer_email, content.subject, content.html, [receipt])
        except Exception:
            notification_failures.labels("buyer_receipt").inc()
            logger.exception("buyer receipt email failed for order %s", order.id)
            return

        repo.mark_order_notified(order.id)
        db.commit()

        try:
            content = organizer_notification_email(order, organizer, product, len(tickets))
            self.mailer.send(organizer.email, content.subject, content.html)
        except Exception:
            notification_failures.labels("organizer").inc()
            logger.exception("organizer notification failed for order %s", order.id)


def _find_payment(order: Order, payment_id: Optional[UUID]) -> Optional[Payment]:
    payments = order.payments or []
    if payment_id is not None:
        for payment in payments:
            if payment.id == payment_id:
                return payment
    return payments[-1] if payments else None
