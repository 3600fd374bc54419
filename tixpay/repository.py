# tixpay/repository.py
import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from tixpay.models import (
    LedgerEntry, LedgerStatus, Order, OrderStatus, Organizer, Payment, PaymentStatus,
    Product, Ticket, TicketType, WebhookEvent, now_utc,
)

logger = logging.getLogger(__name__)

# Allowed predecessors for each target status. paid -> pending is never allowed.
ORDER_TRANSITIONS = {
    OrderStatus.PAID: (OrderStatus.PENDING,),
    OrderStatus.REFUNDED: (OrderStatus.PENDING, OrderStatus.PAID),
    OrderStatus.CANCELLED: (OrderStatus.PENDING,),
}


class Repository:
    """Data access for orders, payments, tickets, ledger entries and webhook events.

    Methods flush but do not commit; the calling service owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # organizers / products

    def get_organizer(self, organizer_id: UUID) -> Optional[Organizer]:
        return self.db.get(Organizer, organizer_id)

    def update_organizer_settlement(self, organizer_id: UUID, **fields: Any) -> None:
        allowed = {"subaccount_code", "split_code", "percentage_charge"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"not settlement fields: {sorted(unknown)}")
        self.db.execute(
            update(Organizer).where(Organizer.id == organizer_id).values(updated_at=now_utc(), **fields)
        )
        self.db.flush()

    def get_product_with_ticket_types(self, product_id: UUID) -> Optional[Product]:
        return self.db.execute(
            select(Product).where(Product.id == product_id).options(selectinload(Product.ticket_types))
        ).scalar_one_or_none()

    def get_ticket_type(self, ticket_type_id: UUID) -> Optional[TicketType]:
        return self.db.get(TicketType, ticket_type_id)

    def adjust_ticket_inventory(self, ticket_type_id: UUID, delta: int) -> bool:
        """Atomically add ``delta`` to quantity_available.

        A single conditional UPDATE: it matches no row (and returns False) when the
        result would fall below zero or rise above quantity_total.
        """
        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .where(TicketType.quantity_available + delta >= 0)
            .where(TicketType.quantity_available + delta <= TicketType.quantity_total)
            .values(quantity_available=TicketType.quantity_available + delta)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    # orders

    def create_order(self, **fields: Any) -> Order:
        order = Order(status=OrderStatus.PENDING, **fields)
        self.db.add(order)
        self.db.flush()
        return order

    def get_order_by_id(self, order_id: UUID) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def get_order_by_reference(self, reference: str) -> Optional[Order]:
        return self.db.execute(
            select(Order).where(Order.gateway_reference == reference)
        ).scalar_one_or_none()

    def get_order_with_relations(self, order_id: UUID) -> Optional[Order]:
        return self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.tickets),
                selectinload(Order.payments),
                selectinload(Order.ledger_entry),
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def set_order_reference(self, order_id: UUID, reference: str) -> None:
        self.db.execute(
            update(Order).where(Order.id == order_id)
            .values(gateway_reference=reference, updated_at=now_utc())
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()

    def update_order_status(self, order_id: UUID, status: OrderStatus) -> bool:
        """Compare-and-set transition. Returns True only for the caller that moved it."""
        predecessors = ORDER_TRANSITIONS.get(status, ())
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(predecessors))
            .values(status=status, updated_at=now_utc())
            .execution_options(synchronize_session="fetch")
        )
        moved = result.rowcount == 1
        if not moved:
            logger.debug("order %s not moved to %s", order_id, status.value)
        return moved

    def mark_order_notified(self, order_id: UUID) -> None:
        self.db.execute(
            update(Order).where(Order.id == order_id)
            .values(notified_at=now_utc())
            .execution_options(synchronize_session="fetch")
        )

    # payments

    def create_payment_record(
        self,
        order_id: UUID,
        amount_cents: int,
        currency: str,
        gateway: str = "paystack",
        gateway_reference: Optional[str] = None,
        status: PaymentStatus = PaymentStatus.INITIALIZED,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        payment = Payment(
            order_id=order_id,
            gateway=gateway,
            gateway_reference=gateway_reference,
            amount_cents=amount_cents,
            currency=currency,
            status=status,
            raw_response=raw_response,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def update_payment(self, payment: Payment, status: PaymentStatus, **fields: Any) -> Payment:
        payment.status = status
        for key, value in fields.items():
            setattr(payment, key, value)
        self.db.flush()
        return payment

    def update_payment_status_by_reference(
        self, reference: str, status: PaymentStatus, raw_response: Optional[Dict[str, Any]] = None,
    ) -> Optional[Payment]:
        payment = self.db.execute(
            select(Payment).where(Payment.gateway_reference == reference)
            .order_by(Payment.created_at.desc())
        ).scalars().first()
        if payment is None:
            return None
        payment.status = status
        if raw_response is not None:
            payment.raw_response = raw_response
        self.db.flush()
        return payment

    # tickets

    def list_tickets_for_order(self, order_id: UUID) -> List[Ticket]:
        return list(self.db.execute(
            select(Ticket).where(Ticket.order_id == order_id).order_by(Ticket.created_at)
        ).scalars())

    def ticket_code_exists(self, code: str) -> bool:
        return self.db.execute(
            select(Ticket.id).where(Ticket.ticket_code == code)
        ).first() is not None

    def create_tickets(self, tickets: Iterable[Ticket]) -> List[Ticket]:
        batch = list(tickets)
        self.db.add_all(batch)
        self.db.flush()
        return batch

    # ledger

    def get_ledger_entry_for_order(self, order_id: UUID) -> Optional[LedgerEntry]:
        return self.db.execute(
            select(LedgerEntry).where(LedgerEntry.order_id == order_id)
        ).scalar_one_or_none()

    def create_ledger_entry(self, **fields: Any) -> LedgerEntry:
        entry = LedgerEntry(**fields)
        self.db.add(entry)
        self.db.flush()
        return entry

    def update_ledger_status(self, order_id: UUID, status: LedgerStatus) -> None:
        self.db.execute(
            update(LedgerEntry).where(LedgerEntry.order_id == order_id)
            .values(status=status, updated_at=now_utc())
            .execution_options(synchronize_session="fetch")
        )

    def list_ledger_entries_for_organizer(self, organizer_id: UUID) -> List[LedgerEntry]:
        return list(self.db.execute(
            select(LedgerEntry)
            .join(Order, Order.id == LedgerEntry.order_id)
            .where(Order.organizer_id == organizer_id)
            .order_by(LedgerEntry.created_at.desc())
        ).scalars())

    # webhook log

    def record_webhook_event(
        self, gateway: str, event_type: str, payload: Dict[str, Any], signature: Optional[str] = None,
    ) -> WebhookEvent:
        row = WebhookEvent(
            gateway=gateway, event_type=event_type, payload=payload, signature=signature,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def mark_webhook_processed(self, webhook_id: int) -> None:
        self.db.execute(
            update(WebhookEvent).where(WebhookEvent.id == webhook_id)
            .values(processed=True, processed_at=now_utc())
        )
