# tixpay/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, Float, ForeignKey, Integer,
    String, CHAR, JSON, Uuid, func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    INITIALIZED = "initialized"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TicketStatus(str, enum.Enum):
    UNUSED = "unused"
    USED = "used"
    CANCELLED = "cancelled"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    SETTLED = "settled"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


def now_utc():
    return datetime.now(timezone.utc)


def _enum(cls, name):
    return Enum(cls, name=name, values_callable=lambda e: [m.value for m in e])


class Organizer(Base):
    __tablename__ = "organizers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    contact_person = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    # bank_code / account_number / account_name
    bank_details = Column(JSON, nullable=False, default=dict)
    subaccount_code = Column(String, nullable=True)
    split_code = Column(String, nullable=True)
    percentage_charge = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=now_utc)

    products = relationship("Product", back_populates="organizer")


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organizer_id = Column(Uuid, ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    venue_name = Column(String, nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    organizer = relationship("Organizer", back_populates="products")
    ticket_types = relationship("TicketType", back_populates="product")


class TicketType(Base):
    __tablename__ = "ticket_types"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False, default="NGN")
    quantity_total = Column(Integer, nullable=False)
    quantity_available = Column(Integer, nullable=False)
    sales_start = Column(DateTime(timezone=True), nullable=True)
    sales_end = Column(DateTime(timezone=True), nullable=True)
    sales_limit_per_customer = Column(Integer, nullable=True)

    product = relationship("Product", back_populates="ticket_types")

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ticket_types_price_nonneg"),
        CheckConstraint(
            "quantity_available >= 0 AND quantity_available <= quantity_total",
            name="ticket_types_inventory_bounds",
        ),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organizer_id = Column(Uuid, ForeignKey("organizers.id"), nullable=False)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    total_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    buyer_phone = Column(String, nullable=True)
    gateway_reference = Column(String, nullable=True, unique=True)
    redirect_url = Column(String, nullable=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="orders_total_nonneg"),
    )

    tickets = relationship("Ticket", back_populates="order", order_by="Ticket.created_at")
    payments = relationship("Payment", back_populates="order")
    ledger_entry = relationship("LedgerEntry", back_populates="order", uselist=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    gateway = Column(String, nullable=False, default="paystack")
    gateway_reference = Column(String, nullable=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.INITIALIZED)
    raw_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=now_utc)

    order = relationship("Order", back_populates="payments")


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    ticket_type_id = Column(Uuid, ForeignKey("ticket_types.id"), nullable=False)
    ticket_code = Column(String, nullable=False, unique=True)
    qr_url = Column(String, nullable=True)
    status = Column(_enum(TicketStatus, "ticket_status"), nullable=False, default=TicketStatus.UNUSED)
    attendee_name = Column(String, nullable=True)
    attendee_email = Column(String, nullable=True)
    attendee_phone = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    order = relationship("Order", back_populates="tickets")


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    platform_fee_cents = Column(Integer, nullable=False)
    gateway_fee_cents = Column(Integer, nullable=False)
    organizer_net_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    status = Column(_enum(LedgerStatus, "ledger_status"), nullable=False, default=LedgerStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=now_utc)

    order = relationship("Order", back_populates="ledger_entry")

    __table_args__ = (
        CheckConstraint(
            "platform_fee_cents >= 0 AND gateway_fee_cents >= 0",
            name="ledger_fees_nonneg",
        ),
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    signature = Column(String, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
