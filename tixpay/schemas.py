import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tixpay.models import LedgerStatus, OrderStatus, TicketStatus

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CheckoutRequest(BaseModel):
    organizer_id: UUID
    product_id: UUID
    ticket_type_id: UUID
    quantity: int = Field(..., ge=1, le=10, description="Tickets in this checkout, 1-10")
    buyer_name: str = Field(..., min_length=1)
    buyer_email: str = Field(..., pattern=EMAIL_PATTERN)
    buyer_phone: Optional[str] = None
    redirect_url: Optional[str] = Field(None, pattern=r"^https?://")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutSessionOut(CamelModel):
    redirect_url: str
    reference: str
    amount: int
    currency: str


class TicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_type_id: UUID
    ticket_code: str
    qr_url: Optional[str] = None
    status: TicketStatus
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organizer_id: UUID
    product_id: UUID
    total_cents: int
    currency: str
    status: OrderStatus
    gateway_reference: Optional[str] = None


class OrderDetail(OrderOut):
    buyer_name: str
    buyer_email: str
    tickets: List[TicketOut] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    platform_fee_cents: int
    gateway_fee_cents: int
    organizer_net_cents: int
    currency: str
    status: LedgerStatus


class LedgerSummaryOut(BaseModel):
    organizer_id: UUID
    pending_cents: int
    settled_cents: int
    total_platform_fees: int
    total_gateway_fees: int
    currency: str


class BankAccountOut(CamelModel):
    account_name: str
    account_number: str
    is_mock: bool


# Inbound gateway events

class WebhookEnvelope(BaseModel):
    event: str = Field(..., min_length=1)
    data: Dict[str, Any]


class Customer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class ChargeMetadata(BaseModel):
    # The gateway adds its own keys (custom_fields, referrer, ...)
    model_config = ConfigDict(extra="allow")

    order_id: Optional[UUID] = None
    ticket_type_id: Optional[UUID] = Field(
        None, validation_alias=AliasChoices("ticket_type_id", "ticketTypeId"),
    )
    quantity: int = Field(1, ge=1)
    buyer_name: Optional[str] = None
    buyer_phone: Optional[str] = None


class ChargeData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reference: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("reference", "transaction_reference"),
    )
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    # kept loose: a bad metadata blob must not stop the paid transition (see issuance_metadata)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer: Optional[Customer] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _decode_metadata(cls, value):
        # The gateway sends "" when no metadata was attached, and sometimes a JSON string
        if value in (None, ""):
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return {}
        return value if isinstance(value, dict) else {}

    @field_validator("customer", mode="before")
    @classmethod
    def _decode_customer(cls, value):
        return value if isinstance(value, dict) else None


def issuance_metadata(metadata: Dict[str, Any]) -> ChargeMetadata:
    """Strictly decode the fields issuance needs. Raises pydantic's ValidationError."""
    return ChargeMetadata.model_validate(metadata)


class ChargeSuccessEvent(BaseModel):
    event: Literal["charge.success"]
    data: ChargeData


class ChargeRefundEvent(BaseModel):
    event: Literal["charge.refund", "charge.refunded"]
    data: ChargeData


class UnknownEvent(BaseModel):
    event: str
    data: Dict[str, Any]


GatewayEvent = Union[ChargeSuccessEvent, ChargeRefundEvent, UnknownEvent]

_EVENT_TYPES = {
    "charge.success": ChargeSuccessEvent,
    "charge.refund": ChargeRefundEvent,
    "charge.refunded": ChargeRefundEvent,
}


def parse_gateway_event(envelope: WebhookEnvelope) -> GatewayEvent:
    """Decode an envelope into its typed variant. Raises pydantic's ValidationError for
    a known event whose data does not match."""
    model = _EVENT_TYPES.get(envelope.event)
    if model is None:
        return UnknownEvent(event=envelope.event, data=envelope.data)
    return model.model_validate(envelope.model_dump())
