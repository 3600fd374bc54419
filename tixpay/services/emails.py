# tixpay/services/emails.py
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from jinja2 import DictLoader, Environment, select_autoescape

from tixpay.models import Order, Organizer, Product, Ticket

BRAND_COLOR = "#6B21A8"

TEMPLATES = {
    "purchase_receipt.html": r"""
<div style="font-family: 'Inter', sans-serif; color: #111827;">
  <h2 style="color: {{ brand_color }};">Your tickets for {{ product.title }}</h2>
  <p>Hi {{ order.buyer_name or "there" }},</p>
  <p>Thanks for your purchase from {{ organizer.name }}. Your payment of <strong>{{ total }}</strong> was received.</p>
  <p>Reference: <strong>{{ order.gateway_reference }}</strong></p>
  <ul>
  {% for ticket in tickets %}
    <li>{{ ticket.ticket_code }}{% if ticket.qr_url %} &middot; <a href="{{ ticket.qr_url }}">QR code</a>{% endif %}</li>
  {% endfor %}
  </ul>
  <p>Your receipt is attached. Show the QR code at the entrance.</p>
</div>
""",
    "organizer_notification.html": r"""
<div style="font-family: 'Inter', sans-serif; color: #111827;">
  <h2 style="color: {{ brand_color }};">New sale: {{ product.title }}</h2>
  <p>{{ order.buyer_name }} ({{ order.buyer_email }}) bought {{ ticket_count }} ticket(s) for {{ total }}.</p>
  <p>Order {{ order.id }} &middot; reference {{ order.gateway_reference }}</p>
</div>
""",
    "refund_notification.html": r"""
<div style="font-family: 'Inter', sans-serif; color: #111827;">
  <h2 style="color: {{ brand_color }};">Refund Confirmation</h2>
  <p>Hi {{ order.buyer_name or "there" }},</p>
  <p>Your order <strong>{{ order.id }}</strong> placed on {{ placed_on }} has been refunded.</p>
  <p><strong>Amount:</strong> {{ total }}</p>
  {% if reason %}<p><strong>Reason:</strong> {{ reason }}</p>{% endif %}
  <p>Refunds typically take 5-10 business days to reflect, depending on your bank.</p>
  <p>If you have questions, contact {{ organizer.contact_person or organizer.name }} via {{ organizer.email }}.</p>
</div>
""",
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"]))


@dataclass
class EmailContent:
    subject: str
    html: str


def format_minor(amount_minor: int, currency: str) -> str:
    return f"{currency} {amount_minor / 100:,.2f}"


def format_date(value: Optional[datetime]) -> str:
    return (value or datetime.now()).strftime("%d %b %Y, %H:%M")


def purchase_receipt_email(order: Order, organizer: Organizer, product: Product, tickets: Sequence[Ticket]) -> EmailContent:
    html = env.get_template("purchase_receipt.html").render(
        order=order, organizer=organizer, product=product, tickets=tickets,
        total=format_minor(order.total_cents, order.currency), brand_color=BRAND_COLOR,
    )
    return EmailContent(subject=f"Your tickets for {product.title}", html=html)


def organizer_notification_email(order: Order, organizer: Organizer, product: Product, ticket_count: int) -> EmailContent:
    html = env.get_template("organizer_notification.html").render(
        order=order, organizer=organizer, product=product, ticket_count=ticket_count,
        total=format_minor(order.total_cents, order.currency), brand_color=BRAND_COLOR,
    )
    return EmailContent(subject=f"New ticket sale for {product.title}", html=html)


def refund_notification_email(order: Order, organizer: Organizer, reason: Optional[str]) -> EmailContent:
    html = env.get_template("refund_notification.html").render(
        order=order, organizer=organizer, reason=reason,
        total=format_minor(order.total_cents, order.currency),
        placed_on=format_date(order.created_at), brand_color=BRAND_COLOR,
    )
    return EmailContent(subject=f"Refund processed for order {order.id}", html=html)
