# tixpay/services/receipts.py
import io
from typing import Sequence

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from tixpay.models import Order, Organizer, Product, Ticket
from tixpay.services.emails import format_date, format_minor

_FONT_REGULAR = "Helvetica"
_FONT_BOLD = "Helvetica-Bold"


def receipt_file_name(order: Order) -> str:
    return f"receipt-{order.id}.pdf"


def build_receipt_pdf(order: Order, organizer: Organizer, product: Product, tickets: Sequence[Ticket]) -> bytes:
    """
    Render the receipt (continuing onto new pages for long ticket lists) and return the PDF bytes.
    """
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    c.setTitle(f"Receipt {order.id}")
    c.setAuthor(organizer.name)
    _, height = A4

    x = 20 * mm
    y = height - 20 * mm
    line = 6 * mm

    def write(text: str, bold: bool = False, size: int = 11):
        nonlocal y
        if y < 25 * mm:
            c.showPage()
            y = height - 20 * mm
        c.setFont(_FONT_BOLD if bold else _FONT_REGULAR, size)
        c.drawString(x, y, text)
        y -= line

    # Header
    write(organizer.name, bold=True, size=16)
    if organizer.email:
        write(organizer.email)
    if organizer.phone:
        write(organizer.phone)
    y -= line

    write("Receipt", bold=True, size=14)
    write(f"Order ID: {order.id}")
    if order.gateway_reference:
        write(f"Payment Reference: {order.gateway_reference}")
    write(f"Date: {format_date(order.created_at)}")
    y -= line

    write("Billed To", bold=True)
    write(order.buyer_name)
    write(order.buyer_email)
    if order.buyer_phone:
        write(order.buyer_phone)
    y -= line

    write("Event Details", bold=True)
    write(product.title)
    if product.start_at:
        write(f"Starts: {format_date(product.start_at)}")
    if product.venue_name:
        write(f"Venue: {product.venue_name}")
    y -= line

    write("Tickets", bold=True)
    if not tickets:
        write("Tickets are being generated. You will receive them shortly.")
    for index, ticket in enumerate(tickets, start=1):
        write(f"{index}. Code: {ticket.ticket_code}")
        write(f"   Attendee: {ticket.attendee_name or order.buyer_name}")
    y -= line

    write("Summary", bold=True)
    write(f"Tickets Purchased: {len(tickets)}")
    write(f"Amount Paid: {format_minor(order.total_cents, order.currency)}")

    c.setFont(_FONT_REGULAR, 9)
    c.drawString(x, 15 * mm, "Thank you for choosing TixPay.")

    c.showPage()
    c.save()
    pdf = buffer.getvalue()
    buffer.close()
    return pdf
