import io
from datetime import datetime
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from checkout.errors import InvoiceRenderError
from checkout.schemas import Order

MARGIN = 20 * mm
LINE = 6 * mm


def money(value) -> str:
    return f"KES {float(value or 0):,.2f}"


class InvoiceRenderer:
    def __init__(self, brand_name: str):
        self.brand_name = brand_name

    def render(
        self,
        order: Order,
        amount_paid: Optional[float] = None,
        receipt_number: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> bytes:
        """Render ``order`` as an A4 PDF invoice and return the document bytes."""
        try:
            return self._render(order, amount_paid, receipt_number, issued_at or datetime.now())
        except Exception as e:
            raise InvoiceRenderError(f"Could not render invoice {order.order_id}: {e}") from e

    def _render(self, order, amount_paid, receipt_number, issued_at) -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"Invoice {order.order_id}")
        width, height = A4
        y = height - MARGIN

        def line(text, size=11, font="Helvetica", align="left"):
            nonlocal y
            if y < MARGIN:
                pdf.showPage()
                y = height - MARGIN
            pdf.setFont(font, size)
            if align == "right":
                pdf.drawRightString(width - MARGIN, y, text)
            elif align == "center":
                pdf.drawCentredString(width / 2, y, text)
            else:
                pdf.drawString(MARGIN, y, text)
            y -= LINE if size <= 12 else LINE * 1.5

        line(self.brand_name, size=20, font="Helvetica-Bold")
        line(f"Invoice: {order.order_id}")
        line(f"Date: {issued_at:%Y-%m-%d %H:%M}")
        y -= LINE

        customer = order.customer
        line("Bill To:", font="Helvetica-Bold")
        line(customer.name or "Customer")
        if customer.email:
            line(f"Email: {customer.email}")
        if customer.phone:
            line(f"Phone: {customer.phone}")
        if customer.address:
            line(f"Address: {customer.address}")
        y -= LINE

        line("Items:", font="Helvetica-Bold")
        for item in order.items:
            line(f"{item.name} - {item.quantity} x {money(item.price)} = {money(item.line_total)}", size=10)
        y -= LINE

        line(f"Subtotal: {money(order.subtotal)}", align="right")
        line(f"Shipping: {money(order.shipping)}", align="right")
        line(f"TOTAL: {money(order.total)}", size=14, font="Helvetica-Bold", align="right")
        if amount_paid is not None:
            line(f"Paid via M-Pesa: {money(amount_paid)}", align="right")
        if receipt_number:
            line(f"M-Pesa receipt: {receipt_number}", align="right")
        y -= LINE

        line(f"Thank you for shopping with {self.brand_name}!", size=12, align="center")

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()
