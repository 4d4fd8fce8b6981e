"""
Invoice PDF rendering with reportlab.
"""
from decimal import Decimal
from io import BytesIO
from typing import Optional

from reportlab.lib import colors
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from labbilling.schemas.billing_schema import Invoice


BRAND_COLOR = colors.HexColor("#2563eb")


def _usd(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def render_invoice_pdf(invoice: Invoice, client_name: Optional[str] = None, laboratory_name: str = "Laboratory Billing") -> bytes:
    """
    Render an invoice with its line items and totals.

    Args:
        invoice: Invoice including ``items``
        client_name: Bill-to name printed under the header
        laboratory_name: Title printed at the top of the page

    Returns:
        The PDF document as bytes
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=(8.5 * inch, 11 * inch))
    styles = getSampleStyleSheet()
    elements = []

    title_style = ParagraphStyle(
        "InvoiceTitle",
        parent=styles["Heading1"],
        fontSize=22,
        textColor=BRAND_COLOR,
        spaceAfter=20,
        alignment=1,
    )
    elements.append(Paragraph(laboratory_name, title_style))
    heading = f"Invoice {invoice.invoice_number or 'DRAFT'}"
    if invoice.invoice_type:
        heading += f" ({invoice.invoice_type.value})"
    elements.append(Paragraph(heading, styles["Heading2"]))
    elements.append(Spacer(1, 0.2 * inch))

    details = [
        f"<b>Bill To:</b> {client_name or 'N/A'}",
        f"<b>Status:</b> {invoice.status.value.title()}",
        f"<b>Issue Date:</b> {invoice.issue_date.isoformat() if invoice.issue_date else 'N/A'}",
        f"<b>Due Date:</b> {invoice.due_date.isoformat() if invoice.due_date else 'N/A'}",
    ]
    if invoice.billing_period_start and invoice.billing_period_end:
        details.append(
            f"<b>Billing Period:</b> {invoice.billing_period_start.isoformat()} to {invoice.billing_period_end.isoformat()}"
        )
    elements.append(Paragraph("<br/>".join(details), styles["Normal"]))
    elements.append(Spacer(1, 0.3 * inch))

    table_data = [["Accession", "Patient", "CPT", "Description", "Units", "Unit Price", "Total"]]
    for item in invoice.items:
        patient = " ".join(p for p in (item.patient_first_name, item.patient_last_name) if p)
        table_data.append([
            item.accession_number or "",
            patient,
            item.cpt_code,
            Paragraph(item.description or "", styles["BodyText"]),
            str(item.units),
            _usd(item.unit_price),
            _usd(item.total_price),
        ])

    table = Table(
        table_data,
        colWidths=[0.9 * inch, 1.2 * inch, 0.6 * inch, 2.2 * inch, 0.5 * inch, 0.9 * inch, 0.9 * inch],
        repeatRows=1,
    )
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("ALIGN", (4, 1), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ]))
    elements.append(table)
    elements.append(Spacer(1, 0.3 * inch))

    totals = (
        f"<b>Subtotal:</b> {_usd(invoice.subtotal)}<br/>"
        f"<b>Total:</b> {_usd(invoice.total_amount)}<br/>"
        f"<b>Paid:</b> {_usd(invoice.paid_amount)}<br/>"
        f"<b>Balance Due:</b> {_usd(invoice.balance_due)}"
    )
    elements.append(Paragraph(totals, styles["Normal"]))
    if invoice.notes:
        elements.append(Spacer(1, 0.2 * inch))
        elements.append(Paragraph(invoice.notes, styles["Italic"]))

    doc.build(elements)
    return buffer.getvalue()


__all__ = ["render_invoice_pdf"]
