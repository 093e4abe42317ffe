"""Payment receipt rendering.

`ReconciliationService` only depends on the `ReceiptRenderer` protocol: one
obligation plus one ledger entry in, document bytes out.
"""

from io import BytesIO
from typing import Protocol

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from learnpay.services.reconciliation.schemas import LedgerEntryView, ObligationView


class ReceiptRenderer(Protocol):
    media_type: str

    def render(self, obligation: ObligationView, entry: LedgerEntryView) -> bytes: ...


def receipt_rows(obligation: ObligationView, entry: LedgerEntryView) -> list[list[str]]:
    """Label/value rows shown on a receipt, in display order."""

    rows = [
        ["Receipt number", entry.receipt_number],
        ["Date", entry.created_at.strftime("%d %B %Y") if entry.created_at else ""],
        ["Learner", obligation.learner_id],
        ["Item", obligation.title or obligation.kind.replace("_", " ").title()],
    ]
    if obligation.total_installments > 1:
        rows.append(["Installment", f"{obligation.installment_number} of {obligation.total_installments}"])
    rows.append(["Channel", entry.channel])
    if entry.reference:
        rows.append(["Reference", entry.reference])
    if entry.remote_order_id:
        rows.append(["Order ID", entry.remote_order_id])
    if entry.remote_payment_id:
        rows.append(["Payment ID", entry.remote_payment_id])
    rows.extend(
        [
            ["Amount received", f"{entry.currency} {entry.amount}"],
            ["Total fee", f"{obligation.currency} {obligation.total_amount}"],
            ["Paid to date", f"{obligation.currency} {obligation.amount_paid}"],
            ["Balance due", f"{obligation.currency} {obligation.due_amount}"],
        ]
    )
    return rows


class PdfReceiptRenderer:
    """A4 receipt built with reportlab platypus."""

    media_type = "application/pdf"

    def __init__(self, issuer: str = "LearnPay") -> None:
        self.issuer = issuer

    def render(self, obligation: ObligationView, entry: LedgerEntryView) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=A4, title=f"Receipt {entry.receipt_number}")
        styles = getSampleStyleSheet()

        details = Table([["Field", "Value"], *receipt_rows(obligation, entry)], colWidths=[150, 300])
        details.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("FONTNAME", (0, 1), (0, -1), "Helvetica-Bold"),
                    ("BOTTOMPADDING", (0, 0), (-1, 0), 10),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
                ]
            )
        )
        story = [
            Paragraph(self.issuer, styles["Title"]),
            Paragraph("Payment Receipt", styles["Heading2"]),
            Spacer(1, 12),
            details,
            Spacer(1, 24),
            Paragraph("This is a computer-generated receipt. No signature required.", styles["Normal"]),
        ]
        doc.build(story)
        return buffer.getvalue()
