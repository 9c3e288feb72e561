from __future__ import annotations

import csv
import io
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from expense_tracker.ai_assistant import category_label, format_amount
from expense_tracker.budget_engine import Entry, summarize

UTF8_BOM = "\ufeff"
CSV_HEADER = ["Date", "Category", "Description", "Amount"]
MAX_DESCRIPTION_LENGTH = 40


def render_csv(entries: Sequence[Entry]) -> str:
    """CSV text prefixed with a BOM so spreadsheet apps detect UTF-8."""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow(
            [
                entry.date.isoformat(),
                entry.category,
                entry.description or "",
                _plain_amount(entry.amount),
            ]
        )
    return UTF8_BOM + output.getvalue()


def render_pdf(
    entries: Sequence[Entry],
    title: str,
    currency: str,
    generated_on: Optional[date] = None,
) -> bytes:
    stats = summarize(entries)
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, title=title)
    styles = getSampleStyleSheet()
    elements = [
        Paragraph(title, styles["Title"]),
        Paragraph(f"Generated on {(generated_on or date.today()).isoformat()}", styles["Normal"]),
        Spacer(1, 0.3 * inch),
        Paragraph("Summary", styles["Heading2"]),
        Paragraph(f"Total: {format_amount(stats.total, currency)}", styles["Normal"]),
        Paragraph(f"Transactions: {stats.count}", styles["Normal"]),
    ]
    if stats.count:
        average = stats.total / stats.count
        elements.append(
            Paragraph(f"Average per transaction: {format_amount(average, currency)}", styles["Normal"])
        )
    elements.append(Spacer(1, 0.2 * inch))

    if stats.by_category:
        elements.append(Paragraph("By category", styles["Heading2"]))
        category_rows = [["Category", "Amount", "Share"]]
        for category, amount in stats.by_category.items():
            share = (amount / stats.total * 100).quantize(Decimal("0.1")) if stats.total else 0
            category_rows.append(
                [category_label(category), format_amount(amount, currency), f"{share}%"]
            )
        category_table = Table(category_rows, colWidths=[2.5 * inch, 2 * inch, 1 * inch])
        category_table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2c3e50")),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ]
            )
        )
        elements.append(category_table)
        elements.append(Spacer(1, 0.2 * inch))

    elements.append(Paragraph("Transactions", styles["Heading2"]))
    rows = [["Date", "Category", "Description", "Amount"]]
    for entry in entries:
        rows.append(
            [
                entry.date.isoformat(),
                category_label(entry.category),
                _truncate(entry.description or "-"),
                format_amount(entry.amount, currency),
            ]
        )
    rows.append(["", "", "Total", format_amount(stats.total, currency)])
    table = Table(rows, colWidths=[1.1 * inch, 1.4 * inch, 2.6 * inch, 1.5 * inch], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2c3e50")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("ROWBACKGROUNDS", (0, 1), (-1, -2), [colors.white, colors.HexColor("#f8f9fa")]),
                ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("ALIGN", (3, 1), (3, -1), "RIGHT"),
            ]
        )
    )
    elements.append(table)
    doc.build(elements)
    return buffer.getvalue()


def _plain_amount(amount: Decimal) -> str:
    value = Decimal(amount)
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return str(value)


def _truncate(text: str) -> str:
    if len(text) <= MAX_DESCRIPTION_LENGTH:
        return text
    return text[: MAX_DESCRIPTION_LENGTH - 3] + "..."
