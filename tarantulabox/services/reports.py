from __future__ import annotations

import io
from datetime import datetime

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .. import models
from .rollover import resolve_zone


def build_schedule_report_pdf(
    owner: models.User,
    tarantulas: list[models.Tarantula],
    reminders: list[models.AuditLog],
    generated_at: datetime,
) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        leftMargin=36,
        rightMargin=36,
        topMargin=36,
        bottomMargin=36,
    )
    styles = getSampleStyleSheet()
    story: list = []

    story.append(Paragraph("Feeding Schedule", styles["Title"]))
    story.append(Paragraph(f"Keeper: {owner.email}", styles["Normal"]))
    story.append(
        Paragraph(f"Generated: {generated_at.isoformat(timespec='minutes')}", styles["Normal"])
    )
    story.append(Spacer(1, 12))

    story.append(Paragraph("Upcoming Feedings", styles["Heading2"]))
    schedule_data = [["Name", "Species", "Next Feed (local)", "Every", "Reminders"]]
    if tarantulas:
        for pet in tarantulas:
            local = pet.next_feed_date.astimezone(resolve_zone(pet.timezone))
            schedule_data.append(
                [
                    pet.name,
                    pet.species,
                    f"{local.strftime('%Y-%m-%d %H:%M')} {pet.timezone}",
                    f"{pet.feed_interval_days} d",
                    "On" if pet.notify else "Off",
                ]
            )
    else:
        schedule_data.append(["No tarantulas yet.", "-", "-", "-", "-"])
    story.append(_styled_table(schedule_data, col_widths=[100, 120, 170, 50, 60]))
    story.append(Spacer(1, 12))

    story.append(Paragraph("Recent Reminders", styles["Heading2"]))
    reminder_data = [["Sent At (UTC)", "Message"]]
    if reminders:
        for entry in reminders:
            reminder_data.append(
                [
                    entry.created_at.isoformat(timespec="minutes"),
                    Paragraph(entry.details or "-", styles["BodyText"]),
                ]
            )
    else:
        reminder_data.append(["No reminders sent.", "-"])
    story.append(_styled_table(reminder_data, col_widths=[140, 360]))

    doc.build(story)
    buffer.seek(0)
    return buffer.getvalue()


def _styled_table(data: list[list], col_widths: list[int] | None = None) -> Table:
    table = Table(data, hAlign="LEFT", colWidths=col_widths)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#d9cbb8")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor("#1f1b16")),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#d9cbb8")),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                (
                    "ROWBACKGROUNDS",
                    (0, 1),
                    (-1, -1),
                    [colors.HexColor("#fbf7f1"), colors.HexColor("#f2ebe0")],
                ),
            ]
        )
    )
    return table
