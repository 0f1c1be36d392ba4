from __future__ import annotations

from pathlib import Path

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from records_sync.domain.sync_models import QuarantineReport, SyncQueueEntry

TITLE_TEXT = "Sync queue quarantine report"
EMPTY_TEXT = "There are no quarantined entries."
_HEADER = ["Entry", "Entity", "Operation", "Attempts", "Created", "Last error"]
_MAX_ERROR_CHARS = 160


class QuarantinePdfReportlab:
    def render(self, report: QuarantineReport, destination: Path) -> Path:
        return build_quarantine_pdf(report, destination)


def build_quarantine_pdf(report: QuarantineReport, destination: Path) -> Path:
    destination = _ensure_pdf_extension(Path(destination))
    destination.parent.mkdir(parents=True, exist_ok=True)

    doc = SimpleDocTemplate(
        str(destination),
        pagesize=landscape(A4),
        topMargin=1.5 * cm,
        bottomMargin=1.5 * cm,
        leftMargin=1.5 * cm,
        rightMargin=1.5 * cm,
        title=TITLE_TEXT,
    )

    styles = getSampleStyleSheet()
    styles.add(
        ParagraphStyle(
            name="Cell",
            parent=styles["BodyText"],
            fontSize=8,
            leading=10,
        )
    )

    story = [
        Paragraph(TITLE_TEXT, styles["Title"]),
        Paragraph(_summary_line(report), styles["BodyText"]),
        Spacer(1, 0.4 * cm),
    ]
    if report.is_empty:
        story.append(Paragraph(EMPTY_TEXT, styles["BodyText"]))
    else:
        story.append(_build_table(report, styles["Cell"]))

    doc.build(story)
    return destination


def _summary_line(report: QuarantineReport) -> str:
    generated = report.generated_at.strftime("%Y-%m-%d %H:%M UTC")
    return (
        f"Generated {generated}. {len(report.entries)} entries reached "
        f"{report.max_attempts} attempts and will not be retried automatically."
    )


def _build_table(report: QuarantineReport, cell_style: ParagraphStyle) -> Table:
    data: list[list[object]] = [list(_HEADER)]
    data.extend(_row(entry, cell_style) for entry in report.entries)
    table = Table(
        data,
        repeatRows=1,
        colWidths=[5.5 * cm, 5 * cm, 2.3 * cm, 2 * cm, 3.5 * cm, 8.3 * cm],
    )
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#E5E7EB")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.black),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F9FAFB")]),
            ]
        )
    )
    return table


def _row(entry: SyncQueueEntry, cell_style: ParagraphStyle) -> list[object]:
    error = entry.error or ""
    if len(error) > _MAX_ERROR_CHARS:
        error = error[: _MAX_ERROR_CHARS - 3] + "..."
    return [
        Paragraph(_escape(entry.id), cell_style),
        Paragraph(_escape(f"{entry.entity_type}/{entry.entity_id}"), cell_style),
        entry.operation,
        str(entry.attempts),
        entry.created_at.strftime("%Y-%m-%d %H:%M"),
        Paragraph(_escape(error), cell_style),
    ]


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _ensure_pdf_extension(path: Path) -> Path:
    if path.suffix.lower() != ".pdf":
        return path.with_suffix(".pdf")
    return path
