"""Attendance exports: tabular report (pandas) and the daily time record PDF (ReportLab)."""
import io
import logging
from typing import Iterable, Mapping, Optional

import pandas as pd
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from itrack.models.attendance import AttendanceEvent
from itrack.services.sessions import order_history, summarize

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "Date",
    "Intern ID",
    "Intern Name",
    "Time In",
    "Time Out",
    "Hours",
    "Late",
    "Early",
    "Status",
    "Location",
    "Reason",
]


def _clock(moment) -> str:
    return moment.strftime("%H:%M") if moment else ""


def report_frame(events: Iterable[AttendanceEvent], names: Optional[Mapping[str, str]] = None) -> pd.DataFrame:
    """One row per attendance event, oldest first."""
    names = names or {}
    rows = [
        {
            "Date": e.clock_in.date().isoformat(),
            "Intern ID": e.intern_id,
            "Intern Name": names.get(e.intern_id, "Unknown"),
            "Time In": _clock(e.clock_in),
            "Time Out": _clock(e.clock_out),
            "Hours": round(e.total_hours, 2),
            "Late": "Yes" if e.is_late else "No",
            "Early": "Yes" if e.is_early else "No",
            "Status": e.status,
            "Location": e.location,
            "Reason": e.approval_reason or "",
        }
        for e in reversed(order_history(events))
    ]
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def frame_to_csv(df: pd.DataFrame) -> str:
    stream = io.StringIO()
    df.to_csv(stream, index=False)
    return stream.getvalue()


def frame_to_excel(df: pd.DataFrame) -> bytes:
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="Attendance")
    return output.getvalue()


def dtr_pdf_bytes(intern_name: str, period: str, events: Iterable[AttendanceEvent]) -> bytes:
    """
    Daily time record for one intern over ``period`` (label only).

    Layout (A4 portrait):
      - Title, intern name and period.
      - Table: date, time in, time out, hours, remarks (late / early / status).
      - Totals: hours, distinct days, average hours per day.
    """
    events = list(reversed(order_history(events)))
    summary = summarize(events)

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    w, h = A4
    margin_x = 15 * mm
    line_h = 6 * mm
    y = h - 20 * mm

    c.setFont("Helvetica-Bold", 16)
    c.drawString(margin_x, y, "Daily Time Record")
    y -= line_h + 2 * mm
    c.setFont("Helvetica", 10)
    c.drawString(margin_x, y, f"Intern: {intern_name}")
    y -= line_h
    c.drawString(margin_x, y, f"Period: {period}")
    y -= line_h + 2 * mm

    columns = [("Date", 0), ("Time In", 30), ("Time Out", 55), ("Hours", 80), ("Remarks", 100)]

    def header(top: float) -> float:
        c.setFont("Helvetica-Bold", 10)
        for label, offset in columns:
            c.drawString(margin_x + offset * mm, top, label)
        c.line(margin_x, top - 2 * mm, w - margin_x, top - 2 * mm)
        c.setFont("Helvetica", 10)
        return top - line_h

    y = header(y)
    for e in events:
        # New page when the table reaches the bottom margin
        if y < 25 * mm:
            c.showPage()
            y = header(h - 20 * mm)
        remarks = [str(e.status)]
        if e.is_late:
            remarks.append("late")
        if e.is_early:
            remarks.append("early out")
        cells = [
            e.clock_in.strftime("%Y-%m-%d"),
            _clock(e.clock_in),
            _clock(e.clock_out) or "-",
            f"{e.total_hours:.2f}",
            ", ".join(remarks),
        ]
        for (_, offset), text in zip(columns, cells):
            c.drawString(margin_x + offset * mm, y, text)
        y -= line_h

    y -= 2 * mm
    c.line(margin_x, y + 4 * mm, w - margin_x, y + 4 * mm)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(margin_x, y, f"Total hours: {summary.total_hours:.2f}")
    c.drawString(margin_x + 55 * mm, y, f"Days: {summary.total_days}")
    c.drawString(margin_x + 80 * mm, y, f"Average per day: {summary.average_hours:.2f}")

    c.showPage()
    c.save()
    logger.info(f"DTR generated for {intern_name} ({period}): {len(events)} records")
    return buf.getvalue()
