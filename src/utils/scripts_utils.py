import csv
import datetime
import html
import io
import json
import os
import uuid

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

REPORT_EXTENSIONS = {
    "csv": "csv",
    "excel": "csv",
    "html": "html",
    "json": "json",
    "pdf": "pdf",
}

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "excel": "text/csv",
    "csv": "text/csv",
    "html": "text/html",
    "json": "application/json",
}


def _month_folder(base_dir):
    month_folder = datetime.datetime.now().strftime("%Y-%m")
    folder = os.path.join(base_dir, month_folder)
    os.makedirs(folder, exist_ok=True)
    return folder


def save_full_scan_results(scan_results, base_dir="scans", job_id=None):
    """
    Save all results of a scan job in a single file.
    """
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    suffix = job_id or uuid.uuid4().hex[:8]
    scan_filename = os.path.join(_month_folder(base_dir), f"full_scan_{timestamp}_{suffix}.json")
    with open(scan_filename, "w") as f:
        json.dump(scan_results, f, indent=4)

    return scan_filename


def merge_severity_counts(total, counts):
    """
    Add per-severity counts into total. Keys are kept as reported, including zeros.
    """
    for severity, count in (counts or {}).items():
        total[severity] = total.get(severity, 0) + int(count)
    return total


def _columns(rows):
    columns = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _cell(value):
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return "" if value is None else value


def generate_csv(rows):
    if not rows:
        return "No data available"
    columns = _columns(rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(row.get(column)) for column in columns])
    return buffer.getvalue()


def generate_html(rows, title):
    columns = _columns(rows)
    header = "".join(f"<th>{html.escape(str(c))}</th>" for c in columns) or "<th>No data</th>"
    body = "".join(
        "<tr>" + "".join(f"<td>{html.escape(str(_cell(row.get(c))))}</td>" for c in columns) + "</tr>"
        for row in rows
    )
    generated = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        f"<title>{html.escape(title)}</title>\n"
        "<style>body { font-family: Arial, sans-serif; margin: 20px; } "
        "table { width: 100%; border-collapse: collapse; } "
        "th, td { border: 1px solid #ddd; padding: 8px; text-align: left; } "
        "th { background-color: #f2f2f2; }</style>\n"
        "</head>\n<body>\n"
        f"<h1>{html.escape(title)}</h1>\n<p>Generated on: {generated}</p>\n"
        f"<table><thead><tr>{header}</tr></thead><tbody>{body}</tbody></table>\n"
        "</body>\n</html>\n"
    )


def generate_pdf(rows, title):
    """
    Render rows as a PDF table with a title and a generated-on line. Returns bytes.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer, pagesize=landscape(A4), title=title,
        leftMargin=15*mm, rightMargin=15*mm, topMargin=15*mm, bottomMargin=15*mm,
    )
    styles = getSampleStyleSheet()
    cell_style = ParagraphStyle(name="Cell", parent=styles["BodyText"], fontSize=7, leading=9)
    generated = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    flow = [
        Paragraph(html.escape(title), styles["Title"]),
        Paragraph(f"Generated on: {generated}", styles["BodyText"]),
        Spacer(1, 6*mm),
    ]
    columns = _columns(rows)
    if not columns:
        flow.append(Paragraph("No data available", styles["BodyText"]))
    else:
        data = [[Paragraph(html.escape(str(c)), cell_style) for c in columns]]
        for row in rows:
            data.append([Paragraph(html.escape(str(_cell(row.get(c)))), cell_style) for c in columns])
        tbl = Table(data, colWidths=[doc.width / len(columns)] * len(columns), repeatRows=1)
        tbl.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]))
        flow.append(tbl)
    doc.build(flow)
    return buffer.getvalue()


def generate_report_content(rows, report_type, fmt):
    title = f"{report_type.capitalize()} Report"
    fmt = fmt.lower()
    if fmt in ("csv", "excel"):
        return generate_csv(rows)
    if fmt == "html":
        return generate_html(rows, title)
    if fmt == "json":
        return json.dumps({"title": title, "rows": rows}, indent=4)
    if fmt == "pdf":
        return generate_pdf(rows, title)
    raise ValueError(f"Unsupported format: {fmt}")


def render_report(rows, report_type, fmt, base_dir="reports", job_id=None):
    """
    Render report rows in the requested format and save them.
    Returns (path, size in bytes).
    """
    content = generate_report_content(rows, report_type, fmt)
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    suffix = job_id or uuid.uuid4().hex[:8]
    extension = REPORT_EXTENSIONS[fmt.lower()]
    filename = os.path.join(_month_folder(base_dir), f"{report_type.lower()}_report_{timestamp}_{suffix}.{extension}")
    data = content if isinstance(content, bytes) else content.encode("utf-8")
    with open(filename, "wb") as f:
        f.write(data)
    return filename, len(data)
