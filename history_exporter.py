"""
Jump History Exporter
=====================

Writes the jump history (journal scan, optionally merged with a remote
flight log) to an Excel file.

Columns: Timestamp, System, Jump Distance (ly), X, Y, Z, Star Class,
Bodies, First Discovery, Source
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Dict, Any, List

import re
import openpyxl
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side
from openpyxl.utils import get_column_letter


HEADERS = [
    "Timestamp", "System", "Jump Distance (ly)", "X", "Y", "Z",
    "Star Class", "Bodies", "First Discovery", "Source",
]
COL_WIDTHS = [22, 36, 18, 12, 12, 12, 12, 10, 16, 12]


def _parse_timestamp(ts: str) -> Optional[datetime]:
    if not ts:
        return None
    try:
        if ts.endswith("Z"):
            ts = ts[:-1] + "+00:00"
        return datetime.fromisoformat(ts).replace(tzinfo=None)
    except ValueError:
        return None


def export_history_xlsx(
    jumps: Iterable[Dict[str, Any]],
    output_dir: Path,
    cmdr_name: str = "UnknownCMDR",
) -> Optional[Path]:
    """
    Export jumps to an XLSX file.

    Args:
        jumps: Jump dicts, newest first (HistoryScanner / merge_remote_jumps)
        output_dir: Directory to write the file into
        cmdr_name: Commander name for the title and filename

    Returns:
        Path to created file, or None if there are no jumps
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rows: List[Dict[str, Any]] = [j for j in jumps if j and j.get("system")]
    if not rows:
        return None

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Jump History"

    # --- Styles ---
    title_font = Font(name="Calibri", size=14, bold=True, color="1F4E79")
    subtitle_font = Font(name="Calibri", size=10, italic=True, color="555555")
    header_font = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
    data_font = Font(name="Calibri", size=10)
    remote_font = Font(name="Calibri", size=10, italic=True, color="555555")
    even_fill = PatternFill(start_color="F2F7FB", end_color="F2F7FB", fill_type="solid")
    thin_border = Border(bottom=Side(style="thin", color="D9E2EC"))

    # --- Title block ---
    last_col = get_column_letter(len(HEADERS))
    ws.merge_cells(f"A1:{last_col}1")
    ws["A1"].value = "Elite Dangerous Jump History"
    ws["A1"].font = title_font
    ws["A1"].alignment = Alignment(vertical="center")
    ws.row_dimensions[1].height = 30

    ws.merge_cells(f"A2:{last_col}2")
    ws["A2"].value = (
        f"CMDR {cmdr_name}  |  {len(rows)} jumps  |  "
        f"Exported {datetime.utcnow().strftime('%Y-%m-%d %H:%M')} UTC"
    )
    ws["A2"].font = subtitle_font

    # --- Header row ---
    HEADER_ROW = 4
    for col_idx, (header, width) in enumerate(zip(HEADERS, COL_WIDTHS), 1):
        cell = ws.cell(row=HEADER_ROW, column=col_idx, value=header)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center", vertical="center")
        ws.column_dimensions[get_column_letter(col_idx)].width = width
    ws.row_dimensions[HEADER_ROW].height = 24

    # --- Data rows ---
    DATA_START = HEADER_ROW + 1
    for i, jump in enumerate(rows):
        row_num = DATA_START + i
        pos = jump.get("pos") or [None, None, None]
        from_remote = bool(jump.get("from_remote"))

        ts = _parse_timestamp(jump.get("timestamp") or "")
        values = [
            ts if ts else (jump.get("timestamp") or ""),
            jump.get("system"),
            jump.get("jump_dist"),
            pos[0], pos[1], pos[2],
            jump.get("star_class") or "",
            jump.get("body_count"),
            "Yes" if jump.get("was_discovered") is False else "",
            "Remote" if from_remote else "Journal",
        ]

        for col_idx, value in enumerate(values, 1):
            cell = ws.cell(row=row_num, column=col_idx, value=value)
            cell.font = remote_font if from_remote else data_font
            cell.border = thin_border
            if i % 2 == 0:
                cell.fill = even_fill
        if ts:
            ws.cell(row=row_num, column=1).number_format = "YYYY-MM-DD HH:MM:SS"

    ws.freeze_panes = f"A{DATA_START}"
    ws.auto_filter.ref = f"A{HEADER_ROW}:{last_col}{HEADER_ROW + len(rows)}"

    # --- Save ---
    safe_cmdr = re.sub(r"[^A-Za-z0-9_-]", "_", cmdr_name or "UnknownCMDR")
    stamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
    file_path = output_dir / f"Jump_History_{safe_cmdr}_{stamp}.xlsx"

    wb.save(file_path)
    return file_path
