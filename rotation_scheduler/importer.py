"""Parse availability uploads (.xlsx colour-coded sheets or .csv) into an ImportPayload."""
import colorsys
import logging
import re
from datetime import date, datetime
from io import BytesIO
from typing import List, Optional, Tuple

import openpyxl
import pandas as pd
from openpyxl.utils.datetime import from_excel

from .domain import ImportPayload, ImportWeek
from .errors import ValidationError
from .preferences import normalize_fiscal_year_label

logger = logging.getLogger(__name__)

# ARGB fills used by the distributed template
EXACT_COLOR_MAP = {
    "FF0000": "red",
    "FFFF0000": "red",
    "00B050": "green",
    "FF00B050": "green",
    "FFFF00": "yellow",
    "FFFFFF00": "yellow",
}

PREFERENCE_VALUES = ("red", "yellow", "green", "unset")


def parse_file_name(file_name: str) -> Tuple[str, str]:
    """FY27_Smith.xlsx -> ("FY27", "Smith")."""
    base = re.sub(r"\.[^.]+$", "", file_name or "").strip()
    fy_match = re.search(r"(?<![A-Za-z])FY[\s_-]*([0-9]{1,4})(?![0-9])", base, re.IGNORECASE)
    if not fy_match:
        raise ValidationError("Filename must include a fiscal year token like FY27")
    label = normalize_fiscal_year_label(f"FY{fy_match.group(1)}")

    rest = base.replace(fy_match.group(0), " ")
    rest = re.sub(r"[-_]+", " ", rest)
    rest = re.sub(r"\s+", " ", rest).strip()
    token = re.search(r"[A-Za-z0-9]+", rest)
    if not token:
        raise ValidationError("Filename must include a doctor token")
    return label, token.group(0)


def _hex_to_hsl(hex_value: str) -> Tuple[float, float, float]:
    rgb = hex_value[2:] if len(hex_value) == 8 else hex_value
    if len(rgb) != 6:
        return 0.0, 0.0, 0.0
    try:
        r, g, b = (int(rgb[i:i + 2], 16) / 255 for i in (0, 2, 4))
    except ValueError:
        return 0.0, 0.0, 0.0
    h, l, s = colorsys.rgb_to_hls(r, g, b)
    return round(h * 360) % 360, s, l


def classify_color(hex_value: Optional[str]) -> str:
    """Map a fill colour to red / yellow / green, or unset when it reads as none of them."""
    if not hex_value or not isinstance(hex_value, str):
        return "unset"
    normalized = hex_value.strip().lstrip("#").upper()
    if normalized in EXACT_COLOR_MAP:
        return EXACT_COLOR_MAP[normalized]
    if len(normalized) < 6:
        return "unset"
    h, s, l = _hex_to_hsl(normalized)
    if s < 0.15 or l < 0.1 or l > 0.95:
        return "unset"
    if h <= 15 or h >= 345:
        return "red"
    if 30 <= h <= 70:
        return "yellow"
    if 80 <= h <= 170:
        return "green"
    return "unset"


def _parse_date_string(value: str) -> Optional[str]:
    text = value.strip()
    if not text:
        return None
    m = re.match(r"^(\d{4})-(\d{1,2})-(\d{1,2})(T.*)?$", text)
    if m:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3))).isoformat()
    m = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$", text)
    if m:
        year = int(m.group(3))
        if len(m.group(3)) == 2:
            year += 2000
        return date(year, int(m.group(1)), int(m.group(2))).isoformat()
    return None


def parse_date_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_excel(value).date().isoformat()
    if isinstance(value, str):
        try:
            return _parse_date_string(value)
        except ValueError:
            return None
    return None


def _ensure_unique_weeks(rows: List[ImportWeek]) -> None:
    seen = {}
    for row in rows:
        if row.week_start in seen:
            raise ValidationError(
                f"Duplicate week_start {row.week_start} found in rows {seen[row.week_start]} and {row.source_row}")
        seen[row.week_start] = row.source_row


def _fill_hex(cell) -> Optional[str]:
    fill = cell.fill
    if fill is None:
        return None
    for color in (fill.fgColor, fill.bgColor):
        if color is not None and color.type == "rgb" and isinstance(color.rgb, str):
            if color.rgb != "00000000":
                return color.rgb
    return None


def parse_workbook(content: bytes) -> List[ImportWeek]:
    """Column A week start, column B week end, column C fill colour. Row 1 is the header."""
    try:
        wb = openpyxl.load_workbook(BytesIO(content), data_only=True)
    except Exception as exc:
        raise ValidationError(f"Could not read workbook: {exc}")
    if not wb.sheetnames:
        raise ValidationError("Workbook is empty")
    ws = wb[wb.sheetnames[0]]

    rows = []
    for row_idx in range(2, ws.max_row + 1):
        week_start = parse_date_value(ws.cell(row=row_idx, column=1).value)
        if not week_start:
            continue
        week_end = parse_date_value(ws.cell(row=row_idx, column=2).value)
        availability = classify_color(_fill_hex(ws.cell(row=row_idx, column=3)))
        rows.append(ImportWeek(week_start=week_start, availability=availability,
                               week_end=week_end, source_row=row_idx))
    if not rows:
        raise ValidationError("Workbook did not contain any dated rows in column A")
    _ensure_unique_weeks(rows)
    return rows


def parse_csv(content: bytes) -> List[ImportWeek]:
    try:
        df = pd.read_csv(BytesIO(content), dtype=str, keep_default_na=False, skip_blank_lines=True)
    except pd.errors.EmptyDataError:
        raise ValidationError("CSV file is empty")
    df.columns = [str(c).strip().lower() for c in df.columns]
    if "week_start" not in df.columns or "preference" not in df.columns:
        raise ValidationError("CSV must include headers: week_start, preference")

    rows = []
    for i, row in df.iterrows():
        source_row = int(i) + 2
        values = [str(v).strip() for v in row.values]
        if all(not v for v in values):
            continue
        raw_start = str(row["week_start"]).strip()
        week_start = parse_date_value(raw_start)
        if not week_start:
            raise ValidationError(f'Row {source_row}: invalid week_start "{raw_start}"')
        raw_pref = str(row["preference"]).strip()
        availability = raw_pref.lower()
        if availability not in PREFERENCE_VALUES:
            raise ValidationError(
                f'Row {source_row}: preference must be one of {", ".join(PREFERENCE_VALUES)} (received "{raw_pref}")')
        week_end = None
        if "week_end" in df.columns:
            raw_end = str(row["week_end"]).strip()
            if raw_end:
                week_end = parse_date_value(raw_end)
                if not week_end:
                    raise ValidationError(f'Row {source_row}: invalid week_end "{raw_end}"')
        rows.append(ImportWeek(week_start=week_start, availability=availability,
                               week_end=week_end, source_row=source_row))
    if not rows:
        raise ValidationError("CSV must include at least one non-empty data row")
    _ensure_unique_weeks(rows)
    return rows


def parse_import_file(file_name: str, content: bytes) -> ImportPayload:
    label, token = parse_file_name(file_name)
    lower = (file_name or "").lower()
    if lower.endswith(".xlsx"):
        weeks = parse_workbook(content)
    elif lower.endswith(".csv"):
        weeks = parse_csv(content)
    else:
        raise ValidationError("Upload must be an .xlsx or .csv file")
    payload = ImportPayload(
        source_fiscal_year_label=label,
        source_doctor_token=token,
        weeks=weeks,
        source_file_name=file_name,
    )
    logger.info("Parsed %s: %d weeks %s", file_name, len(weeks), payload.counts)
    return payload
