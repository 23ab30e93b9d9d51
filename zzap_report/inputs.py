"""
Uploaded row lists: CSV or XLSX with article and brand columns.

Header detection uses article/brand synonyms. Without a header the first two
columns are used, swapped when the first looks like a brand and the second
like a part number.
"""

import csv
import io
import math
import re
from typing import List, Optional, Sequence

from openpyxl import load_workbook

from .config import DEFAULT_DELAY_MS, DEFAULT_ESTIMATE_ITEM_MS, DEFAULT_JITTER_MS
from .models import InputRow

ARTICLE_HEADER_RE = re.compile(r"артикул|номер|article|part|number", re.IGNORECASE)
BRAND_HEADER_RE = re.compile(r"бренд|марка|производитель|brand|manufacturer", re.IGNORECASE)


def _is_article_like(value: str) -> bool:
    return bool(re.search(r"[0-9]", value)) and len(re.sub(r"\s+", "", value)) >= 3


def _is_brand_like(value: str) -> bool:
    return bool(re.search(r"[A-Za-zА-Яа-я]", value)) and not (_is_article_like(value) and len(value) > 6)


def _detect_delimiter(line: str) -> str:
    if ";" in line:
        return ";"
    if "\t" in line:
        return "\t"
    return ","


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def rows_from_table(table: Sequence[Sequence]) -> List[InputRow]:
    """Map a 2D table (first row possibly a header) to input rows."""
    table = [[_cell(v) for v in row] for row in table if row and any(_cell(v) for v in row)]
    if not table:
        return []

    header = table[0]
    article_idx = next((i for i, h in enumerate(header) if ARTICLE_HEADER_RE.search(h)), None)
    brand_idx = next((i for i, h in enumerate(header) if BRAND_HEADER_RE.search(h)), None)
    has_header = article_idx is not None or brand_idx is not None
    if has_header:
        if article_idx is None:
            article_idx = 1 if brand_idx == 0 else 0
        if brand_idx is None:
            brand_idx = 1 if article_idx == 0 else 0

    rows = []
    for line in table[1:] if has_header else table:
        if has_header:
            article = line[article_idx] if article_idx < len(line) else ""
            brand = line[brand_idx] if brand_idx < len(line) else ""
        else:
            first = line[0] if line else ""
            second = line[1] if len(line) > 1 else ""
            if _is_brand_like(first) and _is_article_like(second):
                article, brand = second, first
            else:
                article, brand = first, second
        if article:
            rows.append(InputRow(article=article, brand=brand))
    return rows


def parse_csv(data: bytes) -> List[InputRow]:
    text = data.decode("utf-8-sig", errors="replace")
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return []
    reader = csv.reader(lines, delimiter=_detect_delimiter(lines[0]))
    return rows_from_table(list(reader))


def parse_xlsx(data: bytes) -> List[InputRow]:
    wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        return rows_from_table([list(row) for row in ws.iter_rows(values_only=True)])
    finally:
        wb.close()


def parse_rows(data: bytes, filename: Optional[str] = None) -> List[InputRow]:
    """Rows from an uploaded file; `.csv` by name, anything else read as XLSX."""
    if (filename or "").lower().endswith(".csv"):
        return parse_csv(data)
    return parse_xlsx(data)


def estimate_eta(total: int, estimate_item_ms: int = DEFAULT_ESTIMATE_ITEM_MS,
                 delay_ms: int = DEFAULT_DELAY_MS, jitter_ms: int = DEFAULT_JITTER_MS) -> int:
    per_item_ms = estimate_item_ms + delay_ms + max(0, jitter_ms) / 2
    return math.ceil(total * max(1000, per_item_ms))


def format_eta(eta_ms: int) -> str:
    seconds = round(eta_ms / 1000)
    minutes = seconds // 60
    if minutes <= 0:
        return f"~{seconds} сек"
    if minutes < 60:
        return f"~{minutes} мин {seconds % 60} сек"
    return f"~{minutes // 60} ч {minutes % 60} мин"
