"""
Month labels for the statistics window.

A label is the genitive Russian month name plus a two-digit year, e.g.
"августа-25". The ordered label list for a job is both the vocabulary sent
to the vision collaborator and the column order of the final report.
"""

import re
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple, Union

RU_GENITIVE = [
    "января", "февраля", "марта", "апреля", "мая", "июня",
    "июля", "августа", "сентября", "октября", "ноября", "декабря",
]

RU_ABBREVIATIONS = {
    "янв": 1, "фев": 2, "мар": 3, "апр": 4, "май": 5, "мая": 5,
    "июн": 6, "июл": 7, "авг": 8, "сен": 9, "окт": 10, "ноя": 11, "дек": 12,
}

NUMERIC_LABEL_RE = re.compile(r"^(\d{1,2})[./-](\d{2,4})$")
NAMED_LABEL_RE = re.compile(r"(янв|фев|мар|апр|ма[йя]|июн|июл|авг|сен|окт|ноя|дек)[^0-9]*([0-9]{2,4})", re.IGNORECASE)

DateLike = Union[str, date, datetime]


def _to_month(value: DateLike) -> Tuple[int, int]:
    """Reduce a date, datetime or ISO-ish string ("2025-07", "2025-07-01") to (year, month)."""
    if isinstance(value, datetime):
        return value.year, value.month
    if isinstance(value, date):
        return value.year, value.month
    match = re.match(r"^\s*(\d{4})-(\d{1,2})", str(value or ""))
    if not match:
        raise ValueError(f"Invalid month value: {value!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month value: {value!r}")
    return year, month


def each_month(period_from: DateLike, period_to: DateLike) -> List[Tuple[int, int]]:
    """Every (year, month) from period_from to period_to inclusive. Empty if reversed."""
    year, month = _to_month(period_from)
    end = _to_month(period_to)
    months = []
    while (year, month) <= end:
        months.append((year, month))
        month += 1
        if month > 12:
            month = 1
            year += 1
    return months


def label_for(year: int, month: int) -> str:
    return f"{RU_GENITIVE[month - 1]}-{str(year)[-2:]}"


def month_labels(period_from: DateLike, period_to: DateLike) -> List[str]:
    return [label_for(y, m) for y, m in each_month(period_from, period_to)]


def _expand_year(raw: str) -> int:
    year = int(raw)
    return year + 2000 if len(raw) == 2 else year


def to_label_from_compact(text: str) -> Optional[str]:
    """
    Map a scraped axis label to the canonical month label.

    Accepts "01.25", "1/2025", "янв 2025", "Август 25" and canonical labels
    themselves. Returns None when the text is not recognisable as a month.
    """
    text = (text or "").strip()
    match = NUMERIC_LABEL_RE.match(text)
    if match:
        month = max(1, min(12, int(match.group(1))))
        return label_for(_expand_year(match.group(2)), month)

    match = NAMED_LABEL_RE.search(text)
    if match:
        month = RU_ABBREVIATIONS.get(match.group(1).lower(), 1)
        return label_for(_expand_year(match.group(2)), month)
    return None


def project_counts(points: Iterable[Tuple[str, int]], labels: List[str]) -> Dict[str, int]:
    """
    Project scraped (label, count) points onto the requested labels.

    Every requested label is present (default 0); points whose label does not
    normalise to a requested one are dropped. Later duplicates overwrite.
    """
    wanted = set(labels)
    counts = {label: 0 for label in labels}
    for raw_label, count in points:
        label = raw_label if raw_label in wanted else to_label_from_compact(raw_label)
        if label in wanted:
            counts[label] = int(count)
    return counts
