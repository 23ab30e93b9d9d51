"""Report workbook: title row, header row, one row per input row."""

from datetime import date
from io import BytesIO
from typing import Any, Callable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font

from .models import AssemblyError, JobRecord
from .months import month_labels
from .storage import XLSX_CONTENT_TYPE

SHEET_TITLE = "Отчёт"
BASE_HEADER = ["Article", "Brand", "Price1", "Price2", "Price3"]
AI_HEADER = "AI"


def report_title(today: date) -> str:
    return f"Отчёт ZZAP на {today.strftime('%d.%m.%Y')}"


def report_key(job_id: str) -> str:
    return f"reports/zzap/{job_id}.xlsx"


def _distinct_prices(prices: List[float]) -> List[Any]:
    unique: List[Any] = []
    for price in prices or []:
        if price not in unique:
            unique.append(price)
        if len(unique) >= 3:
            break
    return unique + [None] * (3 - len(unique))


def build_report_matrix(job: JobRecord, labels: List[str], today: date) -> List[List[Any]]:
    """Rows of cell values. Missing data is None, rendered as an empty cell."""
    header = BASE_HEADER + list(labels) + [AI_HEADER]
    matrix: List[List[Any]] = [[report_title(today)], header]
    for index, row in enumerate(job.inputRows):
        result = job.results[index] if index < len(job.results) else None
        line: List[Any] = [row.article, row.brand]
        if result is None:
            line.extend([None] * (3 + len(labels) + 1))
        else:
            line.extend(_distinct_prices(result.prices))
            line.extend(result.stats.get(label) for label in labels)
            line.append(result.aiSummary or None)
        matrix.append(line)
    return matrix


def render_workbook(matrix: List[List[Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE
    for line in matrix:
        ws.append(line)

    width = len(matrix[1]) if len(matrix) > 1 else 1
    if width > 1:
        ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=width)
    ws.cell(row=1, column=1).font = Font(bold=True, size=14)
    ws.cell(row=1, column=1).alignment = Alignment(horizontal="center")
    for cell in ws[2]:
        cell.font = Font(bold=True)

    output = BytesIO()
    wb.save(output)
    return output.getvalue()


class ReportAssembler:
    """
    Builds and uploads the workbook for a job.

    Only the month-label header is derived again (from periodFrom/periodTo);
    row data is read from the stored results as-is.
    """

    def __init__(self, storage, today: Optional[Callable[[], date]] = None):
        self.storage = storage
        self.today = today or date.today

    async def assemble(self, job: JobRecord) -> str:
        try:
            labels = month_labels(job.periodFrom, job.periodTo)
            data = render_workbook(build_report_matrix(job, labels, self.today()))
        except Exception as e:
            raise AssemblyError(f"Workbook build failed: {str(e)[:200]}") from e

        url, error = await self.storage.upload_async(data, report_key(job.jobId), XLSX_CONTENT_TYPE)
        if error or not url:
            raise AssemblyError(error or "Upload returned no URL")
        print(f"[{job.jobId}] Report uploaded: {url}")
        return url
