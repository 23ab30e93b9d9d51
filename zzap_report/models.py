"""Data models and errors shared by the ZZAP report engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# =============================================================================
# Job Status
# =============================================================================

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_CANCELED = "canceled"
STATUS_FAILED = "failed"
STATUS_ERROR = "error"

TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_CANCELED, STATUS_FAILED, STATUS_ERROR})
FAILED_STATUSES = frozenset({STATUS_FAILED, STATUS_ERROR})

MAX_ERROR_LENGTH = 500


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]


# =============================================================================
# Errors
# =============================================================================

class ZzapError(Exception):
    """Base error for the report engine."""


class AuthError(ZzapError):
    """Credentials are missing or the site login did not succeed."""


class NavigationError(ZzapError):
    """No navigation strategy reached the requested page."""


class AssemblyError(ZzapError):
    """The report workbook could not be built or uploaded."""


class JobNotFoundError(ZzapError):
    pass


class CheckpointConflictError(ZzapError):
    """A compare-and-swap write found a different value than expected."""

    def __init__(self, job_id: str, field_name: str, expected: Any, actual: Any):
        super().__init__(f"job {job_id}: expected {field_name}={expected!r}, found {actual!r}")
        self.job_id = job_id
        self.field_name = field_name
        self.expected = expected
        self.actual = actual


class FinalizeError(ZzapError):
    """The job is not in a state that can be finalized."""


# =============================================================================
# Strategy Outcome
# =============================================================================

@dataclass
class AttemptResult:
    """Result of a single fallback strategy attempt."""
    success: bool
    value: Any = None
    error: Optional[str] = None
    method: str = ""


# =============================================================================
# Rows and Results
# =============================================================================

@dataclass
class InputRow:
    article: str
    brand: str = ""

    def to_dict(self) -> dict:
        return {"article": self.article, "brand": self.brand}

    @classmethod
    def from_dict(cls, data: dict) -> "InputRow":
        return cls(article=str(data.get("article") or ""), brand=str(data.get("brand") or ""))


@dataclass
class ResultRecord:
    """Outcome for one input row. `error` is set only when the row failed."""
    article: str
    brand: str
    prices: List[float] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)
    imageUrl: Optional[str] = None
    aiSummary: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "article": self.article,
            "brand": self.brand,
            "prices": list(self.prices),
            "stats": dict(self.stats),
        }
        for field_name in ["imageUrl", "aiSummary", "error"]:
            value = getattr(self, field_name)
            if value is not None:
                result[field_name] = value
        return result

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ResultRecord"]:
        if not data or not isinstance(data, dict):
            return None
        return cls(
            article=str(data.get("article") or ""),
            brand=str(data.get("brand") or ""),
            prices=[float(p) for p in data.get("prices") or []],
            stats={str(k): int(v) for k, v in (data.get("stats") or {}).items()},
            imageUrl=data.get("imageUrl"),
            aiSummary=data.get("aiSummary"),
            error=data.get("error"),
        )

    @classmethod
    def failed(cls, row: InputRow, error: str) -> "ResultRecord":
        return cls(article=row.article, brand=row.brand, error=(error or "unknown error")[:MAX_ERROR_LENGTH])


# =============================================================================
# Job Record
# =============================================================================

@dataclass
class JobRecord:
    """Persisted state of one report batch run."""
    jobId: str
    status: str = STATUS_PENDING
    periodFrom: str = ""
    periodTo: str = ""
    inputRows: List[InputRow] = field(default_factory=list)
    processed: int = 0
    results: List[Optional[ResultRecord]] = field(default_factory=list)
    resultFile: Optional[str] = None
    error: Optional[str] = None
    originalFilename: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    def __post_init__(self):
        # Results stay index-aligned with inputRows; unprocessed slots hold None
        if len(self.results) != len(self.inputRows):
            padded = list(self.results[:len(self.inputRows)])
            padded.extend([None] * (len(self.inputRows) - len(padded)))
            self.results = padded

    @property
    def total(self) -> int:
        return len(self.inputRows)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def progress(self) -> dict:
        """Status payload returned by Advance, Status and the stream."""
        return {
            "status": self.status,
            "processed": self.processed,
            "total": self.total,
            "resultFile": self.resultFile,
            "error": self.error,
        }

    def to_dict(self) -> dict:
        return {
            "jobId": self.jobId,
            "status": self.status,
            "periodFrom": self.periodFrom,
            "periodTo": self.periodTo,
            "inputRows": [r.to_dict() for r in self.inputRows],
            "processed": self.processed,
            "results": [r.to_dict() if r is not None else None for r in self.results],
            "resultFile": self.resultFile,
            "error": self.error,
            "originalFilename": self.originalFilename,
            "createdAt": self.createdAt,
            "updatedAt": self.updatedAt,
        }

    def summary(self) -> dict:
        """History listing entry (no rows, no results)."""
        return {
            "jobId": self.jobId,
            "status": self.status,
            "processed": self.processed,
            "total": self.total,
            "resultFile": self.resultFile,
            "error": self.error,
            "originalFilename": self.originalFilename,
            "createdAt": self.createdAt,
            "updatedAt": self.updatedAt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JobRecord":
        return cls(
            jobId=str(data["jobId"]),
            status=data.get("status") or STATUS_PENDING,
            periodFrom=data.get("periodFrom") or "",
            periodTo=data.get("periodTo") or "",
            inputRows=[InputRow.from_dict(r) for r in data.get("inputRows") or []],
            processed=int(data.get("processed") or 0),
            results=[ResultRecord.from_dict(r) for r in data.get("results") or []],
            resultFile=data.get("resultFile"),
            error=data.get("error"),
            originalFilename=data.get("originalFilename"),
            createdAt=data.get("createdAt"),
            updatedAt=data.get("updatedAt"),
        )


# Fields a JobStore.update() call may touch
UPDATABLE_FIELDS = frozenset({"status", "processed", "results", "resultFile", "error"})
