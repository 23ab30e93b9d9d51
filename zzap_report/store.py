"""
Job record stores.

All stores share one async contract:

- create(job) -> JobRecord
- get(job_id) -> Optional[JobRecord]
- update(job_id, fields, expect=None) -> JobRecord
- list_jobs(limit) -> List[JobRecord]

`update` touches only the given fields. `expect` maps field names to the
values the caller last saw; if any differ the write is refused with
CheckpointConflictError and nothing is written.
"""

import copy
import json
import os
import re
import threading
from typing import Dict, List, Optional

from .config import JOB_STORE_MEMORY, JOB_STORE_TINYBIRD, ZzapConfig
from .models import (
    UPDATABLE_FIELDS,
    CheckpointConflictError,
    InputRow,
    JobNotFoundError,
    JobRecord,
    ResultRecord,
    utc_now,
)

JOB_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def _apply_update(job: JobRecord, fields: dict, expect: Optional[dict]) -> JobRecord:
    """Check `expect` against `job`, then apply `fields` in place."""
    for name, expected in (expect or {}).items():
        actual = getattr(job, name, None)
        if actual != expected:
            raise CheckpointConflictError(job.jobId, name, expected, actual)

    for name, value in fields.items():
        if name not in UPDATABLE_FIELDS:
            raise ValueError(f"Field {name!r} is not updatable")
        if name == "results":
            value = [r if r is None or isinstance(r, ResultRecord) else ResultRecord.from_dict(r) for r in value]
            if len(value) != job.total:
                raise ValueError(f"results length {len(value)} != inputRows length {job.total}")
        setattr(job, name, value)
    job.updatedAt = utc_now()
    return job


# =============================================================================
# In-Memory Store
# =============================================================================

class InMemoryJobStore:
    """Dictionary-backed store. Reads and writes are deep copies."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self.update_calls: List[dict] = []

    async def create(self, job: JobRecord) -> JobRecord:
        now = utc_now()
        job.createdAt = job.createdAt or now
        job.updatedAt = now
        self._jobs[job.jobId] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def update(self, job_id: str, fields: dict, expect: Optional[dict] = None) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        working = copy.deepcopy(job)
        _apply_update(working, copy.deepcopy(fields), expect)
        self._jobs[job_id] = working
        self.update_calls.append(copy.deepcopy(fields))
        return copy.deepcopy(working)

    async def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.createdAt or "", reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]


# =============================================================================
# File Store
# =============================================================================

class FileJobStore:
    """
    One JSON file per job under `directory`.

    Writes go through a temp file and os.replace, so readers never see a
    half-written record. Read-modify-write cycles hold a process-local lock.
    """

    def __init__(self, directory: str):
        self.directory = directory
        self._lock = threading.Lock()
        os.makedirs(directory, exist_ok=True)

    def _path(self, job_id: str) -> Optional[str]:
        if not JOB_ID_RE.match(job_id or ""):
            return None
        return os.path.join(self.directory, f"{job_id}.json")

    def _read(self, job_id: str) -> Optional[JobRecord]:
        path = self._path(job_id)
        if not path:
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return JobRecord.from_dict(json.load(f))
        except FileNotFoundError:
            return None

    def _write(self, job: JobRecord) -> None:
        path = self._path(job.jobId)
        if not path:
            raise ValueError(f"Invalid job id: {job.jobId!r}")
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(job.to_dict(), f, ensure_ascii=False)
        os.replace(tmp_path, path)

    async def create(self, job: JobRecord) -> JobRecord:
        now = utc_now()
        job.createdAt = job.createdAt or now
        job.updatedAt = now
        with self._lock:
            self._write(job)
        return job

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return self._read(job_id)

    async def update(self, job_id: str, fields: dict, expect: Optional[dict] = None) -> JobRecord:
        with self._lock:
            job = self._read(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            _apply_update(job, fields, expect)
            self._write(job)
        return job

    async def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        jobs = []
        for name in os.listdir(self.directory):
            if not name.endswith(".json"):
                continue
            job = self._read(name[:-len(".json")])
            if job:
                jobs.append(job)
        jobs.sort(key=lambda j: j.createdAt or "", reverse=True)
        return jobs[:limit]


# =============================================================================
# Tinybird Store
# =============================================================================

TINYBIRD_JOBS_DATASOURCE = "zzap_report_jobs"
TINYBIRD_GET_PIPE = "get_zzap_job"
TINYBIRD_LIST_PIPE = "list_zzap_jobs"


class TinybirdJobStore:
    """
    Job records in Tinybird.

    Uses the ReplacingMergeTree pattern: every update inserts the full merged
    row and the pipe returns the latest row (by updatedAt) per jobId. Rows and
    results are stored as JSON strings.

    The read and the insert are separate requests, so another writer can land
    in between. The row is read again right before the insert and the update
    is applied to that fresher row, `expect` included, so fields this update
    does not set keep whatever the other writer stored. A stop that lands
    while a checkpoint is in flight survives the checkpoint.
    """

    def __init__(self, token: str, host: str, client=None):
        self.token = token
        self.host = host.rstrip("/")
        self._client = client

    async def _get_client(self):
        """Get or create async HTTP client."""
        if self._client is None:
            import httpx
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _to_row(self, job: JobRecord) -> dict:
        row = job.to_dict()
        row["inputRows"] = json.dumps(row["inputRows"], ensure_ascii=False)
        row["results"] = json.dumps(row["results"], ensure_ascii=False)
        return row

    def _from_row(self, row: dict) -> JobRecord:
        data = dict(row)
        for key in ("inputRows", "results"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key] or "[]")
        return JobRecord.from_dict(data)

    async def _insert(self, job: JobRecord) -> None:
        client = await self._get_client()
        response = await client.post(
            f"{self.host}/v0/events?name={TINYBIRD_JOBS_DATASOURCE}",
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
            content=json.dumps(self._to_row(job), ensure_ascii=False),
        )
        if response.status_code not in (200, 202):
            raise RuntimeError(f"Tinybird insert failed: {response.status_code} - {response.text[:200]}")
        print(f"[TinybirdJobStore] Job {job.jobId} -> {job.status} ({job.processed}/{job.total})")

    async def _query(self, pipe: str, params: dict) -> List[dict]:
        client = await self._get_client()
        response = await client.get(
            f"{self.host}/v0/pipes/{pipe}.json",
            params=params,
            headers={"Authorization": f"Bearer {self.token}"},
        )
        if response.status_code != 200:
            raise RuntimeError(f"Tinybird query failed: {response.text[:200]}")
        return response.json().get("data", [])

    async def create(self, job: JobRecord) -> JobRecord:
        now = utc_now()
        job.createdAt = job.createdAt or now
        job.updatedAt = now
        await self._insert(job)
        return job

    async def get(self, job_id: str) -> Optional[JobRecord]:
        data = await self._query(TINYBIRD_GET_PIPE, {"job_id": job_id})
        return self._from_row(data[0]) if data else None

    async def update(self, job_id: str, fields: dict, expect: Optional[dict] = None) -> JobRecord:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        _apply_update(job, fields, expect)

        latest = await self.get(job_id)
        if latest is not None:
            job = _apply_update(latest, fields, expect)
        await self._insert(job)
        return job

    async def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        data = await self._query(TINYBIRD_LIST_PIPE, {"limit": limit})
        return [self._from_row(row) for row in data]


def get_job_store(config: ZzapConfig):
    """Build the store selected by JOB_STORE."""
    if config.job_store == JOB_STORE_MEMORY:
        return InMemoryJobStore()
    if config.job_store == JOB_STORE_TINYBIRD:
        if not config.tinybird_token:
            raise ValueError("TINYBIRD_TOKEN not configured")
        return TinybirdJobStore(config.tinybird_token, config.tinybird_host)
    return FileJobStore(os.path.join(config.write_dir, "jobs"))


def new_job(job_id: str, rows: List[InputRow], period_from: str, period_to: str,
            original_filename: Optional[str] = None) -> JobRecord:
    return JobRecord(
        jobId=job_id,
        periodFrom=period_from,
        periodTo=period_to,
        inputRows=list(rows),
        originalFilename=original_filename,
    )
