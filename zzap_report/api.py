"""
FastAPI application for ZZAP report jobs.

Endpoints:
- POST /api/v1/zzap/report/start     - Upload rows, create a job
- POST /api/v1/zzap/report/process   - Advance a job by one slice
- POST /api/v1/zzap/report/stop      - Cancel a job
- GET  /api/v1/zzap/report/status    - Current progress
- GET  /api/v1/zzap/report/stream    - Server-sent progress events
- POST /api/v1/zzap/report/finalize  - Build the report for a fully processed job
- GET  /api/v1/zzap/report/history   - Recent jobs
- GET  /api/v1/zzap/report/log       - Tail of a job's log file
- POST /api/v1/zzap/screenshot       - Chart screenshot collaborator
- POST /api/v1/zzap/vision           - Chart vision collaborator
- GET  /health                       - Health check
"""

import asyncio
import json
import uuid
from typing import List, Optional

from fastapi import FastAPI, File, Form, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .inputs import estimate_eta, format_eta, parse_rows
from .joblog import job_log, read_job_log
from .models import FinalizeError, JobNotFoundError, ZzapError
from .months import month_labels
from .services import Services, build_services
from .store import new_job

STREAM_INTERVAL = 1.0
STREAM_KEEPALIVE = 20.0


class ScreenshotRequest(BaseModel):
    article: str = Field(..., min_length=1)
    brand: str = ""


class VisionRequest(BaseModel):
    imageUrl: str = Field(..., min_length=1)
    monthLabels: List[str] = Field(default_factory=list)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def sse_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def create_app(services: Optional[Services] = None,
               stream_interval: float = STREAM_INTERVAL,
               stream_keepalive: float = STREAM_KEEPALIVE) -> FastAPI:
    services = services or build_services()
    config = services.config
    store = services.store
    processor = services.processor

    api = FastAPI(
        title="ZZAP Report API",
        description="Resumable batch scraping jobs for ZZAP price and demand reports",
        version="1.0.0",
    )
    api.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @api.exception_handler(JobNotFoundError)
    async def not_found_handler(request, exc: JobNotFoundError):
        return _error(404, f"job not found: {exc}")

    @api.exception_handler(FinalizeError)
    async def finalize_handler(request, exc: FinalizeError):
        return _error(409, str(exc))

    @api.exception_handler(ZzapError)
    async def zzap_error_handler(request, exc: ZzapError):
        return _error(500, str(exc)[:500])

    # =========================================================================
    # Job Control
    # =========================================================================

    @api.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "zzap-report", "version": "1.0.0"}

    @api.post("/api/v1/zzap/report/start")
    async def start(
        file: Optional[UploadFile] = File(None),
        periodFrom: Optional[str] = Form(None),
        periodTo: Optional[str] = Form(None),
    ):
        if file is None:
            return _error(400, "file required")
        if not periodFrom or not periodTo:
            return _error(400, "periodFrom/periodTo required")
        try:
            labels = month_labels(periodFrom, periodTo)
        except ValueError as e:
            return _error(400, str(e))
        if not labels:
            return _error(400, "periodFrom must not be after periodTo")

        data = await file.read()
        try:
            rows = parse_rows(data, file.filename)
        except Exception as e:
            return _error(400, f"Could not read rows: {str(e)[:200]}")
        if not rows:
            return _error(400, "no rows found in file")

        job_id = f"zz_{uuid.uuid4().hex[:12]}"
        await store.create(new_job(job_id, rows, periodFrom, periodTo, (file.filename or "")[:255] or None))
        job_log(job_id, f"created: {len(rows)} rows, {labels[0]}..{labels[-1]}", config.job_log_dir)

        eta_ms = estimate_eta(len(rows), config.estimate_item_ms, config.delay_ms, config.jitter_ms)
        return {"ok": True, "jobId": job_id, "total": len(rows), "etaMs": eta_ms, "etaText": format_eta(eta_ms)}

    @api.post("/api/v1/zzap/report/process")
    async def process(id: Optional[str] = Query(None), batch: Optional[str] = Query(None)):
        if not id:
            return _error(400, "id required")
        try:
            progress = await processor.advance(id, batch)
        except (JobNotFoundError, FinalizeError):
            raise
        except Exception as e:
            return _error(500, (str(e) or e.__class__.__name__)[:500])
        return {"ok": True, **progress}

    @api.post("/api/v1/zzap/report/stop")
    async def stop(id: Optional[str] = Query(None)):
        if not id:
            return _error(400, "id required")
        return {"ok": True, **(await processor.stop(id))}

    @api.get("/api/v1/zzap/report/status")
    async def status(id: Optional[str] = Query(None)):
        if not id:
            return _error(400, "id required")
        return {"ok": True, **(await processor.status(id))}

    @api.post("/api/v1/zzap/report/finalize")
    async def finalize(id: Optional[str] = Query(None)):
        if not id:
            return _error(400, "id required")
        return {"ok": True, **(await processor.finalize(id))}

    @api.get("/api/v1/zzap/report/stream")
    async def stream(id: Optional[str] = Query(None)):
        if not id:
            return _error(400, "id required")
        if await store.get(id) is None:
            return _error(404, f"job not found: {id}")

        async def events():
            last = None
            idle = 0.0
            while True:
                job = await store.get(id)
                if job is None:
                    yield sse_event({"error": "job not found"})
                    return
                progress = job.progress()
                if progress != last:
                    yield sse_event(progress)
                    last, idle = progress, 0.0
                elif idle >= stream_keepalive:
                    yield ": keep-alive\n\n"
                    idle = 0.0
                if job.is_terminal:
                    return
                await asyncio.sleep(stream_interval)
                idle += stream_interval

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @api.get("/api/v1/zzap/report/history")
    async def history(limit: Optional[str] = Query(None)):
        try:
            size = int(limit) if limit else 20
        except ValueError:
            size = 20
        size = max(1, min(100, size))
        jobs = await store.list_jobs(size)
        return {"ok": True, "jobs": [job.summary() for job in jobs]}

    @api.get("/api/v1/zzap/report/log")
    async def log(id: Optional[str] = Query(None), lines: int = Query(200, ge=1, le=5000)):
        if not id:
            return _error(400, "id required")
        if await store.get(id) is None:
            return _error(404, f"job not found: {id}")
        return {"ok": True, "lines": read_job_log(id, config.job_log_dir or config.write_dir, lines)}

    # =========================================================================
    # Enrichment Collaborators
    # =========================================================================

    @api.post("/api/v1/zzap/screenshot")
    async def screenshot(body: ScreenshotRequest):
        image_url, error = await services.capture.capture(body.article.strip(), body.brand.strip())
        if error or not image_url:
            return _error(502, error or "screenshot upload failed")
        return {"imageUrl": image_url, "url": image_url}

    @api.post("/api/v1/zzap/vision")
    async def vision(body: VisionRequest):
        summary, error = await services.vision.summarize(body.imageUrl, body.monthLabels)
        if error or summary is None:
            return _error(502, error or "vision failed")
        return {"summary": summary.summary, "stats": summary.stats}

    return api
