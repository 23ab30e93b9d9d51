"""
Batch processor: advances one job by one bounded slice of rows.

Each call loads the job, marks it running, opens one browser session for the
slice and processes rows strictly in input order. After every row the result
and the new `processed` count are written back (the checkpoint) and the
stored status is re-read so a stop request takes effect at the next row
boundary. The call that completes the last row assembles the report.

Guards against a second concurrent call on the same job:
- inside one process, a per-job asyncio.Lock; a call that finds it held
  returns the stored progress without doing anything;
- across processes, every checkpoint is a compare-and-swap on `processed`
  and the running mark is a compare-and-swap on `status`. On conflict the
  call stops and returns what is stored.
"""

import asyncio
import random
from typing import Callable, Dict, List, Optional

from .config import STATS_PREFER_SCRAPED, ZzapConfig, clamp_batch_size
from .enrichment import VisionSummary
from .joblog import job_log
from .models import (
    MAX_ERROR_LENGTH,
    STATUS_CANCELED,
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_RUNNING,
    CheckpointConflictError,
    FinalizeError,
    InputRow,
    JobNotFoundError,
    JobRecord,
    ResultRecord,
)
from .months import month_labels, project_counts
from .site import ZzapSite

STOPPED_BY_USER = "stopped by user"


def choose_stats(scraped: Dict[str, int], vision: Optional[VisionSummary], preference: str) -> Dict[str, int]:
    """AI counts win when non-zero, unless the preference is "scraped" and scraping found something."""
    has_ai = vision is not None and vision.has_counts
    if preference == STATS_PREFER_SCRAPED:
        if any(scraped.values()) or not has_ai:
            return scraped
        return dict(vision.stats)
    return dict(vision.stats) if has_ai else scraped


def _row_key(article: str, brand: str) -> str:
    return f"{article.strip().upper()}|{brand.strip().upper()}"


def _has_data(result: ResultRecord) -> bool:
    return bool(result.prices) or any(result.stats.values())


def is_suspect_duplicate(result: ResultRecord, previous: Optional[ResultRecord]) -> bool:
    """Same prices and counts as the previous row under a different key: a stale page."""
    if previous is None or result.error or previous.error or not _has_data(result):
        return False
    if _row_key(result.article, result.brand) == _row_key(previous.article, previous.brand):
        return False
    return result.prices == previous.prices and result.stats == previous.stats


class BatchProcessor:
    def __init__(self, store, sessions, enrichment, assembler, config: ZzapConfig,
                 site_factory: Callable = ZzapSite,
                 sleep: Callable = asyncio.sleep):
        self.store = store
        self.sessions = sessions
        self.enrichment = enrichment
        self.assembler = assembler
        self.config = config
        self.site_factory = site_factory
        self.sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}

    def _log(self, job_id: str, line: str) -> None:
        job_log(job_id, line, self.config.job_log_dir)

    async def _load(self, job_id: str) -> JobRecord:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # =========================================================================
    # Job Control
    # =========================================================================

    async def status(self, job_id: str) -> dict:
        return (await self._load(job_id)).progress()

    async def stop(self, job_id: str) -> dict:
        job = await self._load(job_id)
        if job.is_terminal:
            return job.progress()
        job = await self.store.update(job_id, {
            "status": STATUS_CANCELED,
            "error": STOPPED_BY_USER,
            "resultFile": None,
        })
        self._log(job_id, f"stopped by user at {job.processed}/{job.total}")
        return job.progress()

    async def finalize(self, job_id: str) -> dict:
        """Assemble the report from stored results. Nothing is scraped or recomputed."""
        job = await self._load(job_id)
        if job.status == STATUS_CANCELED:
            raise FinalizeError(f"Job {job_id} was canceled")
        if job.processed < job.total:
            raise FinalizeError(f"Job {job_id} has {job.processed}/{job.total} rows processed")
        if job.status == STATUS_DONE and job.resultFile:
            return job.progress()

        self._log(job_id, f"finalize: assembling report from status={job.status}")
        url = await self.assembler.assemble(job)
        job = await self.store.update(job_id, {"status": STATUS_DONE, "resultFile": url, "error": None})
        self._log(job_id, f"DONE. result: {url}")
        return job.progress()

    async def advance(self, job_id: str, batch_size: Optional[int] = None) -> dict:
        job = await self._load(job_id)
        if job.is_terminal:
            return job.progress()

        lock = self._locks.setdefault(job_id, asyncio.Lock())
        if lock.locked():
            self._log(job_id, "advance already in progress, returning current state")
            return job.progress()

        async with lock:
            try:
                return await self._advance(job_id, clamp_batch_size(batch_size, self.config.default_batch))
            finally:
                self._locks.pop(job_id, None)

    # =========================================================================
    # Slice Processing
    # =========================================================================

    async def _advance(self, job_id: str, batch_size: int) -> dict:
        job = await self._load(job_id)
        if job.is_terminal:
            return job.progress()

        if job.status != STATUS_RUNNING:
            try:
                job = await self.store.update(job_id, {"status": STATUS_RUNNING, "error": None},
                                              expect={"status": job.status})
            except CheckpointConflictError as e:
                self._log(job_id, f"running mark conflict: {e}")
                return (await self._load(job_id)).progress()

        try:
            job = await self._process_slice(job, batch_size)
            if job.is_terminal or job.processed < job.total:
                return job.progress()
            return (await self._complete(job)).progress()
        except CheckpointConflictError as e:
            self._log(job_id, f"checkpoint conflict, another invocation owns the job: {e}")
            return (await self._load(job_id)).progress()
        except Exception as e:
            message = (str(e) or e.__class__.__name__)[:MAX_ERROR_LENGTH]
            self._log(job_id, f"FATAL: {message}")
            try:
                await self.store.update(job_id, {"status": STATUS_ERROR, "error": message})
            except Exception as store_error:
                self._log(job_id, f"could not persist error status: {str(store_error)[:200]}")
            raise

    async def _process_slice(self, job: JobRecord, batch_size: int) -> JobRecord:
        start = job.processed
        rows = job.inputRows[start:start + batch_size]
        if not rows:
            return job

        labels = month_labels(job.periodFrom, job.periodTo)
        self._log(job.jobId, f"slice {start + 1}-{start + len(rows)} of {job.total}, labels {labels}")

        async with self.sessions.acquire(job.jobId) as session:
            site = self.site_factory(session.page, self.config, job.jobId)
            previous = job.results[start - 1] if start > 0 else None

            for offset, row in enumerate(rows):
                index = start + offset
                result = await self._process_row(job.jobId, session, site, row, labels, previous)

                results = list(job.results)
                results[index] = result
                job = await self.store.update(job.jobId, {"processed": index + 1, "results": results},
                                              expect={"processed": index})
                self._log(job.jobId, f"checkpoint {job.processed}/{job.total}: {row.article} "
                                     f"prices={result.prices}{' error=' + result.error if result.error else ''}")
                previous = result

                current = await self._load(job.jobId)
                if current.status == STATUS_CANCELED:
                    self._log(job.jobId, f"canceled after row {index + 1}")
                    return current

                if offset < len(rows) - 1:
                    await self._pause()
        return job

    async def _complete(self, job: JobRecord) -> JobRecord:
        self._log(job.jobId, "all rows processed, assembling report")
        url = await self.assembler.assemble(job)
        job = await self.store.update(job.jobId, {"status": STATUS_DONE, "resultFile": url, "error": None},
                                      expect={"status": STATUS_RUNNING})
        self._log(job.jobId, f"DONE. result: {url}")
        return job

    async def _pause(self) -> None:
        delay_ms = self.config.delay_ms + random.uniform(0, max(0, self.config.jitter_ms))
        await self.sleep(delay_ms / 1000)

    # =========================================================================
    # Row Pipeline
    # =========================================================================

    async def _process_row(self, job_id: str, session, site, row: InputRow, labels: List[str],
                           previous: Optional[ResultRecord]) -> ResultRecord:
        self._log(job_id, f"→ {row.article} / {row.brand}")
        try:
            result = await self._scrape_row(job_id, site, row, labels)
        except Exception as e:
            self._log(job_id, f"row {row.article} failed: {str(e)[:200]}")
            return ResultRecord.failed(row, f"{e.__class__.__name__}: {e}")

        if not is_suspect_duplicate(result, previous):
            return result

        self._log(job_id, f"row {row.article} repeats the previous row, retrying in a fresh tab")
        page = await session.new_page()
        try:
            fresh = await self._scrape_row(job_id, self.site_factory(page, self.config, job_id), row, labels)
        except Exception as e:
            self._log(job_id, f"fresh-tab retry failed: {str(e)[:200]}")
            return result
        finally:
            await page.close()

        if _has_data(fresh) and (fresh.prices != result.prices or fresh.stats != result.stats):
            self._log(job_id, f"fresh-tab retry replaced row {row.article}")
            return fresh
        return result

    async def _scrape_row(self, job_id: str, site, row: InputRow, labels: List[str]) -> ResultRecord:
        await site.search(row.article, row.brand)
        prices = await site.extract_top_offers(row.brand, row.article)
        view = await site.open_stats()

        image_url = await self.enrichment.capture_chart(row.article, row.brand, tag=job_id)
        vision = await self.enrichment.summarize_chart(image_url, labels, tag=job_id) if image_url else None

        scraped = {label: 0 for label in labels}
        if view is None:
            self._log(job_id, f"no statistics view for {row.article}")
        else:
            try:
                scraped = await self._scraped_stats(job_id, site, view.page, labels, scraped)
            finally:
                site.detach_listeners()
                if view.owned:
                    await view.page.close()

        return ResultRecord(
            article=row.article,
            brand=row.brand,
            prices=prices[:3],
            stats=choose_stats(scraped, vision, self.config.stats_preference),
            imageUrl=image_url,
            aiSummary=vision.summary if vision and vision.summary else None,
        )

    async def _scraped_stats(self, job_id: str, site, page, labels: List[str], empty: Dict[str, int]) -> Dict[str, int]:
        if site.is_captcha(page):
            self._log(job_id, f"captcha detected, sleeping {self.config.captcha_pause_ms // 1000}s then retry once")
            await self.sleep(self.config.captcha_pause_ms / 1000)
            await site.reload(page)
            if site.is_captcha(page):
                self._log(job_id, "captcha persists, zero stats for this row")
                return empty
        points = await site.extract_monthly_stats(labels, page)
        return project_counts(((p["label"], p["count"]) for p in points), labels)
