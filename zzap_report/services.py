"""Wires the configured collaborators together."""

from dataclasses import dataclass
from typing import Optional

from .capture import ChartCapture
from .config import ZzapConfig, get_config
from .cookies import FileCookieStore
from .enrichment import EnrichmentClient
from .processor import BatchProcessor
from .report import ReportAssembler
from .session import SessionManager
from .storage import get_storage
from .store import get_job_store
from .vision import GeminiVision


@dataclass
class Services:
    config: ZzapConfig
    store: object
    processor: BatchProcessor
    capture: ChartCapture
    vision: GeminiVision
    enrichment: Optional[EnrichmentClient] = None

    async def close(self) -> None:
        """Close the HTTP clients held by the enrichment client and the job store."""
        for resource in (self.enrichment, self.store):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


def build_services(config: ZzapConfig = None) -> Services:
    config = config or get_config()
    store = get_job_store(config)
    storage = get_storage(config)
    sessions = SessionManager(config, FileCookieStore(config.cookie_file))
    enrichment = EnrichmentClient(config.screenshot_url, config.vision_url)
    processor = BatchProcessor(
        store=store,
        sessions=sessions,
        enrichment=enrichment,
        assembler=ReportAssembler(storage),
        config=config,
    )
    return Services(
        config=config,
        store=store,
        processor=processor,
        capture=ChartCapture(sessions, storage),
        vision=GeminiVision(config),
        enrichment=enrichment,
    )
