"""
HTTP clients for the enrichment collaborators.

- Screenshot: POST {article, brand} -> {imageUrl}
- Vision:     POST {imageUrl, monthLabels} -> {summary, stats}

Both are optional. A missing URL, a transport error or a bad response is
logged and yields None; enrichment never fails a row.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

ENRICHMENT_MAX_RETRIES = 2
ENRICHMENT_BASE_DELAY = 1.0
ENRICHMENT_MAX_DELAY = 8.0
SCREENSHOT_TIMEOUT = 120.0
VISION_TIMEOUT = 60.0


@dataclass
class VisionSummary:
    summary: str = ""
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def has_counts(self) -> bool:
        """True when at least one month has a non-zero count."""
        return any(v > 0 for v in self.stats.values())


def _to_count(value) -> int:
    try:
        return max(0, int(float(str(value).replace(" ", "").replace(",", "."))))
    except (TypeError, ValueError):
        return 0


def normalize_vision_stats(stats, labels: List[str]) -> Dict[str, int]:
    """Keep exactly the requested labels; unknown or missing values become 0."""
    stats = stats if isinstance(stats, dict) else {}
    return {label: _to_count(stats.get(label, 0)) for label in labels}


class EnrichmentClient:
    def __init__(self, screenshot_url: str = "", vision_url: str = "",
                 client: Optional[httpx.AsyncClient] = None,
                 max_retries: int = ENRICHMENT_MAX_RETRIES, base_delay: float = ENRICHMENT_BASE_DELAY):
        self.screenshot_url = screenshot_url
        self.vision_url = vision_url
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(SCREENSHOT_TIMEOUT))
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff + jitter."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), ENRICHMENT_MAX_DELAY)
        jitter = random.uniform(0, delay * 0.3)
        return delay + jitter

    async def _post_json(self, url: str, payload: dict, timeout: float, tag: str) -> Optional[dict]:
        client = await self._get_client()
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.post(url, json=payload, timeout=timeout)
                if response.status_code < 400:
                    data = response.json()
                    if isinstance(data, dict):
                        return data
                    last_error = "response is not an object"
                elif response.status_code < 500 and response.status_code != 429:
                    # Client errors won't improve on retry
                    print(f"[{tag}] {url} -> {response.status_code}: {response.text[:100]}")
                    return None
                else:
                    last_error = f"HTTP {response.status_code}"
            except httpx.TimeoutException:
                last_error = "Request timeout"
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e)[:100]

            if attempt < self.max_retries:
                delay = self._calculate_delay(attempt)
                print(f"[{tag}] {last_error}, retry in {delay:.1f}s ({attempt + 1}/{self.max_retries})")
                await asyncio.sleep(delay)

        print(f"[{tag}] {url} failed after {self.max_retries} attempts: {last_error}")
        return None

    async def capture_chart(self, article: str, brand: str, tag: str = "enrich") -> Optional[str]:
        if not self.screenshot_url:
            return None
        data = await self._post_json(self.screenshot_url, {"article": article, "brand": brand},
                                     SCREENSHOT_TIMEOUT, tag)
        image_url = (data or {}).get("imageUrl") or (data or {}).get("url")
        return str(image_url) if image_url else None

    async def summarize_chart(self, image_url: str, labels: List[str], tag: str = "enrich") -> Optional[VisionSummary]:
        if not self.vision_url or not image_url:
            return None
        data = await self._post_json(self.vision_url, {"imageUrl": image_url, "monthLabels": labels},
                                     VISION_TIMEOUT, tag)
        if data is None:
            return None
        return VisionSummary(
            summary=str(data.get("summary") or ""),
            stats=normalize_vision_stats(data.get("stats"), labels),
        )
