"""
Chart screenshots for the screenshot collaborator endpoint.

Searches the article, opens the statistics view, screenshots the largest
chart element (full page if none), compresses it to WebP and uploads it.
"""

import re
import uuid
from datetime import datetime, timezone
from io import BytesIO
from typing import Optional, Tuple

from .site import CHART_SELECTORS, ZzapSite
from .storage import WEBP_CONTENT_TYPE


def compress_image(image_bytes: bytes, quality: int = 85) -> Tuple[bytes, dict]:
    """Compress PNG image to optimized WebP."""
    from PIL import Image

    original_size = len(image_bytes)
    img = Image.open(BytesIO(image_bytes))
    if img.mode == 'P':
        img = img.convert('RGBA')

    output = BytesIO()
    img.save(output, format='WEBP', quality=quality, method=6)
    compressed = output.getvalue()

    stats = {
        'original_size': original_size,
        'compressed_size': len(compressed),
        'reduction_percent': round((1 - len(compressed) / original_size) * 100, 1) if original_size else 0,
    }
    return compressed, stats


def screenshot_key(article: str, brand: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    slug = re.sub(r"[^A-Za-z0-9_-]+", "_", f"{brand}_{article}".strip("_")) or "chart"
    return f"screenshots/zzap/{now.strftime('%Y/%m/%d')}/{slug[:60]}_{uuid.uuid4().hex[:8]}.webp"


async def largest_chart_screenshot(page) -> bytes:
    best, best_area = None, 0
    for selector in CHART_SELECTORS:
        for element in await page.query_selector_all(selector):
            box = await element.bounding_box()
            if box and box["width"] * box["height"] > best_area:
                best, best_area = element, box["width"] * box["height"]
    if best is not None:
        return await best.screenshot(type='png')
    return await page.screenshot(type='png', full_page=True)


class ChartCapture:
    def __init__(self, sessions, storage, site_factory=ZzapSite):
        self.sessions = sessions
        self.storage = storage
        self.site_factory = site_factory

    async def capture(self, article: str, brand: str = "") -> Tuple[Optional[str], Optional[str]]:
        """Returns (imageUrl, error). AuthError and NavigationError propagate."""
        tag = f"capture {article}"
        async with self.sessions.acquire(tag) as session:
            site = self.site_factory(session.page, self.sessions.config, tag)
            await site.search(article, brand)
            view = await site.open_stats()
            page = view.page if view else session.page
            try:
                png = await largest_chart_screenshot(page)
            finally:
                site.detach_listeners()
                if view and view.owned:
                    await view.page.close()

        webp, stats = compress_image(png)
        print(f"[{tag}] Screenshot {stats['original_size']:,} -> {stats['compressed_size']:,} bytes")
        return await self.storage.upload_async(webp, screenshot_key(article, brand), WEBP_CONTENT_TYPE)
