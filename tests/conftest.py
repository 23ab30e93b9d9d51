"""Shared fakes: browser pages, sessions, site adapter and enrichment."""

import inspect
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

import pytest

from zzap_report.config import ZzapConfig
from zzap_report.enrichment import VisionSummary
from zzap_report.models import AuthError, InputRow, JobRecord, NavigationError
from zzap_report.report import ReportAssembler
from zzap_report.site import StatsView
from zzap_report.storage import LocalStorage
from zzap_report.store import InMemoryJobStore, new_job


# =============================================================================
# Browser Fakes
# =============================================================================

class FakeKeyboard:
    def __init__(self, page):
        self.page = page
        self.pressed: List[str] = []

    async def press(self, key):
        self.pressed.append(key)
        if self.page.on_press:
            self.page.on_press(self.page, key)


class FakeElement:
    def __init__(self, page, selector, on_click=None, box=None):
        self.page = page
        self.selector = selector
        self.on_click = on_click
        self.box = box
        self.value = None
        self.clicked = 0

    async def fill(self, value):
        self.value = value

    async def click(self):
        self.clicked += 1
        if self.on_click:
            self.on_click(self.page)

    async def press(self, key):
        await self.page.keyboard.press(key)

    async def bounding_box(self):
        return self.box

    async def screenshot(self, type='png'):
        return b"element-" + self.selector.encode()


class FakeResponse:
    def __init__(self, url, body, content_type="text/plain; charset=utf-8"):
        self.url = url
        self.body = body
        self.headers = {"content-type": content_type} if content_type else {}

    async def text(self):
        return self.body


class FakePage:
    """
    Scriptable stand-in for a Playwright page.

    `pages` maps URL -> HTML; navigation to a URL in `failing` raises.
    `responses` maps URL -> FakeResponses emitted after navigating there.
    """

    def __init__(self, pages: Optional[Dict[str, str]] = None, failing=None, html: str = ""):
        self.pages = pages or {}
        self.failing = set(failing or [])
        self.html = html
        self.url = "about:blank"
        self.visits: List[str] = []
        self.elements: Dict[str, FakeElement] = {}
        self.evaluate_results: Dict[str, object] = {}
        self.keyboard = FakeKeyboard(self)
        self.on_press = None
        self.frames = []
        self.closed = False
        self.handlers: Dict[str, list] = {}
        self.responses: Dict[str, List[FakeResponse]] = {}
        self.context = None

    async def goto(self, url, wait_until=None, timeout=None):
        self.visits.append(url)
        if url in self.failing or "*" in self.failing:
            raise RuntimeError(f"net::ERR_CONNECTION_RESET at {url}")
        self.url = url
        if url in self.pages:
            self.html = self.pages[url]
        for response in self.responses.get(url, []):
            await self.emit("response", response)

    async def wait_for_load_state(self, state=None, timeout=None):
        return None

    async def wait_for_selector(self, selector, timeout=None):
        return None

    async def content(self):
        return self.html

    async def query_selector(self, selector):
        return self.elements.get(selector)

    async def query_selector_all(self, selector):
        element = self.elements.get(selector)
        return [element] if element else []

    async def evaluate(self, script, arg=None):
        for key, value in self.evaluate_results.items():
            if key in script:
                return value(self) if callable(value) else value
        return None

    async def reload(self, wait_until=None, timeout=None):
        return None

    async def screenshot(self, type='png', full_page=False):
        return b"full-page"

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        self.handlers.get(event, []).remove(handler)

    async def emit(self, event, payload):
        for handler in list(self.handlers.get(event, [])):
            result = handler(payload)
            if inspect.isawaitable(result):
                await result

    async def close(self):
        self.closed = True


class FakePageInfo:
    def __init__(self, page):
        self._page = page

    @property
    def value(self):
        async def get():
            return self._page
        return get()


class FakeContext:
    def __init__(self, pages: List[FakePage], cookies: Optional[List[dict]] = None):
        self.pages = list(pages)
        self.jar = list(cookies or [])
        self.added: List[dict] = []
        self.closed = False
        self.popups: List[FakePage] = []

    @asynccontextmanager
    async def expect_page(self, timeout=None):
        yield FakePageInfo(self.popups.pop(0))

    async def add_cookies(self, cookies):
        self.added.extend(cookies)
        self.jar.extend(cookies)

    async def cookies(self):
        return list(self.jar)

    async def new_page(self):
        return self.pages.pop(0) if self.pages else FakePage()

    async def close(self):
        self.closed = True


def fake_launcher(context: FakeContext):
    @asynccontextmanager
    async def launcher(config):
        try:
            yield context
        finally:
            context.closed = True
    return launcher


# =============================================================================
# Processor Fakes
# =============================================================================

class SiteScript:
    """Per-article behaviour for FakeSite instances."""

    def __init__(self):
        self.prices: Dict[str, List[float]] = {}
        self.points: Dict[str, List[dict]] = {}
        self.fail_search = set()
        self.no_stats = set()
        self.captcha: Dict[str, int] = {}
        self.on_search = None
        self.searched: List[str] = []
        self.pages_used: List[object] = []
        self.reloads = 0
        self.detached = 0

    def factory(self, page, config, tag="site"):
        self.pages_used.append(page)
        return FakeSite(self, page)


class FakeSite:
    def __init__(self, script: SiteScript, page):
        self.script = script
        self.page = page
        self.article = None

    async def search(self, article, brand=""):
        self.article = article
        self.script.searched.append(article)
        if self.script.on_search:
            await self.script.on_search(article)
        if article in self.script.fail_search:
            raise NavigationError(f"Search failed for {article}: every candidate URL failed")

    async def extract_top_offers(self, brand="", article=None):
        return list(self.script.prices.get(self.article, []))

    async def open_stats(self):
        if self.article in self.script.no_stats:
            return None
        return StatsView(self.page)

    def is_captcha(self, page=None):
        remaining = self.script.captcha.get(self.article, 0)
        if remaining > 0:
            self.script.captcha[self.article] = remaining - 1
            return True
        return False

    async def reload(self, page=None):
        self.script.reloads += 1

    async def extract_monthly_stats(self, labels, page=None):
        return list(self.script.points.get(self.article, []))

    def detach_listeners(self):
        self.script.detached += 1


class FakeSession:
    def __init__(self, page=None):
        self.page = page or FakePage()
        self.extra_pages: List[FakePage] = []

    async def new_page(self):
        page = FakePage()
        self.extra_pages.append(page)
        return page


class FakeSessions:
    def __init__(self, config, fail: Optional[str] = None, page_factory: Callable = FakePage):
        self.config = config
        self.fail = fail
        self.page_factory = page_factory
        self.acquired = 0
        self.released = 0
        self.sessions: List[FakeSession] = []

    @asynccontextmanager
    async def acquire(self, tag="session"):
        self.acquired += 1
        if self.fail:
            raise AuthError(self.fail)
        session = FakeSession(self.page_factory())
        self.sessions.append(session)
        try:
            yield session
        finally:
            self.released += 1


class FakeEnrichment:
    def __init__(self, images=None, vision=None):
        self.images: Dict[str, str] = images or {}
        self.vision: Dict[str, VisionSummary] = vision or {}
        self.captured: List[str] = []
        self.summarized: List[str] = []

    async def capture_chart(self, article, brand, tag="enrich"):
        self.captured.append(article)
        return self.images.get(article)

    async def summarize_chart(self, image_url, labels, tag="enrich"):
        self.summarized.append(image_url)
        return self.vision.get(image_url)


class CountingAssembler(ReportAssembler):
    """ReportAssembler that counts assemble calls."""

    def __init__(self, storage, **kwargs):
        super().__init__(storage, **kwargs)
        self.calls = 0

    async def assemble(self, job):
        self.calls += 1
        return await super().assemble(job)


async def no_sleep(seconds):
    no_sleep.calls.append(seconds)


no_sleep.calls = []


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config(tmp_path):
    return ZzapConfig(
        base_url="https://www.zzap.ru",
        email="buyer@example.com",
        password="secret",
        write_dir=str(tmp_path),
        delay_ms=0,
        jitter_ms=0,
        captcha_pause_ms=1000,
        dx_idle_ms=0,
        dx_max_wait_ms=0,
        job_log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "uploads"))


@pytest.fixture
def assembler(storage):
    return CountingAssembler(storage)


@pytest.fixture
def script():
    return SiteScript()


@pytest.fixture
def sleep_calls():
    no_sleep.calls = []
    return no_sleep.calls


def make_job(job_id="job_1", rows=None, period_from="2025-07-01", period_to="2025-08-01") -> JobRecord:
    rows = rows if rows is not None else [InputRow("06A145710P", "SACHS")]
    return new_job(job_id, rows, period_from, period_to)
