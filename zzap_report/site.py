"""
ZZAP site automation: search, top offers and monthly statistics.

Page-driving methods live on ZzapSite; the HTML parsing they rely on is in
plain functions so it can be exercised against saved markup.
"""

import asyncio
import html as html_lib
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup

from .config import ZzapConfig
from .models import NavigationError
from .months import label_for
from .session import goto
from .strategies import Strategy, found, not_found, run_strategies

MAX_OFFERS = 3

GRID_ROW_SELECTOR = 'tr[id*="SearchGridView_DXDataRow"], tr[id*="GridView_DXDataRow"]'
GRID_HEADER_SELECTOR = 'tr[id*="SearchGridView_DXHeadersRow"], tr[id*="GridView_DXHeadersRow"]'
GRID_READY_SELECTOR = 'tr[id*="SearchGridView_DXDataRow"], table[id*="SearchGridView_DXMainTable"], #ctl00_BodyPlace_SearchGridView'
PRICE_SELECTORS = ['span[class*="dxeBase_ZZap"].dx-nowrap', 'td.pricewhitecell']
SEARCH_INPUT_SELECTORS = [
    'input[id*="SearchTextBox"]',
    'input[name*="search" i]',
    'input[type="search"]',
    'input[placeholder*="номер" i]',
]
CHART_SELECTORS = ['.highcharts-container', 'div[id*="Chart"]', 'svg.highcharts-root', 'canvas']
STATS_CONTROL_SELECTOR = '[onclick*="statpartpricehistory" i], a:has-text("Статистика")'

PRICE_TOKEN_RE = re.compile(r"\d[\d\s.,]*")
STATS_URL_RE = re.compile(r"""['"]?([^'"\s<>]*statpartpricehistory\.aspx[^'"\s<>]*)""", re.IGNORECASE)
CAPTCHA_URL_RE = re.compile(r"/sys/captcha\.aspx", re.IGNORECASE)
SERIES_NAME_RE = re.compile(r"запрос|поиск|просмотр", re.IGNORECASE)
STATS_LABEL_RE = re.compile(r"\d{4}|янв|фев|мар|апр|ма[йя]|июн|июл|авг|сен|окт|ноя|дек", re.IGNORECASE)
BRAND_HEADER_RE = re.compile(r"бренд|производитель|марка|brand", re.IGNORECASE)
ARTICLE_HEADER_RE = re.compile(r"номер|артикул|article|part", re.IGNORECASE)
PRICE_HEADER_RE = re.compile(r"цена|price", re.IGNORECASE)

# DevExpress callbacks: the search grid POSTs back to search.aspx, the stats
# popup to statpartpricehistory.aspx. Bodies start with /*DX*/.
DX_MARKER = "/*DX*/"
DX_POLL_SECONDS = 0.2
SEARCH_CALLBACK_RE = re.compile(r"/public/search\.aspx", re.IGNORECASE)
STATS_CALLBACK_RE = re.compile(r"statpartpricehistory\.aspx", re.IGNORECASE)
DX_PRICE_SPAN_RE = re.compile(
    r'<span[^>]*class=\\?"[^"]*dxeBase_ZZap[^"]*dx-nowrap[^"]*"[^>]*>(.*?)</span>', re.IGNORECASE | re.DOTALL)
DX_CURRENCY_RE = re.compile(r"(?:руб|₽|\br\.|\bр\b)[^\d]*([\d\s.,]{3,})", re.IGNORECASE)
DX_POINT_RE = re.compile(r"x:\s*new\s+Date\(\s*(\d{4})\s*,\s*(\d{1,2})\s*,\s*1\s*\)[^\]]*?y:\s*\[(\d+)\]")
DX_OFFERS_RE = re.compile(r"предложен", re.IGNORECASE)

HIGHCHARTS_DUMP_SCRIPT = """
() => {
    const out = [];
    const charts = ((window.Highcharts && window.Highcharts.charts) || []).filter(c => c && c.series && c.xAxis);
    for (const ch of charts) {
        try {
            const categories = ((ch.xAxis[0] || {}).categories || []).map(String);
            const series = (ch.series || []).map(s => ({
                name: String((s && s.name) || ''),
                data: ((s && (s.options && s.options.data || s.data)) || []).map(p =>
                    typeof p === 'number' ? p : (p && typeof p === 'object' ? (p.y == null ? 0 : p.y) : 0)),
            }));
            out.push({categories, series});
        } catch (e) {}
    }
    return out;
}
"""


# =============================================================================
# Parsing Helpers
# =============================================================================

def normalize_price(text: Optional[str]) -> Optional[float]:
    """First numeric-looking token, separators kept, decimal comma to dot. None unless finite."""
    match = PRICE_TOKEN_RE.search(text or "")
    if not match:
        return None
    cleaned = re.sub(r"[^0-9.,]", "", match.group(0)).replace(",", ".", 1).replace(",", "")
    # "1.234.50" style leftovers: keep the last separator as the decimal point
    if cleaned.count(".") > 1:
        head, _, tail = cleaned.rpartition(".")
        cleaned = head.replace(".", "") + "." + tail
    cleaned = cleaned.rstrip(".")
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


@dataclass
class OfferRow:
    brand: str
    article: str
    price_text: str


def _cell_text(cell) -> str:
    return cell.get_text(" ", strip=True)


def _header_columns(soup) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    header = soup.select_one(GRID_HEADER_SELECTOR)
    if not header:
        return None, None, None
    brand_idx = article_idx = price_idx = None
    for i, cell in enumerate(header.find_all(["td", "th"], recursive=False)):
        text = _cell_text(cell)
        if brand_idx is None and BRAND_HEADER_RE.search(text):
            brand_idx = i
        elif article_idx is None and ARTICLE_HEADER_RE.search(text):
            article_idx = i
        elif price_idx is None and PRICE_HEADER_RE.search(text):
            price_idx = i
    return brand_idx, article_idx, price_idx


def parse_offer_rows(html: str) -> List[OfferRow]:
    """
    Read grid data rows in document order.

    Brand/article columns come from the grid header when present; otherwise
    the first two non-empty cells are taken as brand and article.
    """
    soup = BeautifulSoup(html or "", "lxml")
    brand_idx, article_idx, price_idx = _header_columns(soup)
    rows = []
    for tr in soup.select(GRID_ROW_SELECTOR):
        cells = tr.find_all("td", recursive=False)
        texts = [_cell_text(c) for c in cells]
        if brand_idx is not None and article_idx is not None and max(brand_idx, article_idx) < len(texts):
            brand, article = texts[brand_idx], texts[article_idx]
        else:
            filled = [t for t in texts if t]
            brand = filled[0] if filled else ""
            article = filled[1] if len(filled) > 1 else ""

        price_text = ""
        for selector in PRICE_SELECTORS:
            element = tr.select_one(selector)
            if element and _cell_text(element):
                price_text = _cell_text(element)
                break
        if not price_text and price_idx is not None and price_idx < len(texts):
            price_text = texts[price_idx]
        rows.append(OfferRow(brand=brand, article=article, price_text=price_text))
    return rows


def select_top_offers(rows: List[OfferRow], brand: str = "", article: Optional[str] = None) -> List[float]:
    want_brand = (brand or "").strip().lower()
    want_article = (article or "").strip().lower()
    prices = []
    for row in rows:
        if want_brand and want_brand not in row.brand.lower():
            continue
        if want_article and row.article.strip().lower() != want_article:
            continue
        price = normalize_price(row.price_text)
        if price is None:
            continue
        prices.append(price)
        if len(prices) >= MAX_OFFERS:
            break
    return prices


def find_stats_url(html: str, base_url: str) -> Optional[str]:
    """Statistics link from an anchor's href or onclick."""
    soup = BeautifulSoup(html or "", "lxml")
    for a in soup.find_all("a"):
        for attr in ("href", "onclick"):
            match = STATS_URL_RE.search(a.get(attr) or "")
            if match:
                return urljoin(base_url.rstrip("/") + "/", match.group(1).replace("&amp;", "&"))
    return None


def find_stats_iframe(html: str, base_url: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "lxml")
    for frame in soup.find_all("iframe"):
        src = frame.get("src") or ""
        if STATS_URL_RE.search(src):
            return urljoin(base_url.rstrip("/") + "/", src)
    return None


def pick_chart_points(charts: List[dict]) -> List[dict]:
    """
    First chart with categories: the series named like requests/search/views,
    or the sole series. Categories are zipped with its values.
    """
    for chart in charts or []:
        categories = chart.get("categories") or []
        if not categories:
            continue
        series_list = chart.get("series") or []
        target = next((s for s in series_list if SERIES_NAME_RE.search(str(s.get("name") or ""))), None)
        if target is None and len(series_list) == 1:
            target = series_list[0]
        data = (target or {}).get("data") or []
        if not data:
            continue
        points = []
        for label, value in zip(categories, data):
            if isinstance(value, dict):
                value = value.get("y")
            try:
                count = int(float(value or 0))
            except (TypeError, ValueError):
                count = 0
            points.append({"label": str(label), "count": count})
        return points
    return []


def parse_stats_table(html: str) -> List[dict]:
    soup = BeautifulSoup(html or "", "lxml")
    points = []
    for tr in soup.select("table tr"):
        cells = [_cell_text(td) for td in tr.find_all("td")]
        if len(cells) < 2 or not STATS_LABEL_RE.search(cells[0]):
            continue
        digits = re.sub(r"[^0-9]", "", cells[1])
        if digits:
            points.append({"label": cells[0], "count": int(digits)})
    return points


def _strip_markup(fragment: str) -> str:
    return html_lib.unescape(re.sub(r"<[^>]+>", " ", fragment or ""))


def parse_dx_prices(payload: str) -> List[float]:
    """
    Prices from search grid callbacks: ZZAP price spans in document order, or
    currency-tagged numbers when the payload has no price spans.
    """
    prices: List[float] = []
    spans = DX_PRICE_SPAN_RE.findall(payload or "")
    for text in spans:
        price = normalize_price(_strip_markup(text))
        if price:
            prices.append(price)
            if len(prices) >= MAX_OFFERS:
                break
    if spans:
        return prices
    for match in DX_CURRENCY_RE.finditer(payload or ""):
        price = normalize_price(match.group(1))
        if price:
            prices.append(price)
            if len(prices) >= MAX_OFFERS:
                break
    return prices


def pick_dx_payload(payloads: List[str]) -> Optional[str]:
    """Latest payload about requests/searches/views; else the latest that is not about offers; else the last."""
    if not payloads:
        return None
    for payload in reversed(payloads):
        if SERIES_NAME_RE.search(payload):
            return payload
    for payload in reversed(payloads):
        if not DX_OFFERS_RE.search(payload):
            return payload
    return payloads[-1]


def parse_dx_points(payload: str) -> List[dict]:
    """Chart points from a stats callback. Months in `new Date(y, m, 1)` are zero-based."""
    points = []
    for match in DX_POINT_RE.finditer(payload or ""):
        year, month = int(match.group(1)), int(match.group(2))
        year, month = year + month // 12, month % 12 + 1
        points.append({"label": label_for(year, month), "count": int(match.group(3))})
    return points


def build_search_urls(base_url: str, article: str, brand: str = "") -> List[str]:
    base = base_url.rstrip("/")
    art = quote(article, safe="")
    raw = f"{base}/public/search.aspx#rawdata={art}"
    if brand:
        raw += f"&class_man={quote(brand, safe='')}&partnumber={art}"
    return [
        raw,
        f"{base}/search/?article={art}",
        f"{base}/search?article={art}",
        f"{base}/search?txt={art}",
        f"{base}/catalog/?q={art}",
    ]


# =============================================================================
# Callback Capture
# =============================================================================

class DxCallbackListener:
    """
    Collects DevExpress callback bodies from a page's responses.

    Attach before the navigation or click that triggers the callbacks, then
    `collect` waits for the first body and for the burst to go quiet.
    """

    def __init__(self, page, url_re, tag: str, text_only: bool = False):
        self.page = page
        self.url_re = url_re
        self.tag = tag
        self.text_only = text_only
        self.payloads: List[str] = []
        self.last_at = 0.0
        self.attached = False

        async def on_response(response):
            await self._record(response)
        self._handler = on_response

    async def _record(self, response) -> None:
        if not self.url_re.search(response.url or ""):
            return
        if self.text_only:
            content_type = (response.headers or {}).get("content-type", "")
            if content_type and "text/plain" not in content_type.lower():
                return
        try:
            body = await response.text()
        except Exception as e:
            print(f"[{self.tag}] DX body unavailable: {str(e)[:80]}")
            return
        if DX_MARKER in (body or ""):
            self.payloads.append(body)
            self.last_at = asyncio.get_running_loop().time()

    def attach(self) -> "DxCallbackListener":
        if not self.attached:
            self.page.on("response", self._handler)
            self.attached = True
        return self

    def detach(self) -> None:
        if self.attached:
            self.page.remove_listener("response", self._handler)
            self.attached = False

    async def collect(self, max_wait_ms: int, idle_ms: int) -> List[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait_ms / 1000
        try:
            while not self.payloads and loop.time() < deadline:
                await asyncio.sleep(DX_POLL_SECONDS)
            while self.payloads and loop.time() < deadline and loop.time() - self.last_at < idle_ms / 1000:
                await asyncio.sleep(DX_POLL_SECONDS)
        finally:
            self.detach()
        return list(self.payloads)


# =============================================================================
# Page Adapter
# =============================================================================

@dataclass
class StatsView:
    page: object
    owned: bool = False


class ZzapSite:
    def __init__(self, page, config: ZzapConfig, tag: str = "site"):
        self.page = page
        self.config = config
        self.tag = tag
        self._offers_dx: Optional[DxCallbackListener] = None
        self._stats_dx: Optional[DxCallbackListener] = None

    def _listen(self, page, url_re, text_only: bool = False) -> DxCallbackListener:
        return DxCallbackListener(page, url_re, self.tag, text_only).attach()

    def detach_listeners(self) -> None:
        for listener in (self._offers_dx, self._stats_dx):
            if listener:
                listener.detach()
        self._offers_dx = self._stats_dx = None

    async def search(self, article: str, brand: str = "") -> None:
        """Open the search results for one row. Raises NavigationError if nothing loads."""
        strategies = []
        for url in build_search_urls(self.config.base_url, article, brand):
            strategies.append(Strategy(f"search-url {url.split('/', 3)[-1][:40]}", self._open_url(url)))
        strategies.append(Strategy("home-search-box", lambda: self._home_search(article)))

        # The grid callback can fire during navigation, so listen first
        self.detach_listeners()
        self._offers_dx = self._listen(self.page, SEARCH_CALLBACK_RE, text_only=True)
        result = await run_strategies(strategies, self.tag)
        if not result.success:
            self.detach_listeners()
            raise NavigationError(f"Search failed for {article}: {result.error}"[:500])
        try:
            await self.page.wait_for_selector(GRID_READY_SELECTOR, timeout=min(self.config.timeout_ms, 20000))
        except Exception:
            print(f"[{self.tag}] No result grid for {article}")

    def _open_url(self, url: str):
        async def run():
            if await goto(self.page, url, self.config.timeout_ms, self.tag):
                return found(url)
            return not_found("navigation error")
        return run

    async def _home_search(self, article: str):
        if not await goto(self.page, self.config.base_url, self.config.timeout_ms, self.tag):
            return not_found("home page did not load")
        for selector in SEARCH_INPUT_SELECTORS:
            element = await self.page.query_selector(selector)
            if element:
                await element.fill(article)
                await element.press("Enter")
                return found(selector)
        return not_found("no search input")

    async def _documents(self) -> List[str]:
        """HTML of the main document and every frame."""
        frames = getattr(self.page, "frames", None) or []
        if not frames:
            return [await self.page.content()]
        docs = []
        for frame in frames:
            try:
                docs.append(await frame.content())
            except Exception:
                continue
        return docs

    async def extract_top_offers(self, brand: str = "", article: Optional[str] = None) -> List[float]:
        """Grid callback payloads first, rendered grid second."""
        result = await run_strategies([
            Strategy("offers-dx-callback", self._dx_offers),
            Strategy("offers-grid-dom", lambda: self._dom_offers(brand, article)),
        ], self.tag)
        return result.value if result.success else []

    async def _dx_offers(self):
        listener, self._offers_dx = self._offers_dx, None
        if listener is None:
            return not_found("not listening")
        payloads = await listener.collect(self.config.dx_max_wait_ms, self.config.dx_idle_ms)
        prices = parse_dx_prices("\n\n".join(payloads))
        if not prices:
            return not_found(f"{len(payloads)} callbacks, no prices")
        print(f"[{self.tag}] {len(payloads)} grid callbacks, prices {prices}")
        return found(prices)

    async def _dom_offers(self, brand: str, article: Optional[str]):
        rows: List[OfferRow] = []
        for html in await self._documents():
            rows.extend(parse_offer_rows(html))
        prices = select_top_offers(rows, brand, article)
        print(f"[{self.tag}] {len(rows)} grid rows, prices {prices}")
        return found(prices)

    async def open_stats(self) -> Optional[StatsView]:
        """Statistics view for the current search, or None when no strategy opens it."""
        html = await self.page.content()
        if self._stats_dx:
            self._stats_dx.detach()
        self._stats_dx = self._listen(self.page, STATS_CALLBACK_RE)

        async def anchor():
            url = find_stats_url(html, self.config.base_url)
            if not url:
                return not_found("no stats link")
            if not await goto(self.page, url, self.config.timeout_ms, self.tag):
                return not_found("stats link did not load")
            return found(StatsView(self.page))

        async def iframe():
            url = find_stats_iframe(html, self.config.base_url)
            if not url:
                return not_found("no stats iframe")
            if not await goto(self.page, url, self.config.timeout_ms, self.tag):
                return not_found("stats iframe did not load")
            return found(StatsView(self.page))

        async def new_tab():
            element = await self.page.query_selector(STATS_CONTROL_SELECTOR)
            if not element:
                return not_found("no stats control")
            async with self.page.context.expect_page(timeout=self.config.timeout_ms) as info:
                await element.click()
            popup = await info.value
            # Callbacks now go to the popup
            self._stats_dx.detach()
            self._stats_dx = self._listen(popup, STATS_CALLBACK_RE)
            try:
                await popup.wait_for_load_state('domcontentloaded', timeout=self.config.timeout_ms)
            except Exception:
                pass
            return found(StatsView(popup, owned=True))

        result = await run_strategies([
            Strategy("stats-anchor", anchor),
            Strategy("stats-iframe", iframe),
            Strategy("stats-new-tab", new_tab),
        ], self.tag)
        if not result.success:
            self._stats_dx.detach()
            self._stats_dx = None
            return None
        return result.value

    def is_captcha(self, page=None) -> bool:
        return bool(CAPTCHA_URL_RE.search((page or self.page).url or ""))

    async def reload(self, page=None) -> None:
        page = page or self.page
        try:
            await page.reload(wait_until='domcontentloaded', timeout=self.config.timeout_ms)
        except Exception as e:
            print(f"[{self.tag}] Reload warning: {str(e)[:80]}")

    async def extract_monthly_stats(self, month_labels: List[str], page=None) -> List[dict]:
        """Stats callbacks first, chart state second, rendered table last. Returns raw [{label, count}] points."""
        page = page or self.page
        result = await run_strategies([
            Strategy("stats-dx-callback", self._dx_points),
            Strategy("stats-highcharts", lambda: self._chart_points(page)),
            Strategy("stats-table", lambda: self._table_points(page)),
        ], self.tag)
        return result.value if result.success else []

    async def _dx_points(self):
        listener, self._stats_dx = self._stats_dx, None
        if listener is None:
            return not_found("not listening")
        payloads = await listener.collect(self.config.dx_max_wait_ms, self.config.dx_idle_ms)
        points = parse_dx_points(pick_dx_payload(payloads) or "")
        if not points:
            return not_found(f"{len(payloads)} callbacks, no points")
        print(f"[{self.tag}] Callback stats: {len(points)} points from {len(payloads)} callbacks")
        return found(points)

    async def _chart_points(self, page):
        charts = await page.evaluate(HIGHCHARTS_DUMP_SCRIPT)
        points = pick_chart_points(charts)
        if not points:
            return not_found("no chart series")
        print(f"[{self.tag}] Chart stats: {len(points)} points")
        return found(points)

    async def _table_points(self, page):
        points = parse_stats_table(await page.content())
        print(f"[{self.tag}] Table stats: {len(points)} points")
        return found(points)
