"""Tests for ZZAP page parsing, callback capture and the navigation fallback chains."""

import asyncio

import pytest

from conftest import FakeContext, FakeElement, FakePage, FakeResponse
from zzap_report.models import NavigationError
from zzap_report.site import (
    SEARCH_CALLBACK_RE,
    STATS_CONTROL_SELECTOR,
    DxCallbackListener,
    OfferRow,
    ZzapSite,
    build_search_urls,
    find_stats_iframe,
    find_stats_url,
    normalize_price,
    parse_dx_points,
    parse_dx_prices,
    parse_offer_rows,
    parse_stats_table,
    pick_chart_points,
    pick_dx_payload,
    select_top_offers,
)

BASE = "https://www.zzap.ru"
STATS_URL = f"{BASE}/public/statpartpricehistory.aspx?code=77"
LABELS = ["июля-25", "августа-25"]

# Grid callback as captured from POST /public/search.aspx; the last span is JS-escaped
DX_SEARCH_PAYLOAD = """/*DX*/({'result':{'html':'<tr><td>SACHS</td><td><span class="dxeBase_ZZap dx-nowrap">1&nbsp;500 р.</span></td></tr>\
<tr><td>SACHS</td><td><span class="dxeBase_ZZap dx-nowrap">1 620,50 р.</span></td></tr>\
<tr><td>SACHS</td><td><span class="dxeBase_ZZap dx-nowrap">по запросу</span></td></tr>\
<tr><td>SACHS</td><td><span class=\\"dxeBase_ZZap dx-nowrap\\">1 700 р.</span></td></tr>'}})"""

DX_STATS_PAYLOAD = """/*DX*/({'result':{'series':[{'name':'Запросы','points':[\
{x: new Date(2025, 6, 1), y: [12]}, {x: new Date(2025,7,1), y: [30]}, {x: new Date(2025, 11, 1), y: [5]}]}]}})"""

STATS_TABLE_HTML = """
<table>
  <tr><td>Месяц</td><td>Запросы</td></tr>
  <tr><td>июль 2025</td><td>7</td></tr>
</table>
"""

GRID_HTML = """
<table id="ctl00_BodyPlace_SearchGridView_DXMainTable">
  <tr id="ctl00_BodyPlace_SearchGridView_DXHeadersRow0">
    <td>Производитель</td><td>Номер</td><td>Описание</td><td>Цена</td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow0">
    <td>SACHS</td><td>06A145710P</td><td>Ролик</td><td><span class="dxeBase_ZZap dx-nowrap">1 500 р.</span></td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow1">
    <td>TRW</td><td>06A145710P</td><td>Ролик</td><td>900 р.</td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow2">
    <td>Sachs Germany</td><td>06a145710p</td><td>Ролик</td><td>1620,50 р.</td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow3">
    <td>SACHS</td><td>06A145710PX</td><td>Другое</td><td>100 р.</td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow4">
    <td>SACHS</td><td>06A145710P</td><td>Ролик</td><td>по запросу</td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow5">
    <td>SACHS</td><td>06A145710P</td><td>Ролик</td><td>1 700</td>
  </tr>
  <tr id="ctl00_BodyPlace_SearchGridView_DXDataRow6">
    <td>SACHS</td><td>06A145710P</td><td>Ролик</td><td>1 800</td>
  </tr>
</table>
"""


# =============================================================================
# PRICES
# =============================================================================

class TestNormalizePrice:
    @pytest.mark.parametrize("text,expected", [
        ("1 500 р.", 1500.0),
        ("1620,50 руб", 1620.5),
        ("от 2.345,10", 2345.1),
        ("1.234.50", 1234.5),
        ("900", 900.0),
        ("12.", 12.0),
    ])
    def test_values(self, text, expected):
        assert normalize_price(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", [None, "", "по запросу", "—"])
    def test_no_number(self, text):
        assert normalize_price(text) is None


class TestOffers:
    def test_header_driven_rows(self):
        rows = parse_offer_rows(GRID_HTML)
        assert len(rows) == 7
        assert rows[0] == OfferRow("SACHS", "06A145710P", "1 500 р.")
        assert rows[1].price_text == "900 р."

    def test_top_three_in_document_order(self):
        prices = select_top_offers(parse_offer_rows(GRID_HTML), "sachs", "06A145710P")
        assert prices == [1500.0, 1620.5, 1700.0]

    def test_without_filters(self):
        prices = select_top_offers(parse_offer_rows(GRID_HTML))
        assert prices == [1500.0, 900.0, 1620.5]

    def test_headerless_grid(self):
        html = """
        <table><tr id="SearchGridView_DXDataRow0">
          <td></td><td>BOSCH</td><td>0986452041</td><td class="pricewhitecell">450 р.</td>
        </tr></table>
        """
        rows = parse_offer_rows(html)
        assert rows == [OfferRow("BOSCH", "0986452041", "450 р.")]

    def test_empty_page(self):
        assert parse_offer_rows("") == []


# =============================================================================
# STATISTICS
# =============================================================================

class TestStatsLinks:
    def test_anchor_href(self):
        html = '<a href="/public/statpartpricehistory.aspx?id=1&amp;x=2">Статистика</a>'
        assert find_stats_url(html, BASE) == f"{BASE}/public/statpartpricehistory.aspx?id=1&x=2"

    def test_anchor_onclick(self):
        html = """<a href="#" onclick="window.open('/public/StatPartPriceHistory.aspx?code=77')">Статистика</a>"""
        assert find_stats_url(html, BASE) == f"{BASE}/public/StatPartPriceHistory.aspx?code=77"

    def test_no_link(self):
        assert find_stats_url('<a href="/other">x</a>', BASE) is None

    def test_iframe(self):
        html = '<iframe src="/public/statpartpricehistory.aspx?code=5"></iframe>'
        assert find_stats_iframe(html, BASE) == f"{BASE}/public/statpartpricehistory.aspx?code=5"


class TestChartPoints:
    def test_named_series(self):
        charts = [{
            "categories": ["07.25", "08.25"],
            "series": [{"name": "Цена", "data": [1, 2]}, {"name": "Запросы", "data": [12, 30.0]}],
        }]
        assert pick_chart_points(charts) == [
            {"label": "07.25", "count": 12},
            {"label": "08.25", "count": 30},
        ]

    def test_single_unnamed_series(self):
        charts = [{"categories": ["07.25"], "series": [{"name": "", "data": [{"y": 4}]}]}]
        assert pick_chart_points(charts) == [{"label": "07.25", "count": 4}]

    def test_skips_charts_without_categories(self):
        charts = [
            {"categories": [], "series": [{"name": "Запросы", "data": [1]}]},
            {"categories": ["авг 2025"], "series": [{"name": "Поиск", "data": [None]}]},
        ]
        assert pick_chart_points(charts) == [{"label": "авг 2025", "count": 0}]

    def test_ambiguous_series(self):
        charts = [{"categories": ["07.25"], "series": [{"name": "a", "data": [1]}, {"name": "b", "data": [2]}]}]
        assert pick_chart_points(charts) == []

    def test_table(self):
        html = """
        <table>
          <tr><td>Месяц</td><td>Запросы</td></tr>
          <tr><td>июль 2025</td><td>1 204</td></tr>
          <tr><td>08.2025</td><td>30</td></tr>
          <tr><td>авг 2025</td><td>-</td></tr>
        </table>
        """
        assert parse_stats_table(html) == [
            {"label": "июль 2025", "count": 1204},
            {"label": "08.2025", "count": 30},
        ]


# =============================================================================
# SEARCH
# =============================================================================

class TestSearch:
    def test_search_urls(self):
        urls = build_search_urls(BASE + "/", "06A 145", "SACHS")
        assert urls[0] == f"{BASE}/public/search.aspx#rawdata=06A%20145&class_man=SACHS&partnumber=06A%20145"
        assert urls[1] == f"{BASE}/search/?article=06A%20145"
        assert len(urls) == 5

    @pytest.mark.asyncio
    async def test_first_url_wins(self, config):
        page = FakePage()
        await ZzapSite(page, config, "t").search("06A145710P", "SACHS")
        assert len(page.visits) == 1
        assert "rawdata=06A145710P" in page.visits[0]

    @pytest.mark.asyncio
    async def test_falls_back_to_next_url(self, config):
        first = build_search_urls(config.base_url, "06A145710P", "SACHS")[0]
        page = FakePage(failing=[first])
        await ZzapSite(page, config, "t").search("06A145710P", "SACHS")
        assert page.visits[1] == f"{BASE}/search/?article=06A145710P"

    @pytest.mark.asyncio
    async def test_everything_fails(self, config):
        page = FakePage(failing=["*"])
        with pytest.raises(NavigationError, match="Search failed for 06A145710P"):
            await ZzapSite(page, config, "t").search("06A145710P", "SACHS")
        assert len(page.visits) == 6

    @pytest.mark.asyncio
    async def test_extract_top_offers_from_page(self, config):
        page = FakePage(html=GRID_HTML)
        prices = await ZzapSite(page, config, "t").extract_top_offers("SACHS", "06A145710P")
        assert prices == [1500.0, 1620.5, 1700.0]

    @pytest.mark.asyncio
    async def test_monthly_stats_prefers_chart(self, config):
        page = FakePage(html="<table><tr><td>июль 2025</td><td>1</td></tr></table>")
        page.evaluate_results["Highcharts"] = [{"categories": ["07.25"], "series": [{"name": "Запросы", "data": [9]}]}]
        points = await ZzapSite(page, config, "t").extract_monthly_stats(["июля-25"])
        assert points == [{"label": "07.25", "count": 9}]

    @pytest.mark.asyncio
    async def test_monthly_stats_table_fallback(self, config):
        page = FakePage(html="<table><tr><td>июль 2025</td><td>1</td></tr></table>")
        points = await ZzapSite(page, config, "t").extract_monthly_stats(["июля-25"])
        assert points == [{"label": "июль 2025", "count": 1}]

    def test_captcha_detection(self, config):
        page = FakePage()
        page.url = f"{BASE}/sys/captcha.aspx?r=1"
        assert ZzapSite(page, config).is_captcha()
        page.url = f"{BASE}/public/search.aspx"
        assert not ZzapSite(page, config).is_captcha()

    @pytest.mark.asyncio
    async def test_home_search_box_after_every_url_fails(self, config):
        page = FakePage(failing=build_search_urls(config.base_url, "06A145710P", "SACHS"))
        box = FakeElement(page, 'input[id*="SearchTextBox"]')
        page.elements['input[id*="SearchTextBox"]'] = box

        await ZzapSite(page, config, "t").search("06A145710P", "SACHS")

        assert page.visits[-1] == BASE
        assert box.value == "06A145710P"
        assert page.keyboard.pressed == ["Enter"]

    @pytest.mark.asyncio
    async def test_home_page_without_search_input(self, config):
        page = FakePage(failing=build_search_urls(config.base_url, "06A145710P", "SACHS"))
        with pytest.raises(NavigationError, match="no search input"):
            await ZzapSite(page, config, "t").search("06A145710P", "SACHS")
        assert page.handlers["response"] == []


# =============================================================================
# DEVEXPRESS CALLBACKS
# =============================================================================

class BrokenResponse(FakeResponse):
    async def text(self):
        raise RuntimeError("Response body is unavailable for redirect responses")


class TestDxPayloads:
    def test_prices_from_grid_spans(self):
        assert parse_dx_prices(DX_SEARCH_PAYLOAD) == [1500.0, 1620.5, 1700.0]

    def test_prices_from_currency_when_no_spans(self):
        payload = "/*DX*/({'html':'<td>₽ 2 450</td><td>₽ 3 100,50</td>'})"
        assert parse_dx_prices(payload) == [2450.0, 3100.5]

    def test_no_prices(self):
        assert parse_dx_prices("/*DX*/({'html':'<td>нет предложений</td>'})") == []

    def test_points_use_zero_based_months(self):
        assert parse_dx_points(DX_STATS_PAYLOAD) == [
            {"label": "июля-25", "count": 12},
            {"label": "августа-25", "count": 30},
            {"label": "декабря-25", "count": 5},
        ]

    def test_pick_prefers_latest_request_payload(self):
        payloads = ["/*DX*/ Предложения", "/*DX*/ Запросы 1", "/*DX*/ Цены"]
        assert pick_dx_payload(payloads) == "/*DX*/ Запросы 1"

    def test_pick_avoids_offers(self):
        assert pick_dx_payload(["/*DX*/ Цены", "/*DX*/ Предложения"]) == "/*DX*/ Цены"
        assert pick_dx_payload(["/*DX*/ Предложения 1", "/*DX*/ Предложения 2"]) == "/*DX*/ Предложения 2"
        assert pick_dx_payload([]) is None


class TestDxCallbackListener:
    @pytest.mark.asyncio
    async def test_collects_matching_callbacks_only(self):
        page = FakePage()
        listener = DxCallbackListener(page, SEARCH_CALLBACK_RE, "t", text_only=True).attach()

        await page.emit("response", FakeResponse(f"{BASE}/public/search.aspx", DX_SEARCH_PAYLOAD))
        await page.emit("response", FakeResponse(f"{BASE}/public/search.aspx", "<html>grid</html>"))
        await page.emit("response", FakeResponse(f"{BASE}/public/search.aspx", "/*DX*/({})", content_type="text/html"))
        await page.emit("response", FakeResponse(f"{BASE}/scripts/app.js", "/*DX*/({})"))
        await page.emit("response", BrokenResponse(f"{BASE}/public/search.aspx", ""))

        assert await listener.collect(0, 0) == [DX_SEARCH_PAYLOAD]
        assert page.handlers["response"] == []

    @pytest.mark.asyncio
    async def test_waits_for_late_callback(self):
        page = FakePage()
        listener = DxCallbackListener(page, SEARCH_CALLBACK_RE, "t").attach()

        async def late():
            await asyncio.sleep(0.05)
            await page.emit("response", FakeResponse(f"{BASE}/public/search.aspx", DX_SEARCH_PAYLOAD))
        task = asyncio.create_task(late())

        assert await listener.collect(2000, 0) == [DX_SEARCH_PAYLOAD]
        await task


class TestOffersFromCallbacks:
    @pytest.mark.asyncio
    async def test_callback_prices_win_over_grid(self, config):
        first = build_search_urls(config.base_url, "06A145710P", "SACHS")[0]
        page = FakePage(pages={first: ""})
        page.responses[first] = [FakeResponse(f"{BASE}/public/search.aspx", DX_SEARCH_PAYLOAD)]
        site = ZzapSite(page, config, "t")

        await site.search("06A145710P", "SACHS")
        prices = await site.extract_top_offers("SACHS", "06A145710P")

        assert prices == [1500.0, 1620.5, 1700.0]
        assert page.handlers["response"] == []

    @pytest.mark.asyncio
    async def test_grid_when_no_callback(self, config):
        first = build_search_urls(config.base_url, "06A145710P", "SACHS")[0]
        page = FakePage(pages={first: GRID_HTML})
        site = ZzapSite(page, config, "t")

        await site.search("06A145710P", "SACHS")

        assert await site.extract_top_offers("SACHS", "06A145710P") == [1500.0, 1620.5, 1700.0]


# =============================================================================
# STATISTICS VIEW
# =============================================================================

class TestOpenStats:
    @pytest.mark.asyncio
    async def test_anchor(self, config):
        page = FakePage(pages={STATS_URL: STATS_TABLE_HTML},
                        html='<a href="/public/statpartpricehistory.aspx?code=77">Статистика</a>')
        site = ZzapSite(page, config, "t")

        view = await site.open_stats()

        assert view.page is page
        assert not view.owned
        assert page.url == STATS_URL
        assert await site.extract_monthly_stats(LABELS, view.page) == [{"label": "июль 2025", "count": 7}]

    @pytest.mark.asyncio
    async def test_anchor_callbacks_win_over_table(self, config):
        page = FakePage(pages={STATS_URL: STATS_TABLE_HTML},
                        html='<a href="/public/statpartpricehistory.aspx?code=77">Статистика</a>')
        page.responses[STATS_URL] = [FakeResponse(STATS_URL, DX_STATS_PAYLOAD, content_type="text/html")]
        site = ZzapSite(page, config, "t")

        view = await site.open_stats()
        points = await site.extract_monthly_stats(LABELS, view.page)

        assert points[:2] == [{"label": "июля-25", "count": 12}, {"label": "августа-25", "count": 30}]
        assert page.handlers["response"] == []

    @pytest.mark.asyncio
    async def test_iframe_when_anchor_fails(self, config):
        iframe_url = f"{BASE}/public/statpartpricehistory.aspx?code=5"
        page = FakePage(
            failing=[STATS_URL],
            pages={iframe_url: STATS_TABLE_HTML},
            html='<a href="/public/statpartpricehistory.aspx?code=77">Статистика</a>'
                 '<iframe src="/public/statpartpricehistory.aspx?code=5"></iframe>',
        )

        view = await ZzapSite(page, config, "t").open_stats()

        assert view.page is page
        assert page.visits == [STATS_URL, iframe_url]
        assert page.url == iframe_url

    @pytest.mark.asyncio
    async def test_iframe_only(self, config):
        page = FakePage(html='<iframe src="/public/statpartpricehistory.aspx?code=5"></iframe>')

        view = await ZzapSite(page, config, "t").open_stats()

        assert view.page is page
        assert page.visits == [f"{BASE}/public/statpartpricehistory.aspx?code=5"]

    @pytest.mark.asyncio
    async def test_new_tab(self, config):
        page = FakePage()
        control = FakeElement(page, STATS_CONTROL_SELECTOR)
        page.elements[STATS_CONTROL_SELECTOR] = control
        popup = FakePage(html=STATS_TABLE_HTML)
        page.context = FakeContext([])
        page.context.popups.append(popup)
        site = ZzapSite(page, config, "t")

        view = await site.open_stats()

        assert view.page is popup
        assert view.owned
        assert control.clicked == 1
        assert page.handlers["response"] == []
        assert len(popup.handlers["response"]) == 1

        assert await site.extract_monthly_stats(LABELS, view.page) == [{"label": "июль 2025", "count": 7}]
        assert popup.handlers["response"] == []

    @pytest.mark.asyncio
    async def test_no_view(self, config):
        page = FakePage(html="<p>Нет данных</p>")

        assert await ZzapSite(page, config, "t").open_stats() is None
        assert page.handlers["response"] == []
