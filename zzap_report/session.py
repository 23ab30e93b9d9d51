"""
Authenticated browser sessions against the ZZAP site.

One acquisition owns one Chromium instance. Saved cookies younger than the
configured TTL are restored first; if the site does not show the logged-in
marker, the login form is filled and submitted through an ordered list of
submit strategies. Cookies are flushed and the browser closed on every exit.
"""

import asyncio
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from bs4 import BeautifulSoup

from .config import ZzapConfig
from .models import AuthError
from .strategies import Strategy, found, not_found, run_strategies

USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/131.0.0.0 Safari/537.36'
BROWSER_ARGS = ['--no-sandbox', '--disable-setuid-sandbox', '--disable-dev-shm-usage', '--disable-gpu']

LOGOUT_SELECTOR = "#ctl00_lnkLogout"
LOGOUT_TEXT_RE = re.compile(r"выход|logout|logoff", re.IGNORECASE)
LOGON_URL_RE = re.compile(r"/logon\.aspx", re.IGNORECASE)

LOGIN_FORM_PREFIX = "ctl00_BodyPlace_LogonFormCallbackPanel_LogonFormLayout_"
LOGIN_PANEL_SELECTOR = "#ctl00_BodyPlace_LogonFormCallbackPanel"

# First match wins
EMAIL_SELECTORS = [
    f"#{LOGIN_FORM_PREFIX}AddrEmail1TextBox_I",
    'input[type="email"]',
    'input[name*="mail" i]',
]
PASSWORD_SELECTORS = [
    f"#{LOGIN_FORM_PREFIX}PasswordTextBox_I",
    'input[type="password"]',
]
SUBMIT_SELECTORS = [
    "#ctl00_ContentPlaceHolder1_Login1_LoginButton",
    "#ctl00_ContentPlaceHolder1_btnLogin",
    'button[type="submit" i]',
    'input[type="submit" i]',
]

PANEL_BUTTON_SCRIPT = """
(panelSelector) => {
    const panel = document.querySelector(panelSelector) || document;
    const rx = /войти|вход|login|log in|sign in/i;
    const candidates = panel.querySelectorAll('button, input[type="button"], input[type="submit"], a, [role="button"], .dxbButton');
    for (const el of candidates) {
        const text = (el.innerText || el.value || el.textContent || '').trim();
        if (rx.test(text)) { el.click(); return true; }
    }
    return false;
}
"""

FORM_SUBMIT_SCRIPT = """
(base) => {
    const w = window;
    const coll = w.ASPx && w.ASPx.GetControlCollection ? w.ASPx.GetControlCollection() : null;
    const get = (name) => coll && coll.Get ? coll.Get(base + name) : null;
    const btn = get('LoginButton') || get('LogonButton') || get('btnLogin');
    if (btn && btn.DoClick) { btn.DoClick(); return 'devexpress'; }
    if (typeof w.__doPostBack === 'function') {
        w.__doPostBack((base + 'LoginButton').replace(/_/g, '$'), '');
        return 'postback';
    }
    const field = document.querySelector('input[type="password"]');
    const form = field ? field.closest('form') : document.querySelector('form');
    if (form) { form.submit(); return 'form'; }
    return '';
}
"""


def is_authenticated_html(html: str) -> bool:
    """Logged-in marker: the logout control, or any link reading выход/logout/logoff."""
    soup = BeautifulSoup(html or "", "lxml")
    if soup.select_one(LOGOUT_SELECTOR):
        return True
    return any(LOGOUT_TEXT_RE.search(a.get_text(strip=True)) for a in soup.find_all("a"))


def parse_proxy(proxy_url: Optional[str]) -> Optional[dict]:
    if not proxy_url:
        return None
    from urllib.parse import urlparse, unquote

    p = urlparse(proxy_url)
    return {
        "server": f"http://{p.hostname}:{p.port or 80}",
        "username": unquote(p.username) if p.username else None,
        "password": unquote(p.password) if p.password else None,
    }


@asynccontextmanager
async def launch_browser_context(config: ZzapConfig):
    """Headless Chromium with stealth and the optional proxy. Closed on exit."""
    from playwright.async_api import async_playwright
    from playwright_stealth import Stealth

    async with async_playwright() as p:
        launch_args = {'headless': True, 'args': BROWSER_ARGS}
        if config.chromium_path:
            launch_args['executable_path'] = config.chromium_path
        browser = await p.chromium.launch(**launch_args)
        try:
            ctx_args = {
                'user_agent': USER_AGENT,
                'viewport': {'width': 1920, 'height': 1080},
                'locale': 'ru-RU',
                'timezone_id': 'Europe/Moscow',
            }
            proxy_config = parse_proxy(config.proxy_url)
            if proxy_config:
                ctx_args['proxy'] = proxy_config

            context = await browser.new_context(**ctx_args)
            await Stealth().apply_stealth_async(context)
            try:
                yield context
            finally:
                await context.close()
        finally:
            await browser.close()


async def goto(page, url: str, timeout_ms: int, tag: str = "session") -> bool:
    """Navigate and wait for the network to settle. Returns False on a navigation error."""
    try:
        await page.goto(url, wait_until='domcontentloaded', timeout=timeout_ms)
    except Exception as e:
        print(f"[{tag}] Navigation warning {url}: {str(e)[:80]}")
        return False
    try:
        await page.wait_for_load_state('networkidle', timeout=min(timeout_ms, 10000))
    except Exception:
        pass
    return True


async def dismiss_dialog(dialog) -> None:
    await dialog.dismiss()


@dataclass
class BrowserSession:
    """An authenticated context plus its main page."""
    context: Any
    page: Any
    timeout_ms: int
    saved_at: Optional[int] = None
    authenticated: bool = False

    async def new_page(self):
        page = await self.context.new_page()
        page.set_default_timeout(self.timeout_ms)
        page.on("dialog", dismiss_dialog)
        return page


class SessionManager:
    """
    Acquires authenticated sessions.

    `cookie_store` is any object with load() / save(cookies, saved_at).
    `launcher` is an async context manager factory taking the config and
    yielding a browser context; tests pass a fake.
    """

    def __init__(self, config: ZzapConfig, cookie_store, launcher: Optional[Callable] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.cookie_store = cookie_store
        self.launcher = launcher or launch_browser_context
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @asynccontextmanager
    async def acquire(self, tag: str = "session"):
        if not self.config.has_credentials:
            raise AuthError("ZZAP_EMAIL / ZZAP_PASSWORD not configured")

        async with self.launcher(self.config) as context:
            session = BrowserSession(context=context, page=None, timeout_ms=self.config.timeout_ms)
            try:
                session.saved_at = await self._restore_cookies(context, tag)
                session.page = await session.new_page()
                await self._authenticate(session, tag)
                yield session
            finally:
                if session.authenticated:
                    await self._flush_cookies(session, tag)

    async def _restore_cookies(self, context, tag: str) -> Optional[int]:
        snapshot = self.cookie_store.load()
        if not snapshot:
            return None
        cookies, saved_at = snapshot
        age_minutes = (self._now_ms() - saved_at) / 60000
        if not cookies or age_minutes > self.config.session_ttl_minutes:
            print(f"[{tag}] Saved session expired ({age_minutes:.0f} min)")
            return None
        await context.add_cookies(cookies)
        print(f"[{tag}] Restored {len(cookies)} cookies ({age_minutes:.0f} min old)")
        return saved_at

    async def is_authenticated(self, page) -> bool:
        try:
            return is_authenticated_html(await page.content())
        except Exception:
            return False

    async def _authenticate(self, session: BrowserSession, tag: str) -> None:
        page = session.page
        await goto(page, self.config.base_url, self.config.timeout_ms, tag)
        if await self.is_authenticated(page):
            print(f"[{tag}] auth: already logged in")
            session.authenticated = True
            return

        print(f"[{tag}] auth: logging in")
        await goto(page, self.config.login_url, self.config.timeout_ms, tag)
        if not await self._fill_first(page, EMAIL_SELECTORS, self.config.email):
            raise AuthError("Login form not found: no email field")
        if not await self._fill_first(page, PASSWORD_SELECTORS, self.config.password):
            raise AuthError("Login form not found: no password field")

        result = await run_strategies(self._submit_strategies(page), tag)
        if not result.success:
            raise AuthError(f"Login failed: {result.error}")

        session.authenticated = True
        session.saved_at = self._now_ms()
        await self._flush_cookies(session, tag)
        print(f"[{tag}] auth: logged in via {result.method}")

    async def _fill_first(self, page, selectors: List[str], value: str) -> bool:
        for selector in selectors:
            element = await page.query_selector(selector)
            if element:
                await element.fill(value)
                return True
        return False

    async def _settle_and_check(self, page) -> bool:
        try:
            await page.wait_for_load_state('domcontentloaded', timeout=self.config.timeout_ms)
        except Exception:
            pass
        if LOGON_URL_RE.search(page.url or "") and not await self.is_authenticated(page):
            # Still on the logon page: go to the root and check there
            await goto(page, self.config.base_url, self.config.timeout_ms)
        return await self.is_authenticated(page)

    def _submit_strategies(self, page) -> List[Strategy]:
        async def enter_key():
            await page.keyboard.press("Enter")
            return found() if await self._settle_and_check(page) else not_found("still anonymous")

        async def submit_button():
            for selector in SUBMIT_SELECTORS:
                element = await page.query_selector(selector)
                if element:
                    await element.click()
                    if await self._settle_and_check(page):
                        return found(method=f"submit-button {selector}")
            return not_found("no submit button logged in")

        async def panel_button():
            clicked = await page.evaluate(PANEL_BUTTON_SCRIPT, LOGIN_PANEL_SELECTOR)
            if not clicked:
                return not_found("no login button in panel")
            return found() if await self._settle_and_check(page) else not_found("still anonymous")

        async def form_submit():
            how = await page.evaluate(FORM_SUBMIT_SCRIPT, LOGIN_FORM_PREFIX)
            if not how:
                return not_found("no form to submit")
            await asyncio.sleep(1.2)
            return found(method=f"form-submit {how}") if await self._settle_and_check(page) else not_found("still anonymous")

        return [
            Strategy("enter-key", enter_key),
            Strategy("submit-button", submit_button),
            Strategy("panel-button", panel_button),
            Strategy("form-submit", form_submit),
        ]

    async def _flush_cookies(self, session: BrowserSession, tag: str) -> None:
        try:
            cookies = await session.context.cookies()
            self.cookie_store.save(cookies, session.saved_at or self._now_ms())
        except Exception as e:
            print(f"[{tag}] Cookie save failed: {str(e)[:100]}")
