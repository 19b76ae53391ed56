"""
Token Session Manager
=====================
Owns the single persistent browser used to mint derived (Coveo) search
tokens from an authenticated portal session.

Lifecycle::

    1. ``mint_token(credential)``
       → under one lock: evict the browser if idle too long, (re)launch
         and seed cookies if needed, open a page, capture a token,
         close the page.

    2. ``evict_if_idle()``
       → close the browser once it has been unused for
         ``browser_idle_timeout_s``.

    3. ``shutdown()``
       → close everything unconditionally.

Token capture order on a fresh page:
    header (Authorization: Bearer on coveo.com requests)
    → CoveoToken response body
    → in-page fetch of the token endpoints
    → window globals / localStorage / sessionStorage

A redirect to the IdP during capture means the portal rejected the cookies:
the browser is closed and ``SessionExpired`` is raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from playwright.async_api import Browser, BrowserContext, Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..browser import BrowserLauncher, close_quietly
from ..errors import BrowserUnavailableError, SessionExpired, TokenUnavailableError
from ..run_config import NotesRunConfig
from ..utils import is_login_redirect, preview
from .base_auth import Credential

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "/backend/raw/coveo/CoveoToken"
APP_INIT_ENDPOINT = "/backend/raw/core/Applications/coveo"

# Runs inside the authenticated page: same-origin fetch carries the cookies.
_IN_PAGE_TOKEN_JS = """
async ([appUrl, tokenUrl]) => {
    const headers = {
        'Accept': 'application/json, text/javascript, */*; q=0.01',
        'X-Requested-With': 'XMLHttpRequest'
    };
    try {
        const app = await fetch(appUrl, {method: 'GET', headers, credentials: 'include'});
        if (!app.ok) return null;
        const res = await fetch(tokenUrl, {method: 'GET', headers, credentials: 'include'});
        if (!res.ok) return null;
        const data = await res.json();
        return data.token || null;
    } catch (e) {
        return null;
    }
}
"""

_STORAGE_TOKEN_JS = """
() => {
    const win = window;
    if (win.coveoToken) return {token: win.coveoToken, foundIn: 'window.coveoToken'};
    const endpoint = win.Coveo && win.Coveo.SearchEndpoint;
    if (endpoint && endpoint.options && endpoint.options.accessToken) {
        return {token: endpoint.options.accessToken, foundIn: 'window.Coveo.SearchEndpoint'};
    }
    if (win.__COVEO_TOKEN__) return {token: win.__COVEO_TOKEN__, foundIn: 'window.__COVEO_TOKEN__'};
    try {
        const t = localStorage.getItem('coveo_token') || localStorage.getItem('coveoToken');
        if (t) return {token: t, foundIn: 'localStorage'};
    } catch (e) {}
    try {
        const t = sessionStorage.getItem('coveo_token') || sessionStorage.getItem('coveoToken');
        if (t) return {token: t, foundIn: 'sessionStorage'};
    } catch (e) {}
    return {token: null, foundIn: null};
}
"""


@dataclass
class _Capture:
    """What the page listeners observed during one mint."""
    header_token: Optional[str] = None
    token_responses: List = field(default_factory=list)
    redirected: bool = False


class TokenSessionManager:
    """Persistent browser session for derived-token minting."""

    def __init__(
        self,
        config: NotesRunConfig,
        launcher: BrowserLauncher,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.config = config
        self.launcher = launcher
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._seeded_with: Optional[str] = None
        self.last_used: Optional[float] = None
        self.launch_count = 0

    @property
    def is_active(self) -> bool:
        return self._browser is not None

    # ── Public API ────────────────────────────────────────────────

    async def mint_token(self, credential: Credential) -> str:
        """Mint a derived search token using the persistent browser.

        Raises:
            SessionExpired: the portal redirected to its login page.
            TokenUnavailableError: no token could be captured.
            BrowserUnavailableError: the browser could not be launched.
        """
        async with self._lock:
            await self._recycle_if_stale()
            context = await self._ensure_context(credential)
            self.last_used = self._clock()

            page = await context.new_page()
            try:
                token = await self._capture_token(page)
            except SessionExpired:
                logger.error("[TOKEN] Session rejected by portal, closing persistent browser")
                await close_quietly(page, "token page")
                page = None
                await self._close_locked()
                raise
            finally:
                if page is not None:
                    await close_quietly(page, "token page")
                self.last_used = self._clock()

        if not token:
            raise TokenUnavailableError(
                "Failed to extract Coveo token from the authenticated session"
            )
        logger.info(f"[TOKEN] Captured search token {preview(token)}")
        return token

    async def evict_if_idle(self) -> bool:
        """Close the browser if idle past the timeout. Returns True if closed."""
        async with self._lock:
            if self._is_idle():
                await self._close_locked()
                return True
            return False

    async def shutdown(self) -> None:
        async with self._lock:
            await self._close_locked()

    # ── Browser lifecycle (lock held) ─────────────────────────────

    def _is_idle(self) -> bool:
        if self._browser is None or self.last_used is None:
            return False
        idle_for = self._clock() - self.last_used
        return idle_for > self.config.browser_idle_timeout_s

    async def _recycle_if_stale(self) -> None:
        if self._browser is None:
            return
        if self._context is None:
            logger.warning("[TOKEN] Persistent browser has no context, relaunching")
            await self._close_locked()
        elif self._is_idle():
            logger.info(
                f"[TOKEN] Browser idle > {self.config.browser_idle_timeout_s:.0f}s, recycling"
            )
            await self._close_locked()
        elif not self._browser.is_connected():
            logger.warning("[TOKEN] Persistent browser disconnected, relaunching")
            await self._close_locked()
        else:
            logger.debug("[TOKEN] Reusing persistent browser session")

    async def _ensure_context(self, credential: Credential) -> BrowserContext:
        if self._browser is None:
            self._browser, self._context = await self._launch()
            self._seeded_with = None

        if self._seeded_with != credential.raw_value:
            cookies = credential.browser_cookies()
            await self._context.add_cookies(cookies)
            self._seeded_with = credential.raw_value
            logger.debug(f"[TOKEN] Seeded {len(cookies)} cookies into persistent context")
        return self._context

    async def _launch(self):
        try:
            browser = await self.launcher.launch(
                headless=self.config.headless, args=self.config.launch_args
            )
        except BrowserUnavailableError:
            raise
        except Exception as exc:
            raise BrowserUnavailableError(
                f"Failed to launch token browser: {exc}", cause=exc
            ) from exc
        self.launch_count += 1
        logger.info(f"[TOKEN] Launched persistent browser (launch #{self.launch_count})")

        try:
            context = await browser.new_context(
                user_agent=self.config.user_agent,
                ignore_https_errors=True,
                locale="en-US",
            )
        except Exception as exc:
            await close_quietly(browser, "token browser")
            raise BrowserUnavailableError(
                f"Failed to open token browser context: {exc}", cause=exc
            ) from exc
        return browser, context

    async def _close_locked(self) -> None:
        context, self._context = self._context, None
        browser, self._browser = self._browser, None
        self._seeded_with = None
        await close_quietly(context, "token context")
        if browser is not None:
            await close_quietly(browser, "token browser")
            logger.debug("[TOKEN] Persistent browser closed")

    # ── Token capture ─────────────────────────────────────────────

    async def _capture_token(self, page: Page) -> Optional[str]:
        capture = _Capture()

        def on_request(request):
            if "coveo.com" not in request.url:
                return
            auth = request.headers.get("authorization", "")
            if auth.startswith("Bearer "):
                capture.header_token = auth[len("Bearer "):]
                logger.debug("[TOKEN] Captured token from request header")

        def on_response(response):
            if TOKEN_ENDPOINT in response.url:
                capture.token_responses.append(response)
            if is_login_redirect(response.url):
                capture.redirected = True

        page.on("request", on_request)
        page.on("response", on_response)

        await self._goto(page, self.config.landing_url, "load", self.config.navigation_timeout_ms)
        self._raise_if_redirected(page, capture)
        await self._sleep(self.config.token_settle_s)

        token = capture.header_token or await self._token_from_responses(capture)
        if not token:
            search_url = self.config.knowledge_search_url("mm22")
            logger.debug("[TOKEN] Navigating to knowledge search to trigger token call")
            await self._goto(page, search_url, "networkidle", self.config.search_page_timeout_ms)
            self._raise_if_redirected(page, capture)
            await self._sleep(self.config.token_search_settle_s)
            token = capture.header_token or await self._token_from_responses(capture)

        if not token:
            token = await self._token_from_page_fetch(page)
        if not token:
            token = await self._token_from_storage(page)
        return token

    async def _goto(self, page: Page, url: str, wait_until: str, timeout_ms: int) -> None:
        try:
            await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeout as exc:
            # The token call may already have fired; keep going
            logger.warning(f"[TOKEN] Navigation to {url[:80]} incomplete: {exc}")

    def _raise_if_redirected(self, page: Page, capture: _Capture) -> None:
        if capture.redirected or is_login_redirect(page.url):
            raise SessionExpired(
                "Session expired - redirected to login page; fresh authentication required"
            )

    async def _token_from_responses(self, capture: _Capture) -> Optional[str]:
        for response in capture.token_responses:
            if not response.ok:
                logger.debug(f"[TOKEN] CoveoToken response status {response.status}")
                continue
            try:
                data = await response.json()
            except Exception as exc:
                logger.debug(f"[TOKEN] CoveoToken body unreadable: {exc}")
                continue
            if isinstance(data, dict) and data.get("token"):
                logger.debug("[TOKEN] Captured token from CoveoToken response")
                return data["token"]
        return None

    async def _token_from_page_fetch(self, page: Page) -> Optional[str]:
        try:
            token = await page.evaluate(_IN_PAGE_TOKEN_JS, [APP_INIT_ENDPOINT, TOKEN_ENDPOINT])
        except Exception as exc:
            logger.debug(f"[TOKEN] In-page token fetch failed: {exc}")
            return None
        if token:
            logger.debug("[TOKEN] Captured token via in-page fetch")
        return token or None

    async def _token_from_storage(self, page: Page) -> Optional[str]:
        try:
            found = await page.evaluate(_STORAGE_TOKEN_JS)
        except Exception as exc:
            logger.debug(f"[TOKEN] Storage inspection failed: {exc}")
            return None
        if found and found.get("token"):
            logger.debug(f"[TOKEN] Found token in {found.get('foundIn')}")
            return found["token"]
        return None
