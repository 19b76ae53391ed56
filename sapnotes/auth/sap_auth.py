"""
SAP Certificate Authenticator
=============================
Produces a valid session ``Credential`` for the SAP support portal using a
client certificate (PFX) instead of a username / password form.

Flow (only when no valid credential is held):
    1. Adopt the cached credential if it is still valid (no browser)
    2. Validate the certificate file (exists, non-empty)
    3. Launch a browser (retry on resource exhaustion: 2s, 4s, 8s)
    4. Open a context with the certificate bound to the IdP origin and
       navigate to the portal landing page; SAML redirects complete
       without user interaction once the certificate is presented
    5. Read every cookie, persist the credential, close the browser

Concurrency:
    At most one login runs at a time.  The login runs as a task stored in
    ``_inflight``; callers arriving while it runs await the same task and
    then re-check validity.  A failure reaches every waiter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from playwright.async_api import Browser, Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..browser import (
    BrowserLauncher,
    PlaywrightLauncher,
    close_quietly,
    launch_hint,
    log_browser_environment,
)
from ..errors import (
    AuthenticationError,
    AuthTimeoutError,
    BrowserUnavailableError,
    CertificateError,
)
from ..run_config import NotesRunConfig
from ..utils import RetryPolicy, is_login_redirect, is_resource_exhaustion
from .base_auth import Credential, serialize_cookies
from .session_store import CredentialCache

logger = logging.getLogger(__name__)

# URL / title fragments that mean "still on the login page"
_LOGIN_PAGE_MARKERS = ("login", "auth")


def validate_certificate(path: str) -> None:
    """Fail fast when the PFX file is missing or empty.

    Raises:
        CertificateError
    """
    cert = Path(path) if path else None
    if cert is None or not cert.is_file():
        raise CertificateError(path, "Certificate file not found")
    try:
        size = cert.stat().st_size
    except OSError as exc:
        raise CertificateError(path, str(exc)) from exc
    if size == 0:
        raise CertificateError(path, "Certificate file is empty")


def _on_login_page(url: str, title: str = "") -> bool:
    url_lower = (url or "").lower()
    return (
        any(m in url_lower for m in _LOGIN_PAGE_MARKERS)
        or is_login_redirect(url)
        or "login" in (title or "").lower()
    )


class CertificateAuthenticator:
    """Owns the session credential; single-flight login."""

    def __init__(
        self,
        config: NotesRunConfig,
        *,
        cache: Optional[CredentialCache] = None,
        launcher: Optional[BrowserLauncher] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.config = config
        self.cache = cache or CredentialCache(config.cache_path)
        self.launcher = launcher or PlaywrightLauncher(config.browser_type)
        self._clock = clock
        self._sleep = sleep
        self._retry = RetryPolicy(
            max_retries=config.launch_retries, base_delay=config.launch_backoff_base_s
        )
        self._credential: Optional[Credential] = None
        self._inflight: Optional[asyncio.Task] = None
        self._browser: Optional[Browser] = None
        self._bypass_cache = False
        self.login_count = 0

    # ── Public API ────────────────────────────────────────────────

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def has_valid_credential(self) -> bool:
        return self._credential is not None and self._credential.is_valid(self._clock())

    async def ensure_valid_credential(self) -> Credential:
        """Return a valid credential, logging in at most once concurrently.

        Raises:
            CertificateError, BrowserUnavailableError, AuthTimeoutError,
            AuthenticationError
        """
        inflight = self._inflight
        if inflight is not None:
            logger.debug("[AUTH] Login in progress, awaiting its outcome")
            await asyncio.shield(inflight)

        if self.has_valid_credential():
            return self._credential

        # Another waiter may already have started the next login
        if self._inflight is None:
            task = asyncio.ensure_future(self._login())
            task.add_done_callback(self._login_finished)
            self._inflight = task
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        """Drop the in-memory credential and skip the cached record next time.

        Called when the portal rejects the session (login redirect) even
        though the local expiry says it is still valid.
        """
        logger.warning("[AUTH] Invalidating cached authentication")
        self._credential = None
        self._bypass_cache = True

    async def destroy(self) -> None:
        """Clear state and release browser resources. Idempotent."""
        self._credential = None
        await self._close_browser()

    # ── Login flow ────────────────────────────────────────────────

    def _login_finished(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves
            task.exception()

    async def _login(self) -> Credential:
        if not self._bypass_cache:
            cached = self.cache.load()
            if cached is not None and cached.is_valid(self._clock()):
                logger.info("[AUTH] Using cached SAP authentication credential")
                self._credential = cached
                return cached

        logger.info("[AUTH] Starting SAP certificate authentication flow...")
        started = self._clock()
        try:
            credential = await self._perform_login()
        except (CertificateError, BrowserUnavailableError, AuthTimeoutError):
            self._credential = None
            raise
        except Exception as exc:
            self._credential = None
            logger.error(f"[AUTH] Authentication failed: {exc}")
            raise AuthenticationError("Authentication process failed", cause=exc) from exc
        finally:
            await self._close_browser()

        self._credential = credential
        self._bypass_cache = False
        self.login_count += 1
        self.cache.save(credential)
        logger.info(
            f"[AUTH] SAP authentication completed in "
            f"{(self._clock() - started) * 1000:.0f}ms"
        )
        return credential

    async def _perform_login(self) -> Credential:
        validate_certificate(self.config.pfx_path)

        self._browser = await self._launch_with_retry()
        context = await self._browser.new_context(
            ignore_https_errors=True,
            client_certificates=[{
                "origin": self.config.idp_origin,
                "pfxPath": self.config.pfx_path,
                "passphrase": self.config.pfx_passphrase,
            }],
            locale="en-US",
            viewport={"width": 1280, "height": 720},
        )
        page = await context.new_page()
        self._attach_debug_listeners(page)

        await self._navigate_to_landing(page)

        cookies = await context.cookies()
        logger.info(f"[AUTH] Retrieved {len(cookies)} cookies from SAP session")
        now = self._clock()
        return Credential(
            raw_value=serialize_cookies(cookies),
            issued_at=now,
            expires_at=now + self.config.max_credential_age_hours * 3600,
            cookies=list(cookies),
        )

    async def _navigate_to_landing(self, page: Page) -> None:
        timeout_ms = self.config.navigation_timeout_ms
        logger.info(f"[AUTH] Navigating to {self.config.landing_url}")
        try:
            await asyncio.wait_for(
                page.goto(self.config.landing_url, wait_until="domcontentloaded", timeout=timeout_ms),
                timeout=timeout_ms / 1000 + 1,
            )
        except (PlaywrightTimeout, asyncio.TimeoutError) as exc:
            raise AuthTimeoutError(timeout_ms) from exc

        try:
            await page.wait_for_load_state("networkidle", timeout=self.config.secondary_timeout_ms)
        except PlaywrightTimeout:
            logger.debug("[AUTH] Network did not settle, continuing")

        title = await page.title()
        logger.info(f"[AUTH] Landed on: {page.url[:120]} ({title[:60]})")

        if _on_login_page(page.url, title):
            redirect_ms = self.config.login_redirect_timeout_ms
            logger.info("[AUTH] Still on login page, waiting for authentication redirect...")
            try:
                await page.wait_for_url(
                    lambda url: not _on_login_page(str(url)), timeout=redirect_ms
                )
            except PlaywrightTimeout as exc:
                raise AuthTimeoutError(
                    redirect_ms,
                    f"Still on login page after {redirect_ms}ms: {page.url[:100]}",
                ) from exc
            logger.info("[AUTH] Authentication redirect completed")

        # Late cookies are set by XHRs after the landing page renders
        await self._sleep(self.config.login_settle_s)

    async def _launch_with_retry(self) -> Browser:
        attempts = self._retry.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                logger.info(f"[AUTH] Browser launch attempt {attempt}/{attempts}")
                return await self.launcher.launch(
                    headless=self.config.headless, args=self.config.launch_args
                )
            except BrowserUnavailableError:
                raise
            except Exception as exc:
                logger.error(f"[AUTH] Browser launch failed ({attempt}/{attempts}): {exc}")
                if attempt == 1:
                    log_browser_environment(self.config.browser_type)
                if is_resource_exhaustion(exc) and attempt < attempts:
                    delay = self._retry.calculate_delay(attempt)
                    logger.warning(f"[AUTH] Resource exhaustion, retrying in {delay:.0f}s")
                    await self._sleep(delay)
                    continue
                hint = launch_hint(exc)
                if hint:
                    logger.error(f"[AUTH] {hint}")
                raise BrowserUnavailableError(
                    f"Failed to launch {self.config.browser_type} after {attempt} attempt(s): {exc}",
                    cause=exc,
                ) from exc
        raise BrowserUnavailableError(f"Failed to launch {self.config.browser_type}")

    def _attach_debug_listeners(self, page: Page) -> None:
        def on_request(request):
            if "sap.com" in request.url:
                logger.debug(f"[AUTH] -> {request.method} {request.url[:100]}")

        def on_response(response):
            if "sap.com" in response.url:
                logger.debug(f"[AUTH] <- {response.status} {response.url[:100]}")

        def on_dialog(dialog):
            logger.warning(f"[AUTH] Dialog appeared: {dialog.type} {dialog.message}")
            asyncio.ensure_future(dialog.dismiss())

        def on_console(message):
            if message.type == "error":
                logger.debug(f"[AUTH] Console error: {message.text[:200]}")

        page.on("request", on_request)
        page.on("response", on_response)
        page.on("dialog", on_dialog)
        page.on("console", on_console)

    async def _close_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is not None:
            await close_quietly(browser, "login browser")
            logger.debug("[AUTH] Login browser closed")
