"""
Browser Automation Capability
=============================
The only place that talks to the Playwright driver directly.

The authenticator, token session manager and retrieval engine depend on
``BrowserLauncher`` (an object that can launch a browser) and then use
the returned ``Browser`` / ``BrowserContext`` / ``Page`` objects through
their regular async API (``new_context``, ``new_page``, ``goto``,
``locator``, ``evaluate``, ``on("request"|"response")``, ``cookies``,
``add_cookies``, ``close``).  Tests swap in a fake launcher.

Usage::

    launcher = PlaywrightLauncher("chromium")
    browser = await launcher.launch(headless=True, args=[...])
    ...
    await launcher.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from playwright.async_api import Browser, Playwright, async_playwright

from .errors import BrowserUnavailableError

logger = logging.getLogger(__name__)

_BROWSER_TYPES = ("chromium", "firefox", "webkit")

_LAUNCH_HINTS = (
    (("Executable doesn't exist", "ENOENT", "No such file or directory"),
     "Browser executable missing. Install it with: playwright install chromium "
     "(or set PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH to a system chromium)"),
    (("EACCES", "Permission denied"),
     "Permission error. Check permissions on the browser executable or run "
     "as a different (non-root) user"),
    (("error while loading shared libraries",),
     "Shared library missing. Install browser dependencies: "
     "playwright install-deps chromium"),
)


def launch_hint(error: BaseException) -> Optional[str]:
    """Return an actionable hint for a known launch failure, if any."""
    message = str(error)
    for markers, hint in _LAUNCH_HINTS:
        if any(m in message for m in markers):
            return hint
    return None


def log_browser_environment(browser_type: str) -> None:
    """Dump the environment details that usually explain launch failures."""
    logger.error(f"[BROWSER] Debugging environment for {browser_type}:")
    for name in (
        "PLAYWRIGHT_BROWSERS_PATH",
        "PLAYWRIGHT_SKIP_BROWSER_DOWNLOAD",
        "PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH",
    ):
        logger.error(f"[BROWSER]   {name}: {os.environ.get(name, 'NOT_SET')}")
    logger.error(f"[BROWSER]   Running in Docker: {os.path.exists('/.dockerenv')}")
    cache_dir = os.environ.get(
        "PLAYWRIGHT_BROWSERS_PATH",
        os.path.join(os.path.expanduser("~"), ".cache", "ms-playwright"),
    )
    if os.path.isdir(cache_dir):
        logger.error(f"[BROWSER]   Browser cache {cache_dir}: {', '.join(sorted(os.listdir(cache_dir)))}")
    else:
        logger.error(f"[BROWSER]   Browser cache {cache_dir} does not exist")


class BrowserLauncher(ABC):
    """Capability: launch a browser instance."""

    @abstractmethod
    async def launch(self, *, headless: bool = True, args: Sequence[str] = ()) -> Browser:
        """Launch and return a new browser.

        Raises:
            BrowserUnavailableError: the browser type is unknown.
            Exception: any driver error (callers classify it).
        """
        ...

    async def stop(self) -> None:
        """Release driver resources. Default: nothing to release."""
        return None


class PlaywrightLauncher(BrowserLauncher):
    """Launches browsers through a lazily started Playwright driver."""

    def __init__(self, browser_type: str = "chromium"):
        self.browser_type = browser_type
        self._playwright: Optional[Playwright] = None
        self._lock = asyncio.Lock()

    async def _driver(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
                logger.debug("[BROWSER] Playwright driver started")
            return self._playwright

    async def launch(self, *, headless: bool = True, args: Sequence[str] = ()) -> Browser:
        if self.browser_type not in _BROWSER_TYPES:
            raise BrowserUnavailableError(
                f"Browser type '{self.browser_type}' not found in Playwright"
            )
        driver = await self._driver()
        browser_type = getattr(driver, self.browser_type)
        logger.debug(f"[BROWSER] Launching {self.browser_type} (headless: {headless})")
        return await browser_type.launch(headless=headless, args=list(args))

    async def stop(self) -> None:
        async with self._lock:
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.debug(f"[BROWSER] Driver stop error: {e}")
                self._playwright = None


async def close_quietly(resource, label: str = "resource") -> None:
    """Close a page / context / browser, logging (not raising) failures."""
    if resource is None:
        return
    try:
        await resource.close()
    except Exception as e:
        logger.debug(f"[BROWSER] Error closing {label}: {e}")
