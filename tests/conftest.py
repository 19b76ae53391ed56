"""
Shared fixtures and fakes.

The browser capability, HTTP client, clock and sleep are replaced with
in-memory fakes so no test launches a browser or touches the network.
"""

import asyncio
import json
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import pytest

from sapnotes.auth.base_auth import Credential
from sapnotes.browser import BrowserLauncher
from sapnotes.http_client import HttpResult
from sapnotes.run_config import NotesRunConfig


# ---------------------------------------------------------------------------
# Clock / sleep
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep that records the requested delay and only yields."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Browser fakes
# ---------------------------------------------------------------------------

class FakeRequest:
    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, method: str = "GET"):
        self.url = url
        self.headers = headers or {}
        self.method = method


class FakeResponse:
    def __init__(self, url: str, status: int = 200, json_data: Any = None, text: str = ""):
        self.url = url
        self.status = status
        self._json = json_data
        self._text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    async def json(self):
        if self._json is None:
            raise ValueError("not JSON")
        return self._json

    async def text(self):
        return self._text or json.dumps(self._json)


class FakeLocator:
    def __init__(
        self,
        text: Optional[str] = None,
        visible: bool = False,
        texts: Optional[List[str]] = None,
        children: Optional[Dict[str, "FakeLocator"]] = None,
        items: Optional[List["FakeLocator"]] = None,
    ):
        self.text = text
        self.visible = visible
        self.texts = texts or []
        self.children = children or {}
        self.items = items or []
        self.clicks = 0

    @property
    def first(self) -> "FakeLocator":
        return self

    def locator(self, selector: str) -> "FakeLocator":
        return self.children.get(selector, FakeLocator())

    def nth(self, index: int) -> "FakeLocator":
        return self.items[index] if index < len(self.items) else FakeLocator()

    async def is_visible(self, timeout=None) -> bool:
        return self.visible

    async def click(self, timeout=None) -> None:
        self.clicks += 1

    async def text_content(self, timeout=None) -> Optional[str]:
        return self.text

    async def all_text_contents(self) -> List[str]:
        return list(self.texts)


class FakePage:
    """Scriptable page.

    ``on_goto(page, url)`` runs on each navigation: it may change
    ``page.url``, emit events, or return an exception to raise.
    """

    def __init__(
        self,
        *,
        on_goto: Optional[Callable[["FakePage", str], Any]] = None,
        status: int = 200,
        title: str = "SAP for Me",
        body_text: str = "",
        html: str = "<html><body></body></html>",
        evaluate: Optional[Callable[[str, Any], Any]] = None,
        locators: Optional[Dict[str, FakeLocator]] = None,
        wait_for_url_error: Optional[Exception] = None,
        url: str = "about:blank",
    ):
        self.url = url
        self.on_goto = on_goto
        self.status = status
        self._title = title
        self.body_text = body_text
        self.html = html
        self._evaluate = evaluate
        self.locators = locators or {}
        self.wait_for_url_error = wait_for_url_error
        self.handlers = defaultdict(list)
        self.goto_calls: List[str] = []
        self.closed = False

    def on(self, event: str, handler) -> None:
        self.handlers[event].append(handler)

    def emit(self, event: str, payload) -> None:
        for handler in self.handlers[event]:
            handler(payload)

    async def goto(self, url: str, wait_until=None, timeout=None):
        await asyncio.sleep(0)
        self.goto_calls.append(url)
        self.url = url
        if self.on_goto is not None:
            outcome = self.on_goto(self, url)
            if isinstance(outcome, Exception):
                raise outcome
        return FakeResponse(self.url, status=self.status)

    async def wait_for_load_state(self, state=None, timeout=None) -> None:
        await asyncio.sleep(0)

    async def wait_for_selector(self, selector, state=None, timeout=None) -> None:
        return None

    async def wait_for_url(self, predicate, timeout=None) -> None:
        if self.wait_for_url_error is not None:
            raise self.wait_for_url_error

    async def title(self) -> str:
        return self._title

    async def content(self) -> str:
        return self.html

    def locator(self, selector: str) -> FakeLocator:
        if selector in self.locators:
            return self.locators[selector]
        if selector == "body":
            return FakeLocator(text=self.body_text)
        return FakeLocator()

    async def evaluate(self, script: str, arg=None):
        if self._evaluate is None:
            return None
        return self._evaluate(script, arg)

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, page_factory: Callable[[], FakePage], cookies=None, options=None):
        self.page_factory = page_factory
        self._cookies = list(cookies or [])
        self.added_cookies: List[dict] = []
        self.options = options or {}
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def cookies(self) -> List[dict]:
        return list(self._cookies)

    async def add_cookies(self, cookies) -> None:
        self.added_cookies.extend(cookies)

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory: Callable[[], FakePage], cookies=None, context_failures=()):
        self.page_factory = page_factory
        self.cookies = cookies
        self.context_failures = list(context_failures)
        self.contexts: List[FakeContext] = []
        self.closed = False
        self.connected = True

    async def new_context(self, **options) -> FakeContext:
        if self.context_failures:
            raise self.context_failures.pop(0)
        context = FakeContext(self.page_factory, self.cookies, options)
        self.contexts.append(context)
        return context

    def is_connected(self) -> bool:
        return self.connected and not self.closed

    async def close(self) -> None:
        self.closed = True


class FakeLauncher(BrowserLauncher):
    """Hands out FakeBrowsers; ``failures`` are raised on the first launches."""

    def __init__(
        self,
        page_factory: Optional[Callable[[], FakePage]] = None,
        *,
        cookies=None,
        failures=(),
        context_failures=(),
        always_fail: Optional[Exception] = None,
    ):
        self.page_factory = page_factory or FakePage
        self.cookies = cookies if cookies is not None else [
            {"name": "SAPSSO", "value": "abc", "domain": ".sap.com", "path": "/"},
            {"name": "JSESSIONID", "value": "xyz", "domain": "me.sap.com", "path": "/"},
        ]
        self.failures = list(failures)
        self.context_failures = list(context_failures)
        self.always_fail = always_fail
        self.attempts = 0
        self.browsers: List[FakeBrowser] = []
        self.stopped = False

    @property
    def launch_count(self) -> int:
        return len(self.browsers)

    async def launch(self, *, headless=True, args=()):
        self.attempts += 1
        await asyncio.sleep(0)
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        browser = FakeBrowser(self.page_factory, self.cookies, self.context_failures[:1])
        del self.context_failures[:1]
        self.browsers.append(browser)
        return browser

    async def stop(self) -> None:
        self.stopped = True


# ---------------------------------------------------------------------------
# HTTP fake
# ---------------------------------------------------------------------------

def http_result(status=200, body: Any = "", content_type="application/json", url="") -> HttpResult:
    text = body if isinstance(body, str) else json.dumps(body)
    return HttpResult(status=status, url=url, text=text, content_type=content_type)


class FakeHttp:
    """Routes by URL substring (first match wins); unmatched URLs get a 404."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def _resolve(self, url: str) -> HttpResult:
        for fragment, outcome in self.routes.items():
            if fragment in url:
                if isinstance(outcome, Exception):
                    raise outcome
                if callable(outcome):
                    outcome = outcome(url)
                return outcome if outcome.url else replace(outcome, url=url)
        return HttpResult(status=404, url=url, text="", content_type="text/html")

    async def get(self, url, *, cookie="", headers=None) -> HttpResult:
        self.calls.append({"method": "GET", "url": url, "cookie": cookie, "headers": headers})
        await asyncio.sleep(0)
        return self._resolve(url)

    async def post_json(self, url, payload, *, bearer="", headers=None) -> HttpResult:
        self.calls.append({
            "method": "POST", "url": url, "payload": payload,
            "bearer": bearer, "headers": headers,
        })
        await asyncio.sleep(0)
        return self._resolve(url)

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cert_file(tmp_path):
    path = tmp_path / "client.pfx"
    path.write_bytes(b"\x30\x82\x01\x00fake-pfx")
    return path


@pytest.fixture
def config(tmp_path, cert_file):
    return NotesRunConfig(
        pfx_path=str(cert_file),
        pfx_passphrase="secret",
        cache_path=str(tmp_path / "token-cache.json"),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def credential(clock):
    return Credential(
        raw_value="SAPSSO=abc; JSESSIONID=xyz",
        issued_at=clock(),
        expires_at=clock() + 12 * 3600,
        cookies=[
            {"name": "SAPSSO", "value": "abc", "domain": ".sap.com", "path": "/"},
            {"name": "JSESSIONID", "value": "xyz", "domain": "me.sap.com", "path": "/"},
        ],
    )
