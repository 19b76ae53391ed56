"""
Fallback Retrieval Engine
=========================
Turns a free-text query or a note number into normalized records by walking
ordered cascades of strategies, cheapest first, stopping at the first one
that produces something.

search(query):
    coveo → direct-note (6-8 digit queries only) → internal-knowledge
    → internal-support → internal-backend → ``SearchExhaustedError``

fetch(note_id):
    browser-raw → raw-http → odata-note → odata-kb → html-page → ``None``

Each strategy is a coroutine ``(run) -> result | None``.  ``_run_cascade``
records one ``Attempt`` per tier; an exception moves the cascade forward
(cancellation excepted) and nothing is retried within a tier.  A
``SessionExpired`` raised by any tier invalidates the credential and logs
in again, so later tiers run with the fresh credential.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from .auth.base_auth import Credential
from .auth.sap_auth import CertificateAuthenticator
from .auth.session_manager import APP_INIT_ENDPOINT, TOKEN_ENDPOINT, TokenSessionManager
from .browser import BrowserLauncher, close_quietly
from .errors import HttpStatusError, SearchExhaustedError, SessionExpired, TokenUnavailableError
from .http_client import JSON_HEADERS, HttpResult, PortalHttpClient, raise_for_status
from .models import ArticleDetail, SearchResponse
from .parsers import (
    complete_vector,
    decode_detail_body,
    is_note_id,
    parse_detail,
    parse_html_detail,
    parse_internal_search,
    parse_rendered_detail,
    parse_search_results,
)
from .run_config import NotesRunConfig
from .sap_extractor import extract_severity_from_page
from .utils import is_login_redirect, preview

logger = logging.getLogger(__name__)

ODATA_SERVICE = "/services/odata/svt/snogwscorr"

COVEO_FIELDS = [
    'author', 'language', 'urihash', 'objecttype', 'collection', 'source',
    'permanentid', 'documenttype', 'date', 'mh_description', 'mh_id',
    'mh_product', 'mh_app_component', 'mh_alt_url', 'mh_category',
    'mh_revisions', 'mh_other_components', 'mh_all_hierarchical_component',
    'file_type', 'mh_priority',
]

# Raw detail endpoint answers 401 to XHR-style requests; look like a page load
_DOCUMENT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Referer": "https://me.sap.com/",
    "Sec-Fetch-Site": "same-origin",
}

_LAUNCHPAD_HEADERS = {
    "Accept": "application/json, text/html, */*",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


def build_coveo_query(query: str, max_results: int) -> Dict[str, Any]:
    """Search envelope: relevancy-sorted, pinned to the "SAP Note" facet."""
    return {
        "locale": "en-US",
        "debug": False,
        "tab": "All",
        "referrer": "SAP for Me search interface",
        "timezone": "Europe/Berlin",
        "q": query,
        "enableQuerySyntax": False,
        "searchHub": "SAP for Me",
        "sortCriteria": "relevancy",
        "numberOfResults": max_results,
        "firstResult": 0,
        "fieldsToInclude": list(COVEO_FIELDS),
        "facets": [{
            "field": "documenttype",
            "type": "specific",
            "currentValues": [{"value": "SAP Note", "state": "selected"}],
            "numberOfValues": 10,
        }],
        "queryCorrection": {
            "enabled": True,
            "options": {"automaticallyCorrect": "never"},
        },
        "enableDidYouMean": False,
    }


# ---------------------------------------------------------------------------
# Cascade bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class Attempt:
    strategy: str
    outcome: str

    def as_tuple(self) -> Tuple[str, str]:
        return self.strategy, self.outcome


class StrategySkipped(Exception):
    """A tier that does not apply to this request."""


@dataclass
class _Run:
    """Per-request state shared by the tiers of one cascade."""
    credential: Credential
    query: str = ""
    note_id: str = ""
    max_results: int = 10
    attempts: List[Attempt] = field(default_factory=list)


Strategy = Tuple[str, Callable[[_Run], Awaitable[Any]]]


def _describe(exc: BaseException) -> str:
    text = str(exc).splitlines()[0] if str(exc) else ""
    return f"{type(exc).__name__}: {text}"[:200] if text else type(exc).__name__


class FallbackRetrievalEngine:
    """Search and fetch cascades over the SAP support portal."""

    def __init__(
        self,
        config: NotesRunConfig,
        authenticator: CertificateAuthenticator,
        token_sessions: TokenSessionManager,
        http: PortalHttpClient,
        launcher: BrowserLauncher,
        *,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.config = config
        self.authenticator = authenticator
        self.token_sessions = token_sessions
        self.http = http
        self.launcher = launcher
        self._sleep = sleep

    # ── Public API ────────────────────────────────────────────────

    async def search(self, query: str, max_results: Optional[int] = None) -> SearchResponse:
        """Search SAP Notes.

        Raises:
            SearchExhaustedError: every strategy failed.
            AuthenticationError: no credential could be obtained at all.
        """
        max_results = max_results or self.config.max_results
        logger.info(f'[SEARCH] Searching SAP Notes for: "{query}" (max {max_results})')
        credential = await self.authenticator.ensure_valid_credential()
        run = _Run(credential=credential, query=query, max_results=max_results)

        result = await self._run_cascade("SEARCH", self._search_strategies(), run)
        if result is None:
            logger.error(f'[SEARCH] All search methods exhausted for "{query}"')
            raise SearchExhaustedError(query, [a.as_tuple() for a in run.attempts])
        logger.info(f"[SEARCH] Found {len(result.results)} SAP Note(s)")
        return result

    async def fetch(self, note_id: str) -> Optional[ArticleDetail]:
        """Fetch one note. ``None`` means not found or inaccessible."""
        note_id = str(note_id).strip()
        logger.info(f"[FETCH] Fetching SAP Note: {note_id}")
        credential = await self.authenticator.ensure_valid_credential()
        run = _Run(credential=credential, note_id=note_id)

        detail = await self._run_cascade("FETCH", self._fetch_strategies(), run)
        if detail is None:
            logger.warning(f"[FETCH] SAP Note {note_id} not found")
            return None
        return self._finalize(detail, note_id)

    async def health_check(self) -> bool:
        """True when the OData service metadata is reachable with our session."""
        try:
            credential = await self.authenticator.ensure_valid_credential()
            result = await self.http.get(
                f"{self.config.launchpad_url}{ODATA_SERVICE}/$metadata",
                cookie=credential.raw_value,
                headers=_LAUNCHPAD_HEADERS,
            )
        except Exception as exc:
            logger.warning(f"[HEALTH] SAP Notes API health check failed: {exc}")
            return False
        return result.ok

    async def cleanup(self) -> None:
        await self.token_sessions.shutdown()

    # ── Cascade ───────────────────────────────────────────────────

    async def _run_cascade(self, label: str, strategies: Sequence[Strategy], run: _Run) -> Any:
        for index, (name, strategy) in enumerate(strategies, start=1):
            logger.info(f"[{label}] Strategy {index}/{len(strategies)}: {name}")
            try:
                result = await strategy(run)
            except asyncio.CancelledError:
                raise
            except StrategySkipped as exc:
                run.attempts.append(Attempt(name, f"skipped ({exc})"))
                logger.debug(f"[{label}] {name} skipped: {exc}")
                continue
            except SessionExpired as exc:
                run.attempts.append(Attempt(name, _describe(exc)))
                logger.warning(f"[{label}] {name}: session rejected by portal, re-authenticating")
                await self._refresh_credential(run)
                continue
            except Exception as exc:
                run.attempts.append(Attempt(name, _describe(exc)))
                logger.warning(f"[{label}] {name} failed: {exc}")
                continue
            if result is None:
                run.attempts.append(Attempt(name, "no results"))
                logger.debug(f"[{label}] {name}: no results")
                continue
            run.attempts.append(Attempt(name, "ok"))
            logger.info(f"[{label}] {name} succeeded")
            return result
        return None

    async def _refresh_credential(self, run: _Run) -> None:
        self.authenticator.invalidate()
        try:
            run.credential = await self.authenticator.ensure_valid_credential()
        except Exception as exc:
            # Later tiers keep the old credential; they will fail on their own
            run.attempts.append(Attempt("re-authentication", _describe(exc)))
            logger.error(f"[AUTH] Re-authentication failed: {exc}")

    # ── Search tiers ──────────────────────────────────────────────

    def _search_strategies(self) -> List[Strategy]:
        return [
            ("coveo", self._search_coveo),
            ("direct-note", self._search_direct_note),
            ("internal-knowledge", self._search_internal_knowledge),
            ("internal-support", self._search_internal_support),
            ("internal-backend", self._search_internal_backend),
        ]

    async def _search_coveo(self, run: _Run) -> SearchResponse:
        token = await self._mint_search_token(run.credential)
        portal = self.config.portal_url
        result = await self.http.post_json(
            f"{self.config.coveo_search_url}?organizationId={self.config.coveo_org}",
            build_coveo_query(run.query, run.max_results),
            bearer=token,
            headers={
                "Accept": "*/*",
                "Accept-Language": "en-US,en;q=0.9",
                "Cookie": run.credential.raw_value,
                "Referer": f"{portal}/",
                "Origin": portal,
            },
        )
        raise_for_status(result)
        data = result.json()
        results = parse_search_results(data, self.config.launchpad_url)
        total = (data.get("totalCount") if isinstance(data, dict) else None) or len(results)
        logger.info(f"[SEARCH] Coveo returned {len(results)} of {total} result(s)")
        return SearchResponse(results=results, total_results=total, query=run.query)

    async def _search_direct_note(self, run: _Run) -> Optional[SearchResponse]:
        if not is_note_id(run.query):
            raise StrategySkipped("query is not a 6-8 digit note ID")
        note_id = run.query.strip()
        detail = await self.fetch(note_id)
        if detail is None:
            return None
        return SearchResponse(results=[detail.as_summary()], total_results=1, query=run.query)

    async def _search_internal_knowledge(self, run: _Run) -> Optional[SearchResponse]:
        params = json.dumps({
            "q": run.query,
            "tab": "Support",
            "f": [{"field": "documenttype", "value": ["SAP Note"]}],
        })
        return await self._search_internal(run, f"/knowledge/search/{quote(params, safe='')}")

    async def _search_internal_support(self, run: _Run) -> Optional[SearchResponse]:
        return await self._search_internal(
            run, f"/support/search?q={quote(run.query)}&type=note&format=json"
        )

    async def _search_internal_backend(self, run: _Run) -> Optional[SearchResponse]:
        return await self._search_internal(
            run,
            f"/backend/raw/sapnotes/Search?q={quote(run.query)}&t=E&maxResults={run.max_results}",
        )

    async def _search_internal(self, run: _Run, endpoint: str) -> Optional[SearchResponse]:
        result = await self._launchpad_get(endpoint, run.credential)
        raise_for_status(result)
        results = parse_internal_search(
            result.text, result.content_type, run.query, self.config.launchpad_url
        )
        if not results:
            return None
        results = results[:run.max_results]
        return SearchResponse(results=results, total_results=len(results), query=run.query)

    # ── Derived token ─────────────────────────────────────────────

    async def _mint_search_token(self, credential: Credential) -> str:
        try:
            token = await self._mint_token_direct(credential)
        except SessionExpired:
            raise
        except Exception as exc:
            logger.warning(f"[TOKEN] Direct token API failed: {exc}")
            token = None
        if token:
            return token
        logger.info("[TOKEN] Falling back to browser-based token capture")
        return await self.token_sessions.mint_token(credential)

    async def _mint_token_direct(self, credential: Credential) -> Optional[str]:
        portal = self.config.portal_url
        headers = dict(JSON_HEADERS)
        headers["Referer"] = self.config.knowledge_search_url("test")

        app = await self.http.get(f"{portal}{APP_INIT_ENDPOINT}", cookie=credential.raw_value, headers=headers)
        if is_login_redirect(app.url):
            raise SessionExpired("Session expired - token API redirected to login page")
        raise_for_status(app)

        response = await self.http.get(f"{portal}{TOKEN_ENDPOINT}", cookie=credential.raw_value, headers=headers)
        raise_for_status(response)
        data = response.json()
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise TokenUnavailableError("Token not found in CoveoToken response")
        logger.info(f"[TOKEN] Direct API returned token {preview(token)}")
        return token

    # ── Fetch tiers ───────────────────────────────────────────────

    def _fetch_strategies(self) -> List[Strategy]:
        return [
            ("browser-raw", self._fetch_browser_raw),
            ("raw-http", self._fetch_raw_http),
            ("odata-note", self._fetch_odata_note),
            ("odata-kb", self._fetch_odata_kb),
            ("html-page", self._fetch_html_page),
        ]

    async def _fetch_browser_raw(self, run: _Run) -> Optional[ArticleDetail]:
        url = self.config.note_detail_url(run.note_id)
        browser = await self.launcher.launch(
            headless=self.config.headless, args=self.config.launch_args
        )
        try:
            page = await self._open_page(browser, run.credential)
            logger.debug(f"[FETCH] Navigating to {url}")
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms
            )
            if is_login_redirect(page.url):
                raise SessionExpired("Session expired - note page redirected to login")
            if response is None or not response.ok:
                raise HttpStatusError(response.status if response else 0, url)

            await self._sleep(self.config.page_settle_s)
            html = await page.content()
            body_text = await page.locator("body").text_content(
                timeout=self.config.secondary_timeout_ms
            )
            logger.debug(f"[FETCH] Page loaded: {len(html)} chars of HTML")

            detail = parse_rendered_detail(
                body_text or "", html, run.note_id, self.config.launchpad_url
            )
            if detail is not None:
                detail = await self._enhance_severity(detail, page)
            return detail
        finally:
            await close_quietly(browser, "fetch browser")

    async def _fetch_raw_http(self, run: _Run) -> Optional[ArticleDetail]:
        result = await self.http.get(
            self.config.note_detail_url(run.note_id),
            cookie=run.credential.raw_value,
            headers=_DOCUMENT_HEADERS,
        )
        detail = self._parse_http_detail(result, run.note_id)
        return await self._enhance_with_fresh_page(detail, run.credential)

    async def _fetch_odata_note(self, run: _Run) -> Optional[ArticleDetail]:
        return await self._fetch_launchpad(
            run, f"{ODATA_SERVICE}/Notes('{run.note_id}')?$format=json"
        )

    async def _fetch_odata_kb(self, run: _Run) -> Optional[ArticleDetail]:
        return await self._fetch_launchpad(
            run,
            f"{ODATA_SERVICE}/KnowledgeBaseEntries?$filter=SapNote eq '{run.note_id}'&$format=json",
        )

    async def _fetch_html_page(self, run: _Run) -> Optional[ArticleDetail]:
        result = await self._launchpad_get(f"/support/notes/{run.note_id}", run.credential)
        if result.status == 404:
            return None
        raise_for_status(result)
        detail = parse_html_detail(result.text, run.note_id, self.config.launchpad_url)
        return await self._enhance_with_fresh_page(detail, run.credential)

    async def _fetch_launchpad(self, run: _Run, endpoint: str) -> Optional[ArticleDetail]:
        result = await self._launchpad_get(endpoint, run.credential)
        detail = self._parse_http_detail(result, run.note_id)
        return await self._enhance_with_fresh_page(detail, run.credential)

    def _parse_http_detail(self, result: HttpResult, note_id: str) -> Optional[ArticleDetail]:
        if result.status == 404:
            return None
        if result.status not in (301, 302):
            raise_for_status(result)
        payload = decode_detail_body(result.text)
        return parse_detail(payload, note_id, self.config.launchpad_url)

    async def _launchpad_get(self, endpoint: str, credential: Credential) -> HttpResult:
        return await self.http.get(
            f"{self.config.launchpad_url}{endpoint}",
            cookie=credential.raw_value,
            headers=_LAUNCHPAD_HEADERS,
        )

    # ── Severity enhancement ──────────────────────────────────────

    async def _open_page(self, browser, credential: Credential):
        context = await browser.new_context(
            user_agent=self.config.user_agent, ignore_https_errors=True, locale="en-US"
        )
        cookies = credential.browser_cookies()
        if cookies:
            await context.add_cookies(cookies)
            logger.debug(f"[FETCH] Added {len(cookies)} cookies to browser context")
        return await context.new_page()

    async def _enhance_severity(self, detail: ArticleDetail, page) -> ArticleDetail:
        """Fill missing CVSS fields from the launchpad tab. Never raises."""
        if not self.config.enable_severity_tab or not detail.needs_severity:
            return detail
        logger.info(f"[CVSS] CVSS data missing for note {detail.id}, attempting tab extraction")
        try:
            score, vector = await extract_severity_from_page(
                page,
                self.config.note_public_url(detail.id),
                navigation_timeout_ms=self.config.navigation_timeout_ms,
                settle_s=self.config.severity_tab_settle_s,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.warning(f"[CVSS] Tab extraction failed for note {detail.id}: {exc}")
            return detail
        if score or vector:
            logger.info(f"[CVSS] Note {detail.id}: score={score}, vector={vector}")
            return detail.with_severity(score, vector)
        return detail

    async def _enhance_with_fresh_page(
        self, detail: Optional[ArticleDetail], credential: Credential
    ) -> Optional[ArticleDetail]:
        if detail is None or not self.config.enable_severity_tab or not detail.needs_severity:
            return detail
        browser = None
        try:
            browser = await self.launcher.launch(
                headless=self.config.headless, args=self.config.launch_args
            )
            page = await self._open_page(browser, credential)
            return await self._enhance_severity(detail, page)
        except Exception as exc:
            logger.warning(f"[CVSS] Could not open browser for tab extraction: {exc}")
            return detail
        finally:
            await close_quietly(browser, "severity browser")

    def _finalize(self, detail: ArticleDetail, note_id: str) -> ArticleDetail:
        return replace(
            detail,
            id=note_id,
            severity_vector=complete_vector(detail.severity_vector),
        )
