"""
SAP Launchpad Severity Extractor
================================
Reads CVSS data from the rendered note page on the SAP launchpad when the
raw note payload did not carry it.

Steps:
    1. Navigate to ``https://launchpad.support.sap.com/#/notes/<id>``
       (UI5 single-page app; give it time to render)
    2. Reveal the CVSS tab; selectors are tried in order, first visible wins
    3. Read the base score (three text strategies)
    4. Rebuild the vector from the eight metric rows of the CVSS table;
       emit it only when every metric resolved

Everything here is best effort: callers treat ``(None, None)`` as "nothing
found", never as an error.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------

# SAP Fiori / UI5 tab patterns for the CVSS tab
CVSS_TAB_SELECTORS: List[str] = [
    'text=CVSS',
    '[role="tab"]:has-text("CVSS")',
    'button:has-text("CVSS")',
    'a:has-text("CVSS")',
    '.sapMITBText:has-text("CVSS")',
    '.sapMITBFilter:has-text("CVSS")',
    'div[role="tab"]:has-text("CVSS")',
    '.sapUiIconTabHeaderText:has-text("CVSS")',
]

_BUSY_SELECTORS: List[str] = [
    '.sapUiLocalBusyIndicator',
    '.sapUiBusy',
    '.sapMBusyIndicator',
]

# (vector key, row label, displayed value → code).  Order inside each map
# matters for substring matching: "Adjacent Network" must map to A, not N.
CVSS_METRIC_ROWS: List[Tuple[str, str, List[Tuple[str, str]]]] = [
    ("AV", "Attack Vector",
     [("Adjacent", "A"), ("Network", "N"), ("Local", "L"), ("Physical", "P")]),
    ("AC", "Attack Complexity", [("Low", "L"), ("High", "H")]),
    ("PR", "Privileges Required", [("None", "N"), ("Low", "L"), ("High", "H")]),
    ("UI", "User Interaction", [("None", "N"), ("Required", "R")]),
    ("S", "Scope", [("Unchanged", "U"), ("Changed", "C")]),
    ("C", "Confidentiality", [("None", "N"), ("Low", "L"), ("High", "H")]),
    ("I", "Integrity", [("None", "N"), ("Low", "L"), ("High", "H")]),
    ("A", "Availability", [("None", "N"), ("Low", "L"), ("High", "H")]),
]

_SCORE_IN_TEXT_RE = re.compile(r"(\d+\.?\d*)")
_LABELLED_SCORE_RE = re.compile(r"Base Score\D*?(\d+(?:\.\d+)?)", re.IGNORECASE)
_SCORE_OUT_OF_TEN_RE = re.compile(
    r"CVSS\s*v?3\.\d\s*Base Score\s*[:\s]+(\d+\.?\d*)\s*/\s*10", re.IGNORECASE
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def map_metric_value(key: str, displayed: str) -> Optional[str]:
    """Map a displayed metric value ("Network", "Low") to its CVSS code."""
    mapping = next((m for k, _, m in CVSS_METRIC_ROWS if k == key), None)
    if mapping is None:
        return None
    value = (displayed or "").strip()
    for long_form, code in mapping:
        if value.lower() == long_form.lower():
            return code
    for long_form, code in mapping:
        if long_form.lower() in value.lower():
            return code
    return None


def build_vector(components: Dict[str, str]) -> Optional[str]:
    """``CVSS:3.0/...`` from all eight metric codes, or None."""
    keys = [k for k, _, _ in CVSS_METRIC_ROWS]
    missing = [k for k in keys if not components.get(k)]
    if missing:
        logger.warning(
            f"[CVSS] Could not build complete vector "
            f"(found {len(keys) - len(missing)}/8 components)"
        )
        return None
    return "CVSS:3.0/" + "/".join(f"{k}:{components[k]}" for k in keys)


# ---------------------------------------------------------------------------
# Page interaction
# ---------------------------------------------------------------------------

async def wait_for_ui5_ready(page: Page, timeout_ms: int = 10_000) -> None:
    """Wait for the launchpad to settle: network idle, busy indicators gone."""
    try:
        await page.wait_for_load_state("networkidle", timeout=timeout_ms)
    except PlaywrightTimeout:
        pass
    for sel in _BUSY_SELECTORS:
        try:
            await page.wait_for_selector(sel, state="hidden", timeout=min(timeout_ms, 5_000))
        except PlaywrightTimeout:
            continue


async def reveal_severity_tab(page: Page, selectors: List[str] = CVSS_TAB_SELECTORS) -> bool:
    """Click the first visible CVSS tab. Returns True if one was clicked."""
    for selector in selectors:
        try:
            tab = page.locator(selector).first
            if await tab.is_visible():
                logger.info(f"[CVSS] Found CVSS tab with selector: {selector}")
                await tab.click()
                return True
            logger.debug(f"[CVSS] Selector not visible: {selector}")
        except Exception as e:
            logger.debug(f"[CVSS] Selector failed: {selector} - {e}")
    return False


async def _body_text(page: Page) -> str:
    try:
        return await page.locator("body").text_content(timeout=3_000) or ""
    except Exception:
        return ""


async def extract_score(page: Page) -> Optional[str]:
    """Base score via three strategies: labelled text, table cell, body text."""

    async def from_labelled_text() -> Optional[str]:
        text = await page.locator(r"text=/CVSS.*Base Score.*?(\d+\.\d+)/i").first.text_content(
            timeout=2_000
        )
        match = _LABELLED_SCORE_RE.search(text or "")
        return match.group(1) if match else None

    async def from_table_cell() -> Optional[str]:
        cell = page.locator('td:has-text("Base Score")').locator("..").locator("td").nth(1)
        text = await cell.text_content(timeout=2_000)
        match = _SCORE_IN_TEXT_RE.search(text or "")
        return match.group(1) if match else None

    async def from_body_text() -> Optional[str]:
        match = _SCORE_OUT_OF_TEN_RE.search(await _body_text(page))
        return match.group(1) if match else None

    for strategy in (from_labelled_text, from_table_cell, from_body_text):
        try:
            score = await strategy()
        except Exception as e:
            logger.debug(f"[CVSS] Score strategy {strategy.__name__} failed: {e}")
            continue
        if score:
            logger.info(f"[CVSS] Extracted score: {score}")
            return score
    logger.warning("[CVSS] Could not extract CVSS score from page")
    return None


async def extract_vector(page: Page) -> Optional[str]:
    """Rebuild the vector from the metric rows of the CVSS table."""
    components: Dict[str, str] = {}
    for key, name, _ in CVSS_METRIC_ROWS:
        try:
            row = page.locator(f'tr:has(td:has-text("{name}"))').first
            if not await row.is_visible():
                continue
            cells = await row.locator("td").all_text_contents()
        except Exception as e:
            logger.debug(f"[CVSS] Could not read {name}: {e}")
            continue
        if len(cells) < 2:
            continue
        code = map_metric_value(key, cells[1])
        if code:
            components[key] = code
            logger.debug(f"[CVSS] {name}: {cells[1].strip()} -> {code}")
    vector = build_vector(components)
    if vector:
        logger.info(f"[CVSS] Built vector: {vector}")
    return vector


async def extract_severity_from_page(
    page: Page,
    note_url: str,
    *,
    navigation_timeout_ms: int = 30_000,
    settle_s: float = 5.0,
    sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
) -> Tuple[Optional[str], Optional[str]]:
    """Score and vector from the note's launchpad page; ``(None, None)`` if absent."""
    if "/#/notes" not in (page.url or ""):
        logger.info(f"[CVSS] Navigating to {note_url}")
        try:
            await page.goto(note_url, wait_until="domcontentloaded", timeout=navigation_timeout_ms)
        except PlaywrightTimeout as e:
            logger.warning(f"[CVSS] Navigation issue: {e}, continuing anyway")
        await wait_for_ui5_ready(page)
        await sleep(settle_s)

    if await reveal_severity_tab(page):
        await sleep(2.0)
    else:
        # The tab may be pre-selected or rendered inline
        if "CVSS" not in await _body_text(page):
            logger.info("[CVSS] No CVSS tab or text on page")
            return None, None
        logger.debug("[CVSS] Page has CVSS text but no clickable tab")

    return await extract_score(page), await extract_vector(page)
