"""
Response Parsers
================
Pure transforms from the portal's many response shapes into ``models``.

Search shapes:
    - Coveo ``{"results": [{"title", "excerpt", "clickUri", "raw": {...}}]}``
    - backend raw ``{"Response": {"SearchResults": [...]}}``
    - knowledge search ``{"results": [{"mh_id", ...}]}``
    - plain JSON list
    - HTML (note ids scraped from the markup)

Detail shapes (``DetailShape``):
    - ENVELOPE: ``{"Response": {"SAPNote": {"Header": {...}, ...}}}``
    - GENERIC: flat key/value JSON (OData ``{"d": ...}`` unwrapped)
    - HTML: anything that is not JSON

No function here performs I/O.
"""

from __future__ import annotations

import html as html_lib
import json
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bs4 import BeautifulSoup

from .models import AffectedVersion, ArticleDetail, ArticleSummary
from .utils import clean_text, unique

logger = logging.getLogger(__name__)

LAUNCHPAD_URL = "https://launchpad.support.sap.com"

NOTE_ID_RE = re.compile(r"\d{6,8}")
_NOTE_ID_QUERY_RE = re.compile(r"^\d{6,8}$")
_HTML_NOTE_ID_RE = re.compile(r"\b\d{6,8}\b")
_BODY_RE = re.compile(r"<body[^>]*>(.*?)</body>", re.IGNORECASE | re.DOTALL)
_PRE_RE = re.compile(r"^<pre[^>]*>(.*)</pre>$", re.IGNORECASE | re.DOTALL)
_TITLE_PREFIX_RE = re.compile(r"SAP\s*-?\s*", re.IGNORECASE)
_COMPONENT_VERSION_RE = re.compile(r"^([A-Z0-9_]+)\s+(\d+)$")

# The lookahead keeps the version in "CVSS:3.1/AV:..." from reading as a score
CVSS_SCORE_RE = re.compile(
    r"CVSS(?:\s+Base\s+Score)?[\s:]+(?!\d+(?:\.\d+)?/[A-Z])(\d+(?:\.\d+)?)", re.IGNORECASE
)
CVSS_VECTOR_RE = re.compile(r"CVSS:3\.\d/[A-Z:/]+", re.IGNORECASE)
CVSS_METRICS = ("AV", "AC", "PR", "UI", "S", "C", "I", "A")

# Pages served instead of the note when the browser has to finish a login hop
_REDIRECT_PAGE_MARKERS = ("fragmentAfterLogin", "document.cookie")

MAX_HTML_SEARCH_RESULTS = 5

# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def is_note_id(query: str) -> bool:
    """True for a bare 6-8 digit note number."""
    return bool(_NOTE_ID_QUERY_RE.match((query or "").strip()))


def note_url(note_id: str, launchpad_url: str = LAUNCHPAD_URL) -> str:
    return f"{launchpad_url}/#/notes/{note_id}"


def first_of(value: Any) -> Any:
    """Coveo sends many single values as one-element lists."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def epoch_ms_to_date(value: Any) -> str:
    """Epoch milliseconds → ``YYYY-MM-DD``; ``"Unknown"`` if unusable."""
    if value in (None, ""):
        return "Unknown"
    try:
        moment = datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return "Unknown"
    return moment.strftime("%Y-%m-%d")


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    """First non-empty value among *keys*."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    """Normalize scalar / ``{"value": ...}`` wrappers to a string."""
    if isinstance(value, dict):
        value = value.get("value")
    if value in (None, ""):
        return None
    return str(value)


def _value(obj: Any, key: str, attr: str = "value") -> Optional[str]:
    """``obj[key][attr]`` for envelope fields like ``Header.Number.value``."""
    if not isinstance(obj, dict):
        return None
    node = obj.get(key)
    if isinstance(node, dict):
        return _as_text(node.get(attr))
    return _as_text(node)


# ---------------------------------------------------------------------------
# Severity (CVSS)
# ---------------------------------------------------------------------------

def complete_vector(vector: Optional[str]) -> Optional[str]:
    """Return *vector* in canonical metric order, or None unless all 8 resolve.

    ``CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H`` → same string.
    A vector missing any of AV/AC/PR/UI/S/C/I/A is discarded.
    """
    if not vector:
        return None
    parts = str(vector).strip().strip("/").split("/")
    prefix = parts[0].upper()
    if not re.match(r"^CVSS:3\.\d$", prefix):
        return None
    metrics: Dict[str, str] = {}
    for part in parts[1:]:
        key, sep, value = part.partition(":")
        if sep and key.upper() in CVSS_METRICS and value:
            metrics.setdefault(key.upper(), value.upper())
    if any(m not in metrics for m in CVSS_METRICS):
        logger.debug(f"[CVSS] Discarding partial vector ({len(metrics)}/8): {vector}")
        return None
    return prefix + "/" + "/".join(f"{m}:{metrics[m]}" for m in CVSS_METRICS)


def extract_severity_from_content(content: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Score and (complete) vector embedded in free text."""
    if not content:
        return None, None
    score_match = CVSS_SCORE_RE.search(content)
    vector_match = CVSS_VECTOR_RE.search(content)
    score = score_match.group(1) if score_match else None
    vector = complete_vector(vector_match.group(0)) if vector_match else None
    return score, vector


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------

def _coveo_raw(item: Dict[str, Any]) -> Dict[str, Any]:
    raw = item.get("raw")
    return raw if isinstance(raw, dict) else {}


def _coveo_note_id(item: Dict[str, Any]) -> str:
    raw = _coveo_raw(item)
    if raw.get("mh_id"):
        return str(first_of(raw["mh_id"]))
    for text in (raw.get("permanentid"), item.get("title")):
        match = NOTE_ID_RE.search(str(text or ""))
        if match:
            return match.group(0)
    return "unknown"


def parse_search_results(
    data: Any, launchpad_url: str = LAUNCHPAD_URL
) -> List[ArticleSummary]:
    """Parse a Coveo search response. Unparseable items are skipped."""
    items = data.get("results") if isinstance(data, dict) else None
    if not isinstance(items, list):
        logger.warning("[SEARCH] No results array in Coveo response")
        return []

    results: List[ArticleSummary] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        raw = _coveo_raw(item)
        note_id = _coveo_note_id(item)
        language = first_of(raw.get("language") or raw.get("syslanguage")) or "EN"
        component = first_of(
            raw.get("mh_app_component") or raw.get("mh_all_hierarchical_component")
        )
        results.append(ArticleSummary(
            id=note_id,
            title=item.get("title") or "Unknown Title",
            summary=item.get("excerpt") or raw.get("mh_description") or "No summary available",
            component=component or None,
            release_date=epoch_ms_to_date(raw.get("date")),
            language=str(language),
            url=raw.get("mh_alt_url") or item.get("clickUri") or note_url(note_id, launchpad_url),
        ))
    logger.debug(f"[SEARCH] Parsed {len(results)} notes from Coveo response")
    return results


def _summary_from(
    item: Dict[str, Any],
    id_keys: Iterable[str],
    title_keys: Iterable[str],
    summary_keys: Iterable[str],
    component_keys: Iterable[str],
    date_keys: Iterable[str],
    language_keys: Iterable[str],
    launchpad_url: str,
    url_keys: Iterable[str] = (),
) -> ArticleSummary:
    note_id = str(_pick(item, *id_keys) or "unknown")
    return ArticleSummary(
        id=note_id,
        title=str(_pick(item, *title_keys) or "No title"),
        summary=str(_pick(item, *summary_keys) or "No summary available"),
        component=first_of(_pick(item, *component_keys)),
        release_date=str(_pick(item, *date_keys) or "Unknown"),
        language=str(first_of(_pick(item, *language_keys)) or "EN"),
        url=str(_pick(item, *url_keys) or note_url(note_id, launchpad_url)),
    )


def parse_html_search(
    html: str, query: str, launchpad_url: str = LAUNCHPAD_URL
) -> List[ArticleSummary]:
    """Last resort: note numbers appearing anywhere in a search page."""
    ids = unique(_HTML_NOTE_ID_RE.findall(html or ""))[:MAX_HTML_SEARCH_RESULTS]
    return [
        ArticleSummary(
            id=note_id,
            title=f"SAP Note {note_id}",
            summary=f'Found note ID {note_id} in search results for "{query}"',
            release_date="Unknown",
            language="EN",
            url=note_url(note_id, launchpad_url),
        )
        for note_id in ids
    ]


def parse_internal_search(
    body: str,
    content_type: str,
    query: str,
    launchpad_url: str = LAUNCHPAD_URL,
) -> List[ArticleSummary]:
    """Parse the alternate (non-Coveo) search endpoints."""
    content_type = (content_type or "").lower()
    if "json" in content_type:
        try:
            data = json.loads(body)
        except ValueError as exc:
            logger.debug(f"[SEARCH] Internal search body is not JSON: {exc}")
            return []
        return _parse_internal_json(data, launchpad_url)
    if "html" in content_type:
        return parse_html_search(body, query, launchpad_url)
    logger.debug(f"[SEARCH] Unsupported content type: {content_type}")
    return []


def _parse_internal_json(data: Any, launchpad_url: str) -> List[ArticleSummary]:
    if isinstance(data, dict) and isinstance(data.get("Response"), dict):
        found = data["Response"].get("SearchResults")
        if isinstance(found, dict):
            found = found.get("results")
        if isinstance(found, list):
            return [
                _summary_from(
                    item, ("Number", "id"), ("Title", "title"), ("Summary", "summary"),
                    ("Component",), ("ReleaseDate",), ("Language",), launchpad_url,
                )
                for item in found if isinstance(item, dict)
            ]

    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return [
            _summary_from(
                item,
                ("mh_id", "id", "noteId"),
                ("title", "mh_description"),
                ("summary", "description", "mh_description"),
                ("mh_app_component", "component"),
                ("date",),
                ("language",),
                launchpad_url,
                url_keys=("mh_alt_url",),
            )
            for item in data["results"] if isinstance(item, dict)
        ]

    if isinstance(data, list):
        return [
            _summary_from(
                item,
                ("id", "noteId", "Number"),
                ("title", "name", "Title"),
                ("summary", "description", "Summary"),
                ("component",),
                ("date", "ReleaseDate"),
                ("language", "Language"),
                launchpad_url,
            )
            for item in data if isinstance(item, dict)
        ]

    logger.debug("[SEARCH] Unrecognized internal search JSON shape")
    return []


# ---------------------------------------------------------------------------
# Detail shapes
# ---------------------------------------------------------------------------

class DetailShape(Enum):
    ENVELOPE = "envelope"
    GENERIC = "generic"
    HTML = "html"


def detect_detail_shape(payload: Union[Dict[str, Any], str, None]) -> DetailShape:
    if isinstance(payload, dict):
        response = payload.get("Response")
        if isinstance(response, dict) and isinstance(response.get("SAPNote"), dict):
            return DetailShape.ENVELOPE
        return DetailShape.GENERIC
    return DetailShape.HTML


def _load_json_object(text: str) -> Optional[Dict[str, Any]]:
    text = (text or "").strip()
    if not (text.startswith("{") and text.endswith("}")):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def json_in_html_body(html: str) -> Optional[Dict[str, Any]]:
    """JSON a browser wrapped in ``<html><body><pre>...`` when rendering it."""
    match = _BODY_RE.search(html or "")
    if not match:
        return None
    inner = match.group(1).strip()
    pre = _PRE_RE.match(inner)
    if pre:
        inner = pre.group(1).strip()
    return _load_json_object(html_lib.unescape(inner))


def decode_detail_body(text: str) -> Union[Dict[str, Any], str]:
    """Body text → JSON object when possible, else the raw text (HTML)."""
    data = _load_json_object(text)
    if data is None:
        data = json_in_html_body(text)
    return data if data is not None else (text or "")


def extract_affected_versions(sap_note: Dict[str, Any]) -> Tuple[AffectedVersion, ...]:
    """``SupportPackage.Items[]`` rows shaped ``"<COMPONENT> <NUMBER>"``."""
    support = sap_note.get("SupportPackage") if isinstance(sap_note, dict) else None
    items = support.get("Items") if isinstance(support, dict) else None
    if not isinstance(items, list):
        return ()
    versions = []
    for item in items:
        if not isinstance(item, dict):
            continue
        match = _COMPONENT_VERSION_RE.match(str(item.get("SoftwareComponentVersion") or ""))
        if not match:
            continue
        versions.append(AffectedVersion(
            component=match.group(1),
            version=match.group(2),
            support_package=str(item.get("SupportPackage") or ""),
        ))
    if versions:
        logger.info(f"[FETCH] Extracted {len(versions)} software component versions")
    return tuple(versions)


def parse_envelope_detail(
    data: Dict[str, Any], note_id: str, launchpad_url: str = LAUNCHPAD_URL
) -> ArticleDetail:
    sap_note = data["Response"]["SAPNote"]
    header = sap_note.get("Header") or {}
    content = _value(sap_note, "LongText") or "No content available"

    cvss = sap_note.get("CVSS") or {}
    score = _value(cvss, "CVSS_Score")
    vector = complete_vector(_value(cvss, "CVSS_Vector", "vectorValue"))
    if not score or not vector:
        text_score, text_vector = extract_severity_from_content(content)
        score = score or text_score
        vector = vector or text_vector

    return ArticleDetail(
        id=note_id,
        title=_value(sap_note, "Title") or f"SAP Note {note_id}",
        summary=_value(header, "Type") or "SAP Knowledge Base Article",
        component=_value(header, "SAPComponentKeyText") or _value(header, "SAPComponentKey"),
        release_date=_value(header, "ReleasedOn") or "Unknown",
        language=_value(header, "Language") or "EN",
        url=note_url(note_id, launchpad_url),
        content=content,
        priority=_value(header, "Priority"),
        category=_value(header, "Category"),
        severity_score=score,
        severity_vector=vector,
        affected_versions=extract_affected_versions(sap_note),
    )


_GENERIC_ID_KEYS = ("SapNote", "Id", "id", "noteId", "Number")
_GENERIC_TITLE_KEYS = ("Title", "title", "ShortText")
_GENERIC_CONTENT_KEYS = ("Content", "content", "Text", "LongText", "Html", "Description")


def _unwrap_odata(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    inner = data.get("d")
    if inner is None:
        return data
    if isinstance(inner, dict) and isinstance(inner.get("results"), list):
        rows = [r for r in inner["results"] if isinstance(r, dict)]
        return rows[0] if rows else None
    return inner if isinstance(inner, dict) else None


def parse_generic_detail(
    data: Dict[str, Any], note_id: str, launchpad_url: str = LAUNCHPAD_URL
) -> Optional[ArticleDetail]:
    """Flat key/value detail. None when no recognizable field is present."""
    item = _unwrap_odata(data)
    if not item or not _pick(item, *_GENERIC_ID_KEYS, *_GENERIC_TITLE_KEYS, *_GENERIC_CONTENT_KEYS):
        return None

    content = _as_text(_pick(item, *_GENERIC_CONTENT_KEYS)) or "Note content available at URL"
    score, vector = extract_severity_from_content(content)
    direct_score = _as_text(_pick(item, "CvssScore", "cvssScore", "CVSSScore"))
    direct_vector = _as_text(_pick(item, "CvssVector", "cvssVector", "CVSSVector"))

    return ArticleDetail(
        id=note_id,
        title=_as_text(_pick(item, *_GENERIC_TITLE_KEYS)) or f"SAP Note {note_id}",
        summary=_as_text(_pick(item, "Summary", "summary", "Abstract", "abstract", "Description"))
        or "SAP Note details",
        component=_as_text(_pick(item, "Component", "component")),
        release_date=_as_text(_pick(item, "ReleaseDate", "releaseDate", "CreationDate")) or "Unknown",
        language=_as_text(_pick(item, "Language", "language")) or "EN",
        url=note_url(note_id, launchpad_url),
        content=content,
        priority=_as_text(_pick(item, "Priority", "priority")),
        category=_as_text(_pick(item, "Category", "category", "Type")),
        severity_score=direct_score or score,
        severity_vector=complete_vector(direct_vector) or vector,
    )


def _soup(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html or "", "lxml")
    if soup.find() is None and html:
        soup = BeautifulSoup(html, "html.parser")
    return soup


def extract_dom_fields(html: str) -> Dict[str, str]:
    """Title / content / summary through common selectors (rendered pages)."""
    soup = _soup(html)

    def text_of(selector: str) -> str:
        node = soup.select_one(selector)
        return clean_text(node.get_text(" ")) if node else ""

    return {
        "title": text_of("h1, h2, .note-title, .title"),
        "content": text_of(".note-content, .content, .description, .text"),
        "summary": text_of(".summary, .abstract, .description"),
    }


def _redirect_placeholder(note_id: str, launchpad_url: str) -> ArticleDetail:
    url = note_url(note_id, launchpad_url)
    return ArticleDetail(
        id=note_id,
        title=f"SAP Note {note_id}",
        summary="Note found via raw API - full content requires browser access",
        release_date="Unknown",
        language="EN",
        url=url,
        content=(
            "This SAP Note exists but its content requires browser navigation to access.\n\n"
            f"To view the complete note content:\n1. Visit: {url}\n"
            "2. Or access through: https://me.sap.com with your SAP credentials"
        ),
    )


def parse_html_detail(
    html: str, note_id: str, launchpad_url: str = LAUNCHPAD_URL
) -> Optional[ArticleDetail]:
    """HTML served by HTTP endpoints.

    A login-hop page for a well-formed id yields a placeholder; any other
    page must mention the note id, otherwise it is not about this note.
    """
    if not html:
        return None
    if any(m in html for m in _REDIRECT_PAGE_MARKERS):
        if is_note_id(note_id):
            logger.debug("[FETCH] Redirect page detected, note likely exists")
            return _redirect_placeholder(note_id, launchpad_url)
        return None
    if note_id not in html:
        return None

    soup = _soup(html)
    raw_title = soup.title.get_text() if soup.title else ""
    title = _TITLE_PREFIX_RE.sub("", clean_text(raw_title), count=1).strip()
    fields = extract_dom_fields(html)
    score, vector = extract_severity_from_content(html)
    return ArticleDetail(
        id=note_id,
        title=title or fields["title"] or f"SAP Note {note_id}",
        summary=fields["summary"] or "SAP Note details available at the provided URL",
        release_date="Unknown",
        language="EN",
        url=note_url(note_id, launchpad_url),
        content=fields["content"] or "Please visit the URL for complete note content",
        severity_score=score,
        severity_vector=vector,
    )


def parse_detail(
    payload: Union[Dict[str, Any], str, None],
    note_id: str,
    launchpad_url: str = LAUNCHPAD_URL,
) -> Optional[ArticleDetail]:
    """Dispatch on ``detect_detail_shape``."""
    shape = detect_detail_shape(payload)
    logger.debug(f"[FETCH] Detail shape for {note_id}: {shape.value}")
    if shape is DetailShape.ENVELOPE:
        return parse_envelope_detail(payload, note_id, launchpad_url)
    if shape is DetailShape.GENERIC:
        return parse_generic_detail(payload, note_id, launchpad_url)
    return parse_html_detail(payload or "", note_id, launchpad_url)


def parse_rendered_detail(
    body_text: str, html: str, note_id: str, launchpad_url: str = LAUNCHPAD_URL
) -> Optional[ArticleDetail]:
    """Parse a page rendered by the browser.

    Order: body text as JSON → JSON inside ``<body>`` → DOM heuristics.
    """
    data = _load_json_object(body_text)
    if data is None:
        data = json_in_html_body(html)
    if data is not None:
        parsed = parse_detail(data, note_id, launchpad_url)
        if parsed is not None:
            return parsed

    fields = extract_dom_fields(html)
    if not any(fields.values()):
        return None
    logger.info(f"[FETCH] Extracted note {note_id} from rendered HTML")
    content = fields["content"] or "Note content extracted via browser automation"
    score, vector = extract_severity_from_content(content)
    return ArticleDetail(
        id=note_id,
        title=fields["title"] or f"SAP Note {note_id}",
        summary=fields["summary"] or "Extracted via browser",
        release_date="Unknown",
        language="EN",
        url=note_url(note_id, launchpad_url),
        content=content,
        severity_score=score,
        severity_vector=vector,
    )
