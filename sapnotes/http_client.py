"""
Portal HTTP Client
==================
Thin async wrapper around a ``requests.Session`` configured with realistic
browser headers.  Blocking calls run in a worker thread so the event loop
stays free for browser work.

Responses are returned as ``HttpResult`` regardless of status; callers
decide what is acceptable and use ``raise_for_status`` to turn the rest
into ``HttpStatusError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .errors import HttpStatusError
from .run_config import NotesRunConfig
from .utils import detect_platform

logger = logging.getLogger(__name__)

# Headers for XHR-style JSON calls against the portal backend
JSON_HEADERS = {
    "Accept": "application/json, text/javascript, */*; q=0.01",
    "X-Requested-With": "XMLHttpRequest",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


@dataclass
class HttpResult:
    status: int
    url: str
    text: str
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body. Raises ``ValueError`` on malformed JSON."""
        return json.loads(self.text)


def raise_for_status(result: HttpResult) -> HttpResult:
    if not result.ok:
        raise HttpStatusError(result.status, result.url, result.text)
    return result


class PortalHttpClient:
    """HTTP capability used by the retrieval engine."""

    def __init__(self, config: NotesRunConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create configured requests session with realistic browser headers."""
        session = requests.Session()
        session.headers.update({
            'User-Agent': self.config.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
            'Connection': 'keep-alive',
            'Upgrade-Insecure-Requests': '1',
            'Sec-Fetch-Dest': 'document',
            'Sec-Fetch-Mode': 'navigate',
            'Sec-Fetch-Site': 'none',
            'Sec-Fetch-User': '?1',
            'sec-ch-ua': '"Chromium";v="131", "Not_A Brand";v="24", "Google Chrome";v="131"',
            'sec-ch-ua-mobile': '?0',
            'sec-ch-ua-platform': f'"{detect_platform()}"',
        })
        return session

    def _request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        payload: Optional[Any] = None,
    ) -> HttpResult:
        logger.debug(f"[HTTP] {method} {url[:120]}")
        response = self.session.request(
            method,
            url,
            headers=headers,
            json=payload,
            timeout=self.config.http_timeout_s,
            allow_redirects=True,
        )
        result = HttpResult(
            status=response.status_code,
            url=response.url,
            text=response.text,
            content_type=response.headers.get("Content-Type", ""),
        )
        logger.debug(f"[HTTP] {result.status} {result.content_type} ({len(result.text)} chars)")
        return result

    async def get(
        self,
        url: str,
        *,
        cookie: str = "",
        headers: Optional[Dict[str, str]] = None,
    ) -> HttpResult:
        merged = dict(headers or {})
        if cookie:
            merged["Cookie"] = cookie
        return await asyncio.to_thread(self._request, "GET", url, merged)

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        bearer: str = "",
        headers: Optional[Dict[str, str]] = None,
    ) -> HttpResult:
        merged = {"Content-Type": "application/json", "Accept": "application/json"}
        merged.update(headers or {})
        if bearer:
            merged["Authorization"] = f"Bearer {bearer}"
        return await asyncio.to_thread(self._request, "POST", url, merged, payload)

    def close(self) -> None:
        self.session.close()
