"""
SAP Notes Client
================
Wires the authenticator, token session manager, HTTP client and retrieval
engine together behind one object.

Usage::

    config = NotesRunConfig.from_env()
    async with SapNotesClient(config) as client:
        response = await client.search("SAML signature", max_results=5)
        note = await client.fetch("2744792")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .auth.base_auth import Credential
from .auth.sap_auth import CertificateAuthenticator
from .auth.session_manager import TokenSessionManager
from .auth.session_store import CredentialCache
from .browser import BrowserLauncher, PlaywrightLauncher
from .engine import FallbackRetrievalEngine
from .http_client import PortalHttpClient
from .models import ArticleDetail, SearchResponse
from .run_config import NotesRunConfig

logger = logging.getLogger(__name__)


class SapNotesClient:
    """Public surface: credential, search, fetch, invalidate, shutdown."""

    def __init__(
        self,
        config: NotesRunConfig,
        *,
        launcher: Optional[BrowserLauncher] = None,
        http: Optional[PortalHttpClient] = None,
        cache: Optional[CredentialCache] = None,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.config = config
        self.launcher = launcher or PlaywrightLauncher(config.browser_type)
        self.http = http or PortalHttpClient(config)
        self.authenticator = CertificateAuthenticator(
            config, cache=cache, launcher=self.launcher, sleep=sleep
        )
        self.token_sessions = TokenSessionManager(config, self.launcher, sleep=sleep)
        self.engine = FallbackRetrievalEngine(
            config, self.authenticator, self.token_sessions, self.http, self.launcher,
            sleep=sleep,
        )

    async def __aenter__(self) -> "SapNotesClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def ensure_valid_credential(self) -> Credential:
        return await self.authenticator.ensure_valid_credential()

    async def search(self, query: str, max_results: Optional[int] = None) -> SearchResponse:
        return await self.engine.search(query, max_results)

    async def fetch(self, note_id: str) -> Optional[ArticleDetail]:
        return await self.engine.fetch(note_id)

    async def health_check(self) -> bool:
        return await self.engine.health_check()

    def invalidate(self) -> None:
        self.authenticator.invalidate()

    async def shutdown(self) -> None:
        """Release every browser and the HTTP session. Safe to call twice."""
        logger.info("[CLIENT] Shutting down")
        await self.engine.cleanup()
        await self.authenticator.destroy()
        await self.launcher.stop()
        self.http.close()

    cleanup = shutdown
