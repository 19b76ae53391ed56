"""
Error Taxonomy
==============
Every exception raised by the package derives from ``SapNotesError``.

Authentication failures:
    - ``CertificateError``: client certificate missing / unreadable
    - ``BrowserUnavailableError``: browser could not be launched
    - ``AuthTimeoutError``: login navigation / redirect timed out
    - ``AuthenticationError``: any other login failure (base of the above)

Retrieval failures:
    - ``SessionExpired``: server rejected the session (re-login)
    - ``TokenUnavailableError``: no derived search token could be minted
    - ``HttpStatusError``: upstream answered with an unusable status
    - ``SearchExhaustedError``: every search strategy failed
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple


class SapNotesError(Exception):
    """Base class for all package errors."""


class ConfigurationError(SapNotesError):
    """Required settings are missing or invalid."""


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthenticationError(SapNotesError):
    """Login failed. ``cause`` holds the underlying exception, if any."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class CertificateError(AuthenticationError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to load certificate from {path}: {reason}")
        self.path = path
        self.reason = reason


class BrowserUnavailableError(AuthenticationError):
    pass


class AuthTimeoutError(AuthenticationError):
    def __init__(self, timeout_ms: int, message: str = ""):
        super().__init__(message or f"Authentication timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class SessionExpired(SapNotesError):
    """The portal redirected to its login page: cached cookies were rejected."""


class TokenUnavailableError(SapNotesError):
    pass


class HttpStatusError(SapNotesError):
    def __init__(self, status: int, url: str, body: str = ""):
        super().__init__(f"HTTP {status} from {url[:100]}: {body[:200]}")
        self.status = status
        self.url = url
        self.body = body


class SearchExhaustedError(SapNotesError):
    """All search strategies failed.

    The message is meant to be shown to the end user as-is: it names the
    query, lists each strategy with the reason it failed, and points at
    the direct ``fetch(id)`` workaround.
    """

    def __init__(self, query: str, attempts: Sequence[Tuple[str, str]]):
        self.query = query
        self.attempts: List[Tuple[str, str]] = list(attempts)
        super().__init__(self._compose())

    def _compose(self) -> str:
        lines = [f'SAP Notes search failed for "{self.query}": all search methods exhausted.']
        if self.attempts:
            lines.append("")
            lines.append("Tried:")
            for name, outcome in self.attempts:
                lines.append(f"  - {name}: {outcome}")
        lines.append("")
        lines.append("Workarounds:")
        lines.append(
            "  1. If you already know the SAP Note ID (e.g. 2744792), fetch it "
            "directly with fetch(id) - direct retrieval does not depend on search."
        )
        lines.append("  2. Search manually on https://me.sap.com/notes")
        return "\n".join(lines)
