"""
Session Credential
==================
The serialized proof of a certificate-based login.

A ``Credential`` is the cookie set read from the browser context right
after login, flattened to a single ``name=value; name=value`` string for
HTTP calls, plus the cookie objects themselves so a new browser context
can be re-seeded without logging in again.

Validity rule: ``now < expires_at - SAFETY_BUFFER_S``.  The buffer keeps
callers from starting a multi-step retrieval with a credential that would
expire halfway through.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SAFETY_BUFFER_S = 5 * 60

# Cookie attribute names that can show up in a raw Cookie/Set-Cookie string
_COOKIE_ATTRIBUTES = {
    "path", "domain", "secure", "httponly", "samesite", "max-age", "expires",
}

_DEFAULT_COOKIE_DOMAIN = ".sap.com"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------

def serialize_cookies(cookies: List[Dict[str, Any]]) -> str:
    """Join cookie objects into a ``Cookie`` header value."""
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies if c.get("name"))


def parse_cookie_string(
    raw: str, domain: str = _DEFAULT_COOKIE_DOMAIN
) -> List[Dict[str, Any]]:
    """Turn a ``name=value; ...`` string back into browser cookie objects.

    Attribute pairs (Path, Domain, Secure, ...) and empty names/values are
    skipped; surrounding double quotes are stripped from values.
    """
    cookies: List[Dict[str, Any]] = []
    for pair in (raw or "").split(";"):
        pair = pair.strip()
        if "=" not in pair:
            continue
        name, value = pair.split("=", 1)
        name = name.strip()
        value = value.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        if not name or not value or name.lower() in _COOKIE_ATTRIBUTES:
            continue
        cookies.append({"name": name, "value": value, "domain": domain, "path": "/"})
    logger.debug(f"[CREDENTIAL] Parsed {len(cookies)} cookies from raw string")
    return cookies


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

@dataclass
class Credential:
    """Session credential. Times are epoch seconds."""
    raw_value: str
    issued_at: float
    expires_at: float
    cookies: List[Dict[str, Any]] = field(default_factory=list)

    def is_valid(
        self, now: Optional[float] = None, buffer_s: float = SAFETY_BUFFER_S
    ) -> bool:
        if not self.raw_value or not self.expires_at:
            return False
        now = time.time() if now is None else now
        return now < self.expires_at - buffer_s

    def browser_cookies(self) -> List[Dict[str, Any]]:
        """Cookies to inject into a fresh browser context."""
        if self.cookies:
            return [dict(c) for c in self.cookies]
        return parse_cookie_string(self.raw_value)

    # ── Cache record (de)serialization ────────────────────────────

    def to_record(self) -> Dict[str, Any]:
        """The persisted cache shape (``expiresAt`` in epoch millis)."""
        return {
            "access_token": self.raw_value,
            "cookies": self.cookies,
            "expiresAt": int(round(self.expires_at * 1000)),
            "issuedAt": int(round(self.issued_at * 1000)),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Credential":
        """Rebuild from a cache record.

        Raises:
            ValueError: the record lacks ``access_token`` or ``expiresAt``.
        """
        if not isinstance(data, dict):
            raise ValueError("cache record is not an object")
        token = data.get("access_token")
        expires_ms = data.get("expiresAt")
        if not token or not isinstance(expires_ms, (int, float)):
            raise ValueError("cache record lacks access_token / expiresAt")
        cookies = data.get("cookies") or []
        if not isinstance(cookies, list):
            raise ValueError("cache record cookies is not a list")
        issued_ms = data.get("issuedAt") or 0
        return cls(
            raw_value=token,
            issued_at=float(issued_ms) / 1000,
            expires_at=float(expires_ms) / 1000,
            cookies=cookies,
        )
