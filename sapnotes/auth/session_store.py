"""
Credential Cache
================
Persists the session credential between process runs.

Record format (JSON)::

    {
      "access_token": "name=value; name2=value2",
      "cookies": [{"name", "value", "domain", "path", "expires",
                   "secure", "httpOnly", "sameSite"}, ...],
      "expiresAt": 1735689600000
    }

The file location comes from ``TOKEN_CACHE_PATH`` (see ``NotesRunConfig``).
A missing file is a normal cold start; a corrupt one is logged and ignored.
Write failures are logged, never raised: a login that succeeded stays
usable for this process even if it cannot be cached.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .base_auth import Credential

logger = logging.getLogger(__name__)


class CredentialCache:
    """File-backed credential record."""

    def __init__(self, path: str):
        self.path = Path(path)

    def _read_record(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            logger.info("[CACHE] No cached credential found")
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[CACHE] Corrupt credential cache {self.path}: {exc}")
            return None

    def load(self) -> Optional[Credential]:
        """Return the cached credential, or None (absent / unreadable).

        Expiry is NOT checked here; callers decide with ``is_valid()``.
        """
        data = self._read_record()
        if data is None:
            return None
        try:
            credential = Credential.from_record(data)
        except ValueError as exc:
            logger.warning(f"[CACHE] Ignoring malformed credential cache: {exc}")
            return None
        logger.debug(
            f"[CACHE] Loaded credential: {len(credential.cookies)} cookies, "
            f"expires at {credential.expires_at:.0f}"
        )
        return credential

    def save(self, credential: Credential) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(credential.to_record(), indent=2), encoding="utf-8"
            )
        except OSError as exc:
            logger.warning(f"[CACHE] Failed to cache credential: {exc}")
            return False
        logger.info(f"[CACHE] Credential cached to {self.path}")
        return True

    def clear(self) -> None:
        try:
            self.path.unlink()
            logger.info(f"[CACHE] Removed {self.path}")
        except FileNotFoundError:
            pass
