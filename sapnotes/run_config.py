"""
Unified Run Configuration
=========================
Single source of truth for ALL defaults: portal endpoints, timeouts,
credential lifetime and browser settings.

Every component (authenticator, token session manager, retrieval engine,
CLI) reads from this object.  ``NotesRunConfig.from_env()`` builds it from
environment variables; tests construct it directly with overrides.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional
from urllib.parse import quote

from .errors import ConfigurationError
from .utils import browser_user_agent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "cache_path": "token-cache.json",
    "max_credential_age_hours": 12.0,
    "headful": False,
    "browser_type": "chromium",
    "log_level": "info",
    # Portal endpoints
    "portal_url": "https://me.sap.com",
    "landing_url": "https://me.sap.com/home",
    "idp_origin": "https://accounts.sap.com",
    "raw_notes_url": "https://me.sap.com/backend/raw/sapnotes",
    "launchpad_url": "https://launchpad.support.sap.com",
    "coveo_org": "sapamericaproductiontyfzmfz0",
    # Timeouts (ms unless noted)
    "navigation_timeout_ms": 30_000,     # primary navigations
    "secondary_timeout_ms": 10_000,      # networkidle / secondary waits
    "login_redirect_timeout_ms": 30_000,
    "search_page_timeout_ms": 45_000,
    "http_timeout_s": 30.0,
    # Settle delays (seconds); pages keep setting cookies / firing XHRs
    "login_settle_s": 3.0,
    "token_settle_s": 2.0,
    "token_search_settle_s": 5.0,
    "page_settle_s": 2.0,
    "severity_tab_settle_s": 5.0,
    # Resources
    "browser_idle_timeout_s": 300.0,
    "launch_retries": 3,
    "launch_backoff_base_s": 2.0,
    "max_results": 10,
    "enable_severity_tab": True,
}

# Chromium flags for server / container environments
_LAUNCH_ARGS: List[str] = [
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--no-first-run",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

_REQUIRED_ENV = ("PFX_PATH", "PFX_PASSPHRASE")
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def is_container_environment(environ: Mapping[str, str]) -> bool:
    """Heuristic: no display, CI, or an explicit Docker marker."""
    return (
        _env_flag(environ.get("DOCKER_ENV"))
        or environ.get("NODE_ENV") == "production"
        or _env_flag(environ.get("CI"))
        or not environ.get("DISPLAY")
    )


def resolve_certificate_path(raw: str, project_root: Path = _PROJECT_ROOT) -> str:
    """Expand ``~`` and resolve relative paths against the project root."""
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = project_root / path
    return str(path)


@dataclass
class NotesRunConfig:
    """
    Unified configuration consumed by every subsystem.

    Populate via:
      - ``NotesRunConfig(pfx_path=..., pfx_passphrase=...)`` → defaults
      - ``NotesRunConfig.from_env()``                      → environment
    """

    # ---- Certificate (required) ----
    pfx_path: str = ""
    pfx_passphrase: str = ""

    # ---- Credential cache ----
    cache_path: str = _DEFAULTS["cache_path"]
    max_credential_age_hours: float = _DEFAULTS["max_credential_age_hours"]

    # ---- Browser ----
    headful: bool = _DEFAULTS["headful"]
    browser_type: str = _DEFAULTS["browser_type"]
    user_agent: str = field(default_factory=browser_user_agent)
    launch_args: List[str] = field(default_factory=lambda: list(_LAUNCH_ARGS))
    launch_retries: int = _DEFAULTS["launch_retries"]
    launch_backoff_base_s: float = _DEFAULTS["launch_backoff_base_s"]
    browser_idle_timeout_s: float = _DEFAULTS["browser_idle_timeout_s"]

    # ---- Portal endpoints ----
    portal_url: str = _DEFAULTS["portal_url"]
    landing_url: str = _DEFAULTS["landing_url"]
    idp_origin: str = _DEFAULTS["idp_origin"]
    raw_notes_url: str = _DEFAULTS["raw_notes_url"]
    launchpad_url: str = _DEFAULTS["launchpad_url"]
    coveo_org: str = _DEFAULTS["coveo_org"]

    # ---- Timeouts ----
    navigation_timeout_ms: int = _DEFAULTS["navigation_timeout_ms"]
    secondary_timeout_ms: int = _DEFAULTS["secondary_timeout_ms"]
    login_redirect_timeout_ms: int = _DEFAULTS["login_redirect_timeout_ms"]
    search_page_timeout_ms: int = _DEFAULTS["search_page_timeout_ms"]
    http_timeout_s: float = _DEFAULTS["http_timeout_s"]

    # ---- Settle delays ----
    login_settle_s: float = _DEFAULTS["login_settle_s"]
    token_settle_s: float = _DEFAULTS["token_settle_s"]
    token_search_settle_s: float = _DEFAULTS["token_search_settle_s"]
    page_settle_s: float = _DEFAULTS["page_settle_s"]
    severity_tab_settle_s: float = _DEFAULTS["severity_tab_settle_s"]

    # ---- Retrieval ----
    max_results: int = _DEFAULTS["max_results"]
    enable_severity_tab: bool = _DEFAULTS["enable_severity_tab"]

    log_level: str = _DEFAULTS["log_level"]

    # -----------------------------------------------------------------------
    # Derived endpoints
    # -----------------------------------------------------------------------
    @property
    def headless(self) -> bool:
        return not self.headful

    @property
    def coveo_search_url(self) -> str:
        return f"https://{self.coveo_org}.org.coveo.com/rest/search/v2"

    def note_detail_url(self, note_id: str) -> str:
        return f"{self.raw_notes_url}/Detail?q={note_id}&t=E&isVTEnabled=false"

    def note_public_url(self, note_id: str) -> str:
        return f"{self.launchpad_url}/#/notes/{note_id}"

    def knowledge_search_url(self, query: str) -> str:
        """Portal knowledge-search page, filtered to SAP Notes."""
        params = json.dumps(
            {"q": query, "tab": "All", "f": {"documenttype": ["SAP Note"]}},
            separators=(",", ":"),
        )
        return f"{self.portal_url}/knowledge/search/{quote(params, safe='')}"

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        project_root: Path = _PROJECT_ROOT,
    ) -> "NotesRunConfig":
        """Build config from environment variables.

        Raises:
            ConfigurationError: ``PFX_PATH`` or ``PFX_PASSPHRASE`` missing,
                or a numeric setting is malformed.
        """
        env = os.environ if environ is None else environ

        missing = [name for name in _REQUIRED_ENV if not env.get(name)]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        container = is_container_environment(env)
        headful = not container and _env_flag(env.get("HEADFUL"))

        try:
            max_age = float(env.get("MAX_JWT_AGE_H", _DEFAULTS["max_credential_age_hours"]))
            idle = float(env.get("BROWSER_IDLE_TIMEOUT_S", _DEFAULTS["browser_idle_timeout_s"]))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc

        cfg = cls(
            pfx_path=resolve_certificate_path(env["PFX_PATH"], project_root),
            pfx_passphrase=env["PFX_PASSPHRASE"],
            cache_path=env.get("TOKEN_CACHE_PATH") or _DEFAULTS["cache_path"],
            max_credential_age_hours=max_age,
            headful=headful,
            browser_type=env.get("PLAYWRIGHT_BROWSER_TYPE") or _DEFAULTS["browser_type"],
            coveo_org=env.get("COVEO_ORG") or _DEFAULTS["coveo_org"],
            browser_idle_timeout_s=idle,
            log_level=env.get("LOG_LEVEL") or _DEFAULTS["log_level"],
        )
        logger.debug(f"[CONFIG] Container detected: {container}, headful: {headful}")
        return cfg

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger (no secrets)."""
        logger.info("=" * 60)
        logger.info("SAP NOTES RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Certificate:      {self.pfx_path}")
        logger.info(f"  Token Cache:      {self.cache_path}")
        logger.info(f"  Credential Age:   {self.max_credential_age_hours}h")
        logger.info(f"  Browser:          {self.browser_type} (headless: {self.headless})")
        logger.info(f"  Idle Timeout:     {self.browser_idle_timeout_s}s")
        logger.info(f"  Coveo Org:        {self.coveo_org}")
        logger.info("=" * 60)
