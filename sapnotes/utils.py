"""
Utility Functions
Retry backoff, platform-aware user agents, text cleanup and URL helpers.
"""

import logging
import platform
import re
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)

# Substrings that mark a transient resource-exhaustion failure when
# spawning a browser process (thread / process limits in containers).
RESOURCE_EXHAUSTION_MARKERS = (
    "pthread_create",
    "Resource temporarily unavailable",
)

# URL fragments that mean the portal bounced us to its identity provider.
LOGIN_REDIRECT_MARKERS = (
    "authentication.",
    "saml/login",
    "accounts.sap.com/saml2/idp/sso",
)


@dataclass
class RetryPolicy:
    """
    Exponential backoff schedule.

    With the defaults the delays are 2s, 4s, 8s for retries 1, 2, 3.
    """
    max_retries: int = 3
    base_delay: float = 2.0
    exponential_base: float = 2.0
    max_delay: float = 60.0

    def calculate_delay(self, retry: int) -> float:
        """
        Calculate delay before the given retry.

        Args:
            retry: Retry number (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** (retry - 1))
        return max(0.0, min(delay, self.max_delay))


def is_resource_exhaustion(error: BaseException) -> bool:
    message = str(error)
    return any(marker in message for marker in RESOURCE_EXHAUSTION_MARKERS)


def is_login_redirect(url: str) -> bool:
    """Check whether *url* belongs to the portal's login / IdP flow."""
    return any(marker in (url or "") for marker in LOGIN_REDIRECT_MARKERS)


def detect_platform() -> str:
    """Return the sec-ch-ua-platform value for the current OS."""
    system = platform.system()
    if system == "Darwin":
        return "macOS"
    elif system == "Windows":
        return "Windows"
    else:
        return "Linux"


def browser_user_agent() -> str:
    """Chrome user agent matching the host OS (the portal checks it)."""
    os_token = {
        "Windows": "Windows NT 10.0; Win64; x64",
        "Linux": "X11; Linux x86_64",
    }.get(detect_platform(), "Macintosh; Intel Mac OS X 10_15_7")
    return (
        f"Mozilla/5.0 ({os_token}) AppleWebKit/537.36 "
        f"(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    )


def clean_text(text: str) -> str:
    """Clean and normalize text content."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def preview(secret: str, keep: int = 20) -> str:
    """Loggable preview of a token / cookie string."""
    if not secret:
        return "<empty>"
    if len(secret) <= keep * 2:
        return f"<{len(secret)} chars>"
    return f"{secret[:keep]}...{secret[-keep:]} ({len(secret)} chars)"


def unique(items: Iterable[str]) -> list:
    """De-duplicate preserving first-seen order."""
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
