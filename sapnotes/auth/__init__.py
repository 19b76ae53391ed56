"""
Authentication Module
=====================
Certificate-based authentication for the SAP support portal.

Architecture:
    - ``Credential``: cookie-set session credential + validity rule
    - ``CredentialCache``: persists the credential between runs
    - ``CertificateAuthenticator``: single-flight certificate login
    - ``TokenSessionManager``: persistent browser minting search tokens

Usage::

    from sapnotes.auth import CertificateAuthenticator

    auth = CertificateAuthenticator(config)
    credential = await auth.ensure_valid_credential()
"""

from .base_auth import Credential, parse_cookie_string, serialize_cookies
from .session_store import CredentialCache
from .sap_auth import CertificateAuthenticator, validate_certificate
from .session_manager import TokenSessionManager

__all__ = [
    "Credential",
    "CredentialCache",
    "CertificateAuthenticator",
    "TokenSessionManager",
    "parse_cookie_string",
    "serialize_cookies",
    "validate_certificate",
]
