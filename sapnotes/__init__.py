"""
SAP Notes Retrieval Package
Certificate-authenticated search and retrieval of SAP Notes.

CLI Usage:
    python -m sapnotes auth
    python -m sapnotes search <query> [--max-results N]
    python -m sapnotes get <note_id>
"""

from .run_config import NotesRunConfig
from .models import AffectedVersion, ArticleDetail, ArticleSummary, SearchResponse
from .errors import (
    SapNotesError,
    ConfigurationError,
    AuthenticationError,
    CertificateError,
    BrowserUnavailableError,
    AuthTimeoutError,
    SessionExpired,
    TokenUnavailableError,
    HttpStatusError,
    SearchExhaustedError,
)
from .engine import FallbackRetrievalEngine
from .client import SapNotesClient

__all__ = [
    'NotesRunConfig',
    'SapNotesClient',
    'FallbackRetrievalEngine',
    # Models
    'AffectedVersion',
    'ArticleDetail',
    'ArticleSummary',
    'SearchResponse',
    # Errors
    'SapNotesError',
    'ConfigurationError',
    'AuthenticationError',
    'CertificateError',
    'BrowserUnavailableError',
    'AuthTimeoutError',
    'SessionExpired',
    'TokenUnavailableError',
    'HttpStatusError',
    'SearchExhaustedError',
]

__version__ = '1.0.0'
