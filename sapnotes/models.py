"""
Data Model
==========
Immutable records produced by the retrieval engine.

``to_dict()`` on each record returns the external (camelCase) shape that
downstream tool layers serialize: ``releaseDate``, ``cvssScore``,
``cvssVector``, ``affectedVersions``, ``supportPackage``, ``totalResults``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class AffectedVersion:
    """One software component version fixed by a note (e.g. ``S4CORE 102``)."""
    component: str
    version: str
    support_package: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "component": self.component,
            "version": self.version,
            "supportPackage": self.support_package,
        }


@dataclass(frozen=True)
class ArticleSummary:
    """A single search hit."""
    id: str
    title: str
    summary: str
    release_date: str
    language: str
    url: str
    component: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "component": self.component,
            "releaseDate": self.release_date,
            "language": self.language,
            "url": self.url,
        }


@dataclass(frozen=True)
class ArticleDetail(ArticleSummary):
    """Full note content, including optional severity (CVSS) data."""
    content: str = ""
    priority: Optional[str] = None
    category: Optional[str] = None
    severity_score: Optional[str] = None
    severity_vector: Optional[str] = None
    affected_versions: Tuple[AffectedVersion, ...] = field(default_factory=tuple)

    @property
    def needs_severity(self) -> bool:
        """True while either the score or the vector is still missing."""
        return not (self.severity_score and self.severity_vector)

    def with_severity(
        self, score: Optional[str] = None, vector: Optional[str] = None
    ) -> "ArticleDetail":
        """Return a copy with missing severity fields filled in.

        Existing values are never overwritten.
        """
        return replace(
            self,
            severity_score=self.severity_score or score,
            severity_vector=self.severity_vector or vector,
        )

    def as_summary(self) -> ArticleSummary:
        return ArticleSummary(
            id=self.id,
            title=self.title,
            summary=self.summary,
            release_date=self.release_date,
            language=self.language,
            url=self.url,
            component=self.component,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "content": self.content,
            "priority": self.priority,
            "category": self.category,
            "cvssScore": self.severity_score,
            "cvssVector": self.severity_vector,
            "affectedVersions": (
                [v.to_dict() for v in self.affected_versions]
                if self.affected_versions else None
            ),
        })
        return data


@dataclass
class SearchResponse:
    results: List[ArticleSummary]
    total_results: int
    query: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "totalResults": self.total_results,
            "query": self.query,
        }
