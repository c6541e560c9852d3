"""
Source check contract.

A provider answers one question about an applicant and returns zero or
more hits plus a status payload. Status payloads are a tagged union keyed
by ``kind``: watchlist sources report WatchlistStatus, the document source
reports DocumentStatus, and a failed or timed-out call is recorded as
DegradedStatus.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from database.models import MatchType, Severity
from verification.collaborators import ApplicantSnapshot


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SourceHitData:
    """A matched record as returned by a provider"""
    source_type: str
    match_confidence: float
    match_type: MatchType
    severity: Severity
    record_data: Dict[str, Any] = field(default_factory=dict)
    query_terms: Dict[str, Any] = field(default_factory=dict)
    record_url: Optional[str] = None
    jurisdiction: Optional[str] = None
    record_date: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        """Fields for SourceHitRepository.add"""
        return {
            'source_type': self.source_type,
            'query_terms': self.query_terms,
            'match_confidence': self.match_confidence,
            'match_type': self.match_type,
            'severity': self.severity,
            'record_data': self.record_data,
            'record_url': self.record_url,
            'jurisdiction': self.jurisdiction,
            'record_date': self.record_date,
            'hit_metadata': self.metadata,
        }


@dataclass
class WatchlistStatus:
    """Status of a name-screening source"""
    source: str
    query_terms: Dict[str, Any]
    total_hits: int
    confidence_threshold: float
    api_status: str = "success"
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    kind: str = "watchlist"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'source': self.source,
            'checked_at': _iso(self.checked_at),
            'query_terms': self.query_terms,
            'total_hits': self.total_hits,
            'confidence_threshold': self.confidence_threshold,
            'api_status': self.api_status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WatchlistStatus':
        return cls(
            source=data.get('source', ''),
            query_terms=data.get('query_terms') or {},
            total_hits=int(data.get('total_hits', 0)),
            confidence_threshold=float(data.get('confidence_threshold', 0)),
            api_status=data.get('api_status', 'success'),
            checked_at=_parse_time(data.get('checked_at')),
        )


@dataclass
class DocumentStatus:
    """Status of the document source"""
    verified: bool
    confidence_score: float
    overall_status: str
    document_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    missing_documents: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    kind: str = "documents"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'verified': self.verified,
            'confidence_score': self.confidence_score,
            'overall_status': self.overall_status,
            'checked_at': _iso(self.checked_at),
            'document_results': self.document_results,
            'missing_documents': self.missing_documents,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DocumentStatus':
        return cls(
            verified=bool(data.get('verified', False)),
            confidence_score=float(data.get('confidence_score', 0)),
            overall_status=data.get('overall_status', 'unknown'),
            document_results=data.get('document_results') or {},
            missing_documents=list(data.get('missing_documents') or []),
            checked_at=_parse_time(data.get('checked_at')),
        )


@dataclass
class DegradedStatus:
    """Recorded in place of a provider's status when the call failed"""
    source: str
    error: str
    reason: str = "error"  # error | timeout
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    kind: str = "degraded"

    # a degraded document source counts as unverified
    verified = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'source': self.source,
            'error': self.error,
            'reason': self.reason,
            'verified': False,
            'hits': [],
            'checked_at': _iso(self.checked_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DegradedStatus':
        return cls(
            source=data.get('source', ''),
            error=data.get('error', ''),
            reason=data.get('reason', 'error'),
            checked_at=_parse_time(data.get('checked_at')),
        )


SourceStatus = Union[WatchlistStatus, DocumentStatus, DegradedStatus]

_STATUS_KINDS = {
    'watchlist': WatchlistStatus,
    'documents': DocumentStatus,
    'degraded': DegradedStatus,
}


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value)


def parse_status(data: Union[SourceStatus, Dict[str, Any], None]) -> Optional[SourceStatus]:
    """Turn a stored payload back into its typed status.

    Payloads without a kind, or with an ``error`` key, are treated as degraded.
    """
    if data is None or isinstance(data, (WatchlistStatus, DocumentStatus, DegradedStatus)):
        return data
    if data.get('error'):
        return DegradedStatus.from_dict(data)
    status_cls = _STATUS_KINDS.get(data.get('kind', ''))
    if status_cls is None:
        return DegradedStatus(source=data.get('source', ''), error="unrecognized status payload")
    return status_cls.from_dict(data)


@dataclass
class SourceCheckResult:
    """What a provider call produced"""
    hits: List[SourceHitData]
    status: SourceStatus

    @property
    def degraded(self) -> bool:
        return isinstance(self.status, DegradedStatus)


def degraded_result(source: str, error: str, reason: str = "error") -> SourceCheckResult:
    """Result recorded for a provider call that raised or timed out"""
    return SourceCheckResult(hits=[], status=DegradedStatus(source=source, error=error, reason=reason))


class SourceCheckProvider(ABC):
    """A single external capability queried about an applicant.

    Implementations must be safe to call concurrently from several runs.
    They may raise; the coordinator turns any exception into a degraded
    result and applies the call timeout.
    """

    name: str = ""

    @abstractmethod
    def check(self, snapshot: ApplicantSnapshot) -> SourceCheckResult:
        """Query the source about the applicant."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name='{self.name}')>"
