"""
Source check providers.

Every provider implements SourceCheckProvider.check(snapshot). The
coordinator treats them uniformly; adding a source means registering
another provider.
"""

from verification.sources.base import (
    SourceCheckProvider,
    SourceCheckResult,
    SourceHitData,
    WatchlistStatus,
    DocumentStatus,
    DegradedStatus,
    degraded_result,
    parse_status,
)
from verification.sources.sanctions import SanctionsProvider, WatchlistEntry
from verification.sources.pep import PepProvider, PepRecord
from verification.sources.documents import DocumentProvider


def default_providers(required_document_types=('passport',)):
    """The reference sanctions, PEP and document providers"""
    return [
        SanctionsProvider(),
        PepProvider(),
        DocumentProvider(required_types=required_document_types),
    ]


__all__ = [
    'SourceCheckProvider',
    'SourceCheckResult',
    'SourceHitData',
    'WatchlistStatus',
    'DocumentStatus',
    'DegradedStatus',
    'degraded_result',
    'parse_status',
    'SanctionsProvider',
    'WatchlistEntry',
    'PepProvider',
    'PepRecord',
    'DocumentProvider',
    'default_providers',
]
