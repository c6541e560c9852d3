"""
Sanctions watchlist screening.

Matches the applicant's full name against watchlist entries. An entry is
a candidate only when the applicant's name contains its first or last
token; candidates scoring above min_similarity become hits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from database.models import Severity
from logging_setup import sanitize_for_logging
from verification.collaborators import ApplicantSnapshot
from verification.similarity import match_type_for, name_similarity
from verification.sources.base import SourceCheckProvider, SourceCheckResult, SourceHitData, WatchlistStatus

logger = logging.getLogger(__name__)

OFAC_SDN_URL = "https://sanctionslist.ofac.treas.gov/"


@dataclass(frozen=True)
class WatchlistEntry:
    """One listed person"""
    name: str
    list_name: str = "OFAC SDN List"
    list_type: str = "SDN"
    program: str = "NARCOTICS"
    reason: str = "Narcotics trafficking"
    country: str = "Unknown"
    jurisdiction: str = "US"
    date_added: str = "2020-01-15"
    date_of_birth: Optional[str] = None
    record_url: str = OFAC_SDN_URL
    entity_type: str = "Individual"
    extra: dict = field(default_factory=dict)


REFERENCE_WATCHLIST = (
    WatchlistEntry(name="john smith"),
    WatchlistEntry(name="jane doe"),
    WatchlistEntry(name="vladimir putin"),
    WatchlistEntry(name="kim jong"),
)


def sanctions_severity(confidence: float) -> Severity:
    if confidence > 90:
        return Severity.HIGH
    if confidence > 80:
        return Severity.MEDIUM
    return Severity.LOW


class SanctionsProvider(SourceCheckProvider):
    """Screens applicants against a sanctions watchlist."""

    name = "sanctions"
    source_type = "sanctions_list"

    def __init__(
        self,
        watchlist: Sequence[WatchlistEntry] = REFERENCE_WATCHLIST,
        min_similarity: float = 60,
        confidence_threshold: float = 70
    ):
        self.watchlist = tuple(watchlist)
        self.min_similarity = min_similarity
        self.confidence_threshold = confidence_threshold

    @staticmethod
    def _is_candidate(full_name: str, entry: WatchlistEntry) -> bool:
        tokens = entry.name.split()
        return bool(tokens) and (tokens[0] in full_name or tokens[-1] in full_name)

    def _hit(self, entry: WatchlistEntry, confidence: int, snapshot: ApplicantSnapshot, query_terms: dict) -> SourceHitData:
        dob_match = None
        if entry.date_of_birth and snapshot.date_of_birth:
            dob_match = entry.date_of_birth == snapshot.date_of_birth
        return SourceHitData(
            source_type=self.source_type,
            match_confidence=confidence,
            match_type=match_type_for(confidence),
            severity=sanctions_severity(confidence),
            query_terms=query_terms,
            record_data={
                'name': entry.name.upper(),
                'list_name': entry.list_name,
                'date_added': entry.date_added,
                'reason': entry.reason,
                'country': entry.country,
                'date_of_birth_match': dob_match,
            },
            record_url=entry.record_url,
            jurisdiction=entry.jurisdiction,
            record_date=datetime.fromisoformat(entry.date_added).replace(tzinfo=timezone.utc),
            metadata={
                'list_type': entry.list_type,
                'program': entry.program,
                'entity_type': entry.entity_type,
                **entry.extra,
            },
        )

    def check(self, snapshot: ApplicantSnapshot) -> SourceCheckResult:
        full_name = snapshot.full_name
        query_terms = snapshot.query_terms()
        hits = []

        for entry in self.watchlist:
            if not self._is_candidate(full_name, entry):
                continue
            confidence = name_similarity(full_name, entry.name)
            if confidence > self.min_similarity:
                hits.append(self._hit(entry, confidence, snapshot, query_terms))

        if hits:
            logger.info(
                "Sanctions screening for application %s: %d hit(s), best %s",
                sanitize_for_logging(snapshot.application_id), len(hits),
                max(hit.match_confidence for hit in hits),
            )

        status = WatchlistStatus(
            source=self.name,
            query_terms=query_terms,
            total_hits=len(hits),
            confidence_threshold=self.confidence_threshold,
        )
        return SourceCheckResult(hits=hits, status=status)
