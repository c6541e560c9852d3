"""
Politically exposed person screening.

Direct matches compare the applicant's full name with each PEP record.
When nothing matches directly, a common-surname heuristic reports a
low-confidence possible associate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from database.models import MatchType, Severity
from verification.collaborators import ApplicantSnapshot
from verification.similarity import match_type_for, name_similarity
from verification.sources.base import SourceCheckProvider, SourceCheckResult, SourceHitData, WatchlistStatus

logger = logging.getLogger(__name__)

RECORD_DATE = "2024-01-01"
ASSOCIATE_CONFIDENCE = 40


@dataclass(frozen=True)
class PepRecord:
    """A politically exposed person"""
    name: str
    position: str
    country: str
    category: str = "Head of State"


REFERENCE_PEPS = (
    PepRecord(name="emmanuel macron", position="President", country="France"),
    PepRecord(name="angela merkel", position="Former Chancellor", country="Germany"),
    PepRecord(name="joe biden", position="President", country="United States"),
    PepRecord(name="boris johnson", position="Former Prime Minister", country="United Kingdom"),
    PepRecord(name="xi jinping", position="President", country="China"),
)

COMMON_FAMILY_NAMES = ('smith', 'johnson', 'brown', 'davis', 'miller')


class PepProvider(SourceCheckProvider):
    """Screens applicants against a PEP register."""

    name = "pep"
    source_type = "pep_database"

    def __init__(
        self,
        records: Sequence[PepRecord] = REFERENCE_PEPS,
        min_similarity: float = 50,
        family_names: Sequence[str] = COMMON_FAMILY_NAMES,
        confidence_threshold: float = 70
    ):
        self.records = tuple(records)
        self.min_similarity = min_similarity
        self.family_names = tuple(name.lower() for name in family_names)
        self.confidence_threshold = confidence_threshold

    def _direct_hit(self, record: PepRecord, confidence: int, query_terms: dict) -> SourceHitData:
        high = confidence > 85
        return SourceHitData(
            source_type=self.source_type,
            match_confidence=confidence,
            match_type=match_type_for(confidence),
            severity=Severity.HIGH if high else Severity.MEDIUM,
            query_terms=query_terms,
            record_data={
                'name': record.name.title(),
                'position': record.position,
                'country': record.country,
                'category': record.category,
                'risk_level': 'High' if high else 'Medium',
                'last_updated': RECORD_DATE,
            },
            jurisdiction=record.country,
            record_date=datetime.fromisoformat(RECORD_DATE).replace(tzinfo=timezone.utc),
            metadata={
                'pep_category': record.category,
                'political_exposure': 'Direct',
                'source_reliability': 'High',
            },
        )

    def _associate_hit(self, snapshot: ApplicantSnapshot, query_terms: dict) -> SourceHitData:
        return SourceHitData(
            source_type="pep_associates",
            match_confidence=ASSOCIATE_CONFIDENCE,
            match_type=MatchType.FUZZY,
            severity=Severity.LOW,
            query_terms=query_terms,
            record_data={
                'name': f"{snapshot.first_name} {snapshot.last_name}".strip(),
                'relationship': 'Possible family member',
                'associated_pep': 'John Smith (Minister)',
                'risk_level': 'Low',
            },
            metadata={
                'pep_category': 'Associate',
                'political_exposure': 'Indirect',
                'confidence_note': 'Common surname match',
            },
        )

    def check(self, snapshot: ApplicantSnapshot) -> SourceCheckResult:
        full_name = snapshot.full_name
        query_terms = snapshot.query_terms()
        hits = []

        for record in self.records:
            confidence = name_similarity(full_name, record.name)
            if confidence > self.min_similarity:
                hits.append(self._direct_hit(record, confidence, query_terms))

        if not hits and query_terms['last_name'] in self.family_names:
            logger.debug("PEP associate heuristic matched surname %s", query_terms['last_name'])
            hits.append(self._associate_hit(snapshot, query_terms))

        status = WatchlistStatus(
            source=self.name,
            query_terms=query_terms,
            total_hits=len(hits),
            confidence_threshold=self.confidence_threshold,
        )
        return SourceCheckResult(hits=hits, status=status)
