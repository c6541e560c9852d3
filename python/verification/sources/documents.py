"""
Document integrity checks.

Each uploaded document that passed the upload pipeline's basic checks is
validated by a type-specific check. Passports get MRZ, expiry and security
feature validation; selfies get liveness signals. When both a passport and
a selfie are present a face-match sub-check combines their confidences.

All signals come from DocumentRef.data as extracted upstream, so the checks
are deterministic for a given snapshot.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Optional, Sequence

from database.models import normalize_document
from logging_setup import sanitize_for_logging
from verification.collaborators import ApplicantSnapshot, DocumentRef
from verification.sources.base import DocumentStatus, SourceCheckProvider, SourceCheckResult
from verification.sources.mrz import MrzFormatError, parse_td3

logger = logging.getLogger(__name__)

PASSPORT_CONFIDENCE = 92
PASSPORT_FAILED_CONFIDENCE = 45
SELFIE_CONFIDENCE = 88
SELFIE_FAILED_CONFIDENCE = 35
ITINERARY_CONFIDENCE = 85
GENERIC_CONFIDENCE = 80

SECURITY_FEATURES = ('hologram_present', 'rfid_chip_present', 'biodata_page_genuine')
LIVENESS_SIGNALS = ('face_detected', 'real_person', 'not_screenshot', 'not_video_replay')


@dataclass
class DocumentCheck:
    """Outcome of one document's check"""
    document_type: str
    verified: bool
    confidence_score: float
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_type': self.document_type,
            'verified': self.verified,
            'confidence_score': self.confidence_score,
            **self.details,
        }


def _flag(data: Dict[str, Any], key: str, default: bool = True) -> bool:
    return bool(data.get(key, default))


class DocumentProvider(SourceCheckProvider):
    """Validates the applicant's uploaded documents."""

    name = "documents"

    def __init__(
        self,
        required_types: Sequence[str] = ('passport',),
        face_match_threshold: float = 0.7,
        today: Optional[Callable[[], date]] = None
    ):
        self.required_types = tuple(required_types)
        self.face_match_threshold = face_match_threshold
        self._today = today or date.today
        self._checks = {
            'passport': self._check_passport,
            'selfie': self._check_selfie,
            'itinerary': self._check_itinerary,
        }

    # ============================================
    # PER-TYPE CHECKS
    # ============================================

    def _check_passport(self, doc: DocumentRef, snapshot: ApplicantSnapshot) -> DocumentCheck:
        data = doc.data
        checks: Dict[str, Optional[bool]] = {}
        extracted: Dict[str, Any] = {}
        expiry = None

        mrz_lines = data.get('mrz')
        if mrz_lines:
            try:
                mrz = parse_td3(*mrz_lines[:2]) if len(mrz_lines) >= 2 else None
            except MrzFormatError as e:
                logger.info("Passport MRZ rejected: %s", sanitize_for_logging(str(e)))
                mrz = None
            checks['mrz_format_valid'] = mrz is not None
            if mrz is not None:
                checks['mrz_checksums_valid'] = mrz.checksums_valid
                expiry = mrz.expiry()
                extracted = {
                    'document_number': mrz.document_number,
                    'nationality': mrz.nationality,
                    'surname': mrz.surname,
                    'given_names': mrz.given_names,
                    'expiry_date': expiry.isoformat() if expiry else None,
                }
                if snapshot.passport_number:
                    checks['document_number_matches'] = (
                        normalize_document(snapshot.passport_number) == mrz.document_number
                    )
        elif data.get('expiry_date'):
            try:
                expiry = date.fromisoformat(str(data['expiry_date']))
            except ValueError:
                checks['expiry_date_readable'] = False

        if expiry is not None:
            checks['not_expired'] = expiry >= self._today()

        features = data.get('security_features') or {}
        security = {name: _flag(features, name) for name in SECURITY_FEATURES}
        checks['security_features_valid'] = all(security.values())
        checks['photo_present'] = _flag(data, 'photo_present')

        verified = all(checks.values())
        return DocumentCheck(
            document_type='passport',
            verified=verified,
            confidence_score=PASSPORT_CONFIDENCE if verified else PASSPORT_FAILED_CONFIDENCE,
            details={
                'validation_checks': checks,
                'security_features': security,
                'extracted_data': extracted,
            },
        )

    def _check_selfie(self, doc: DocumentRef, snapshot: ApplicantSnapshot) -> DocumentCheck:
        liveness = doc.data.get('liveness') or {}
        signals = {name: _flag(liveness, name) for name in LIVENESS_SIGNALS}
        verified = all(signals.values())
        return DocumentCheck(
            document_type='selfie',
            verified=verified,
            confidence_score=SELFIE_CONFIDENCE if verified else SELFIE_FAILED_CONFIDENCE,
            details={
                'liveness_checks': signals,
                'face_encoding_generated': _flag(doc.data, 'face_encoding_generated'),
            },
        )

    def _check_itinerary(self, doc: DocumentRef, snapshot: ApplicantSnapshot) -> DocumentCheck:
        return DocumentCheck(
            document_type='itinerary',
            verified=True,
            confidence_score=ITINERARY_CONFIDENCE,
            details={
                'travel_dates_found': _flag(doc.data, 'travel_dates_found'),
                'destination_matches': _flag(doc.data, 'destination_matches'),
            },
        )

    def _check_generic(self, doc: DocumentRef, snapshot: ApplicantSnapshot) -> DocumentCheck:
        return DocumentCheck(
            document_type=doc.type,
            verified=True,
            confidence_score=GENERIC_CONFIDENCE,
            details={'basic_checks': {'readable': True, 'not_corrupted': True}},
        )

    def _face_match(self, passport: DocumentCheck, passport_doc: DocumentRef,
                    selfie: DocumentCheck, selfie_doc: DocumentRef) -> DocumentCheck:
        faces_available = (
            _flag(passport_doc.data, 'photo_present') and _flag(selfie_doc.data, 'face_encoding_generated')
        )
        if faces_available:
            match_score = min(passport.confidence_score, selfie.confidence_score) / 100
        else:
            match_score = 0.0
        verified = match_score >= self.face_match_threshold
        return DocumentCheck(
            document_type='face_match',
            verified=verified,
            confidence_score=round(match_score * 100),
            details={
                'match_score': match_score,
                'threshold': self.face_match_threshold,
                'decision': 'match' if verified else 'no_match',
            },
        )

    # ============================================
    # PROVIDER
    # ============================================

    def check(self, snapshot: ApplicantSnapshot) -> SourceCheckResult:
        # only documents that passed upload-time checks are examined
        documents = {doc.type: doc for doc in snapshot.documents if doc.is_verified}
        results: Dict[str, DocumentCheck] = {}

        verified = True
        overall_status = 'verified'
        confidence = 100.0

        for doc_type, doc in documents.items():
            check = self._checks.get(doc_type, self._check_generic)(doc, snapshot)
            results[doc_type] = check
            if not check.verified:
                verified = False
                overall_status = 'failed'
            confidence = min(confidence, check.confidence_score)

        missing = [doc_type for doc_type in self.required_types if doc_type not in results]
        if missing:
            verified = False
            overall_status = 'missing_documents'

        if 'passport' in results and 'selfie' in results:
            face = self._face_match(
                results['passport'], documents['passport'], results['selfie'], documents['selfie']
            )
            results['face_match'] = face
            if not face.verified:
                verified = False
                overall_status = 'face_match_failed'

        status = DocumentStatus(
            verified=verified,
            confidence_score=confidence,
            overall_status=overall_status,
            document_results={name: check.to_dict() for name, check in results.items()},
            missing_documents=missing,
        )
        return SourceCheckResult(hits=[], status=status)
