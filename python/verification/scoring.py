"""
Risk scoring.

score() is a pure function of the hit set, the per-source status payloads
and the policy. Each category contributes a flat tier value; the total is
reported as the plain sum and mapped to a decision by the policy
thresholds. The stored risk score is the same sum capped at 100.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from database.models import Decision
from verification.policy import CategoryRule, PolicySnapshot
from verification.sources.base import DegradedStatus, DocumentStatus, parse_status

SANCTIONS_SOURCE = "sanctions"
PEP_SOURCE = "pep"
DOCUMENTS_SOURCE = "documents"

MAX_RISK_SCORE = 100

# Reason codes
SANCTIONS_MATCH = "SANCTIONS_MATCH"
POTENTIAL_SANCTIONS_MATCH = "POTENTIAL_SANCTIONS_MATCH"
PEP_MATCH = "PEP_MATCH"
POTENTIAL_PEP_MATCH = "POTENTIAL_PEP_MATCH"
DOCUMENT_VERIFICATION_FAILED = "DOCUMENT_VERIFICATION_FAILED"
LOW_DOCUMENT_CONFIDENCE = "LOW_DOCUMENT_CONFIDENCE"


@dataclass(frozen=True)
class ScoringHit:
    """Minimal hit view; persisted SourceHit rows satisfy the same shape"""
    source_name: str
    match_confidence: float


@dataclass
class ScoreResult:
    """Outcome of scoring a run"""
    score: float
    decision: Decision
    reason_codes: List[str] = field(default_factory=list)
    breakdown: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'decision': self.decision.value,
            'reason_codes': list(self.reason_codes),
            'breakdown': dict(self.breakdown),
        }


def _confidences(hits: Iterable[Any], source_name: str) -> List[float]:
    return [float(hit.match_confidence) for hit in hits if hit.source_name == source_name]


def _score_watchlist(confidences: List[float], rule: CategoryRule, high_code: str, low_code: str):
    if not rule.enabled or not confidences:
        return 0.0, None
    if any(confidence > rule.cutoff for confidence in confidences):
        return rule.high_points, high_code
    return rule.low_points, low_code


def _score_documents(status: Any, rule: CategoryRule):
    if not rule.enabled:
        return 0.0, None
    if status is None or isinstance(status, DegradedStatus):
        return rule.high_points, DOCUMENT_VERIFICATION_FAILED
    if isinstance(status, DocumentStatus):
        if not status.verified:
            return rule.high_points, DOCUMENT_VERIFICATION_FAILED
        if status.confidence_score < rule.cutoff:
            return rule.low_points, LOW_DOCUMENT_CONFIDENCE
        return 0.0, None
    # a document source reporting a status of another kind cannot vouch for anything
    return rule.high_points, DOCUMENT_VERIFICATION_FAILED


def score(
    hits: Iterable[Any],
    source_results: Optional[Mapping[str, Any]],
    policy: PolicySnapshot
) -> ScoreResult:
    """Score a run.

    Args:
        hits: Objects with source_name and match_confidence (order is irrelevant)
        source_results: source name -> status (typed status or stored payload)
        policy: Policy the run is pinned to

    Returns:
        ScoreResult with total, decision, reason codes and per-category breakdown
    """
    hits = list(hits)
    source_results = source_results or {}

    sanctions_points, sanctions_code = _score_watchlist(
        _confidences(hits, SANCTIONS_SOURCE), policy.sanctions, SANCTIONS_MATCH, POTENTIAL_SANCTIONS_MATCH
    )
    pep_points, pep_code = _score_watchlist(
        _confidences(hits, PEP_SOURCE), policy.pep, PEP_MATCH, POTENTIAL_PEP_MATCH
    )
    document_points, document_code = _score_documents(
        parse_status(source_results.get(DOCUMENTS_SOURCE)), policy.documents
    )

    total = round(sanctions_points + pep_points + document_points, 2)
    # stored score stays within 0-100; the breakdown keeps the plain sum
    risk_score = min(total, MAX_RISK_SCORE)
    reason_codes = [code for code in (sanctions_code, pep_code, document_code) if code]

    return ScoreResult(
        score=risk_score,
        decision=policy.thresholds.decide(total),
        reason_codes=reason_codes,
        breakdown={
            'sanctions': sanctions_points,
            'pep': pep_points,
            'documents': document_points,
            'total': total,
        },
    )
