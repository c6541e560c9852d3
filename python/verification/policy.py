"""
Policy resolution.

A stored Policy row is turned into an immutable PolicySnapshot that the
scorer consumes. When no stored policy is in effect the resolver returns
the configured default policy and logs a warning.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

from config_manager import PolicyConfig, ScoringConfig, parse_thresholds, threshold_problems
from database.connection import DatabaseSessionProvider
from database.models import Decision, Policy
from database.repositories import PolicyRepository
from verification.errors import OrchestrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionThresholds:
    """Score bands: clear below clear_max, review from review_min, not_clear from not_clear_min

    Raises:
        ValueError: If the bands leave a gap or are out of order
    """
    clear_max: float = 30
    review_min: float = 30
    review_max: float = 59
    not_clear_min: float = 60

    def __post_init__(self):
        problems = threshold_problems(self.clear_max, self.review_min, self.review_max, self.not_clear_min)
        if problems:
            raise ValueError("; ".join(problems))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DecisionThresholds':
        clear_max, review_min, review_max, not_clear_min = parse_thresholds(data)
        return cls(
            clear_max=clear_max,
            review_min=review_min,
            review_max=review_max,
            not_clear_min=not_clear_min,
        )

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            'clear': {'max': self.clear_max},
            'review': {'min': self.review_min, 'max': self.review_max},
            'not_clear': {'min': self.not_clear_min},
        }

    def decide(self, score: float) -> Decision:
        if score >= self.not_clear_min:
            return Decision.NOT_CLEAR
        if score >= self.review_min:
            return Decision.REVIEW
        return Decision.CLEAR


@dataclass(frozen=True)
class CategoryRule:
    """Two-tier contribution of one scoring category.

    For watchlist categories a hit above cutoff scores the high tier.
    For documents, confidence below cutoff scores the low tier and a
    failed verification scores the high tier.
    """
    enabled: bool
    high_points: float
    low_points: float
    cutoff: float


@dataclass(frozen=True)
class PolicySnapshot:
    """Everything the scorer needs from a policy.

    policy_id identifies the stored row a run is pinned to; the configured
    default policy has none.
    """
    name: str
    version: str
    thresholds: DecisionThresholds
    sanctions: CategoryRule
    pep: CategoryRule
    documents: CategoryRule
    source_weights: Dict[str, float] = field(default_factory=dict)
    destination_country: Optional[str] = None
    is_default: bool = False
    policy_id: Optional[UUID] = None

    @classmethod
    def build(
        cls,
        name: str,
        version: str,
        thresholds: Optional[Dict[str, Any]],
        rules: Optional[Dict[str, Any]],
        scoring: ScoringConfig,
        source_weights: Optional[Dict[str, float]] = None,
        destination_country: Optional[str] = None,
        is_default: bool = False,
        policy_id: Optional[UUID] = None,
    ) -> 'PolicySnapshot':
        """
        Raises:
            OrchestrationError: If the policy's thresholds are unusable
        """
        rules = rules or {}
        sanctions = rules.get('sanctions') or {}
        pep = rules.get('pep') or {}
        documents = rules.get('documents') or {}
        try:
            decision_thresholds = DecisionThresholds.from_dict(thresholds)
        except (ValueError, TypeError, AttributeError) as e:
            raise OrchestrationError(
                f"Policy '{name}' {version} has invalid thresholds: {e}", field="thresholds"
            )
        return cls(
            name=name,
            version=version,
            thresholds=decision_thresholds,
            sanctions=CategoryRule(
                enabled=bool(sanctions.get('enabled', True)),
                high_points=float(sanctions.get('weight', scoring.sanctions_points)),
                low_points=float(sanctions.get('potential_weight', scoring.potential_sanctions_points)),
                cutoff=float(sanctions.get('match_threshold', scoring.high_confidence_threshold)),
            ),
            pep=CategoryRule(
                enabled=bool(pep.get('enabled', True)),
                high_points=float(pep.get('weight', scoring.pep_points)),
                low_points=float(pep.get('potential_weight', scoring.potential_pep_points)),
                cutoff=float(pep.get('match_threshold', scoring.high_confidence_threshold)),
            ),
            documents=CategoryRule(
                enabled=bool(documents.get('enabled', True)),
                high_points=float(documents.get('weight', scoring.document_failed_points)),
                low_points=float(documents.get('low_confidence_weight', scoring.low_document_confidence_points)),
                cutoff=float(documents.get('min_confidence', scoring.min_document_confidence)),
            ),
            source_weights=dict(source_weights or {}),
            destination_country=destination_country,
            is_default=is_default,
            policy_id=policy_id,
        )

    @classmethod
    def from_model(cls, policy: Policy, scoring: ScoringConfig) -> 'PolicySnapshot':
        return cls.build(
            name=policy.name,
            version=policy.version,
            thresholds=policy.thresholds,
            rules=policy.rules,
            scoring=scoring,
            source_weights=policy.source_weights,
            destination_country=policy.destination_country,
            policy_id=policy.id,
        )

    @classmethod
    def default(cls, policy_config: PolicyConfig, scoring: ScoringConfig) -> 'PolicySnapshot':
        return cls.build(
            name=policy_config.name,
            version=policy_config.version,
            thresholds=policy_config.thresholds,
            rules=None,
            scoring=scoring,
            is_default=True,
        )


class PolicySource(Protocol):
    def find_active(self, destination_country: Optional[str], at: datetime) -> Optional[PolicySnapshot]:
        ...

    def find_by_id(self, policy_id: UUID) -> Optional[PolicySnapshot]:
        ...


class DatabasePolicySource:
    """Reads policies through PolicyRepository."""

    def __init__(self, db_provider: DatabaseSessionProvider, scoring: ScoringConfig):
        self.db_provider = db_provider
        self.scoring = scoring

    def find_active(self, destination_country: Optional[str], at: datetime) -> Optional[PolicySnapshot]:
        with self.db_provider.session_scope() as session:
            policy = PolicyRepository(session).find_active(destination_country, at)
            return PolicySnapshot.from_model(policy, self.scoring) if policy else None

    def find_by_id(self, policy_id: UUID) -> Optional[PolicySnapshot]:
        with self.db_provider.session_scope() as session:
            policy = PolicyRepository(session).get_by_id(policy_id)
            return PolicySnapshot.from_model(policy, self.scoring) if policy else None


class PolicyResolver:
    """Selects the policy in effect, falling back to the default policy."""

    def __init__(self, source: PolicySource, default_policy: PolicySnapshot):
        self.source = source
        self.default_policy = default_policy

    def resolve_active_policy(
        self,
        destination_country: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> PolicySnapshot:
        """Policy in effect at `at` (now by default) for the destination."""
        at = at or datetime.now(timezone.utc)
        policy = self.source.find_active(destination_country, at)
        if policy is None:
            logger.warning(
                "No active policy for destination=%s at %s, using default policy %s",
                destination_country or "global", at.isoformat(), self.default_policy.version,
            )
            return self.default_policy
        return policy

    def resolve_pinned(self, policy_id: Optional[UUID], version: str) -> PolicySnapshot:
        """
        Policy a run was pinned to at creation.

        The stored row is looked up by id whether or not it is still active,
        so later edits to which policy is in effect never reach a pinned run.
        A run without a policy id was pinned to the configured default.

        Raises:
            OrchestrationError: If the pinned policy no longer exists
        """
        if policy_id is None:
            if version == self.default_policy.version:
                return self.default_policy
            raise OrchestrationError(
                f"Pinned default policy version {version} is no longer configured", field="policy_version"
            )
        policy = self.source.find_by_id(policy_id)
        if policy is None:
            raise OrchestrationError(f"Pinned policy not found: {policy_id}", field="policy_id")
        if policy.version != version:
            raise OrchestrationError(
                f"Pinned policy {policy_id} is version {policy.version}, run expects {version}",
                field="policy_version",
            )
        return policy
