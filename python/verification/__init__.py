"""
Verification engine

- coordinator: starts, processes and retries verification runs
- sources: sanctions, PEP and document check providers
- policy: resolves the risk policy a run is pinned to
- scoring: turns hits and source statuses into a score and decision
- notifier/scheduler: decision notifications with delayed retries
"""

from verification.errors import (
    VerificationError,
    ValidationError,
    ConflictError,
    NotFoundError,
    OrchestrationError,
    ProviderDegraded,
)
from verification.policy import PolicyResolver, PolicySnapshot, DecisionThresholds
from verification.scoring import score, ScoreResult
from verification.coordinator import VerificationCoordinator
from verification.worker import RunExecutor

__all__ = [
    'VerificationError',
    'ValidationError',
    'ConflictError',
    'NotFoundError',
    'OrchestrationError',
    'ProviderDegraded',
    'PolicyResolver',
    'PolicySnapshot',
    'DecisionThresholds',
    'score',
    'ScoreResult',
    'VerificationCoordinator',
    'RunExecutor',
]
