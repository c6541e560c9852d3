"""
Pydantic request/response schemas for the Verification API

Runs and hits are returned straight from the ORM rows via from_attributes.
"""

import re
from datetime import datetime
from typing import List, Optional, Dict, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StartVerificationRequest(BaseModel):
    """Request schema for starting a verification run."""
    application_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Application to verify (payment must be completed)"
    )
    actor_id: Optional[str] = Field(
        default=None,
        max_length=64,
        description="User or service starting the run, for the audit trail"
    )

    @field_validator('application_id')
    @classmethod
    def validate_application_id(cls, v: str) -> str:
        """Allow only identifier characters."""
        v = v.strip()
        if not re.match(r'^[A-Za-z0-9_.:-]+$', v):
            raise ValueError("application_id may contain only letters, digits, '_', '.', ':' and '-'")
        return v


class RetryVerificationRequest(BaseModel):
    """Optional body for a retry."""
    actor_id: Optional[str] = Field(default=None, max_length=64)


class VerificationRunResponse(BaseModel):
    """A verification run."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    application_id: str
    status: str = Field(..., description="queued, in_progress, completed, failed or cancelled")
    decision: Optional[str] = Field(
        default=None,
        description="clear, review or not_clear; only set on completed runs"
    )
    risk_score: Optional[float] = Field(default=None, ge=0, description="Total risk points")
    reason_codes: List[str] = Field(default_factory=list)
    policy_version: str
    policy_id: Optional[UUID] = Field(default=None, description="Stored policy the run is pinned to; empty for the default policy")
    source_results: Dict[str, Any] = Field(default_factory=dict)
    scoring_breakdown: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('status', 'decision', mode='before')
    @classmethod
    def enum_value(cls, v):
        return getattr(v, 'value', v)


class SourceHitResponse(BaseModel):
    """A hit returned by a source."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    verification_run_id: UUID
    source_name: str
    source_type: str
    query_terms: Dict[str, Any] = Field(default_factory=dict)
    match_confidence: float = Field(..., ge=0, le=100)
    match_type: str
    severity: str
    record_data: Dict[str, Any] = Field(default_factory=dict)
    record_url: Optional[str] = None
    jurisdiction: Optional[str] = None
    record_date: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias='hit_metadata')
    created_at: Optional[datetime] = None

    @field_validator('match_type', 'severity', mode='before')
    @classmethod
    def enum_value(cls, v):
        return getattr(v, 'value', v)


class VerificationRunList(BaseModel):
    """Runs of an application, newest first."""
    application_id: str
    runs: List[VerificationRunResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class SourceHitList(BaseModel):
    """Hits of a run, highest confidence first."""
    verification_run_id: UUID
    hits: List[SourceHitResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: bool = Field(..., description="Database reachable")
    database_latency_ms: Optional[float] = Field(default=None)
    runs_by_status: Dict[str, int] = Field(default_factory=dict)
    pending_runs: int = Field(default=0, ge=0, description="Runs waiting in the worker pool")
    default_policy_version: Optional[str] = None
    algorithm_version: str = Field(..., description="Algorithm version")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
