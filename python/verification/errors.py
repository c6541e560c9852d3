"""
Error taxonomy for the verification engine.

Only OrchestrationError flips a run to ``failed``. ProviderDegraded is
captured by the coordinator and recorded in the run's source results;
it never escapes a Process call.
"""

from typing import Optional


class VerificationError(Exception):
    """Base class for verification engine errors

    Attributes:
        code: Error code for programmatic handling
        field: The field or identifier the error relates to
        suggestion: Optional hint for the caller
    """
    code = "VERIFICATION_ERROR"

    def __init__(self, message: str, field: str = "", suggestion: str = ""):
        self.field = field
        self.suggestion = suggestion
        super().__init__(message)


class ValidationError(VerificationError):
    """Bad or missing input, or an application in the wrong state."""
    code = "VALIDATION_ERROR"


class ConflictError(VerificationError):
    """Duplicate active run, or retry of a run that is still active."""
    code = "CONFLICT"


class NotFoundError(VerificationError):
    """Unknown run or application."""
    code = "NOT_FOUND"


class OrchestrationError(VerificationError):
    """Unexpected failure inside the pipeline itself."""
    code = "ORCHESTRATION_ERROR"


class ProviderDegraded(VerificationError):
    """A single source check failed or timed out."""
    code = "PROVIDER_DEGRADED"

    def __init__(self, source: str, message: str, reason: Optional[str] = None):
        self.source = source
        self.reason = reason or "error"
        super().__init__(message, field=source)
