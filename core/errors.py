"""
Error taxonomy for the generation job pipeline.

Every failure the orchestrator can observe maps onto one of these classes.
The class decides what happens next:

- ValidationError: caller-correctable, never charges
- InsufficientCredits: balance too low, never charges
- ProviderTimeout: recoverable, job stays in generating
- ProviderFailed: terminal, refunded
- SafetyBlocked: terminal, refunded subject to the daily courtesy cap
- PipelineError: catch-all terminal failure, refunded
"""

from typing import Any, Optional


class GenerationError(Exception):
    """Base error for anything raised by the generation pipeline."""

    error_code = "GENERATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str = None,
        provider: str = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.error_code
        self.provider = provider
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        data = {
            "code": self.error_code,
            "message": self.message,
            "type": type(self).__name__,
        }
        if self.provider:
            data["provider"] = self.provider
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(GenerationError):
    """Request is malformed or references something unusable."""

    error_code = "VALIDATION_ERROR"


class InsufficientCredits(GenerationError):
    """Owner balance is below the cost of the request."""

    error_code = "INSUFFICIENT_CREDITS"

    def __init__(self, balance: int, needed: int, suggestion: Optional[dict] = None):
        self.balance = balance
        self.needed = needed
        self.suggestion = suggestion
        details = {"balance": balance, "needed": needed}
        if suggestion:
            details["suggestion"] = suggestion
        super().__init__(
            f"Insufficient credits: balance {balance}, needed {needed}",
            details=details,
        )


class ProviderTimeout(GenerationError):
    """Provider did not finish before the hard deadline. Recoverable."""

    error_code = "PROVIDER_TIMEOUT"

    def __init__(self, provider_job_id: str, message: str = None, provider: str = None):
        self.provider_job_id = provider_job_id
        super().__init__(
            message or f"Provider job {provider_job_id} still running at deadline",
            provider=provider,
            details={"provider_job_id": provider_job_id},
        )


class ProviderFailed(GenerationError):
    """Provider reported failed or canceled."""

    error_code = "PROVIDER_FAILED"

    def __init__(
        self,
        message: str,
        diagnostic: Any = None,
        provider_job_id: str = None,
        provider: str = None,
        error_code: str = None,
    ):
        self.diagnostic = diagnostic
        self.provider_job_id = provider_job_id
        details = {}
        if diagnostic is not None:
            details["diagnostic"] = diagnostic
        if provider_job_id:
            details["provider_job_id"] = provider_job_id
        super().__init__(message, error_code=error_code, provider=provider, details=details)


class SafetyBlocked(ProviderFailed):
    """Provider refused the request on content-safety grounds."""

    error_code = "SAFETY_BLOCKED"


class PipelineError(GenerationError):
    """Any other terminal failure inside the pipeline."""

    error_code = "PIPELINE_ERROR"


class NotFound(GenerationError):
    error_code = "NOT_FOUND"


class PermissionDenied(GenerationError):
    error_code = "PERMISSION_DENIED"


class JobImmutableError(GenerationError):
    """Write attempted on a job that already reached a terminal state."""

    error_code = "JOB_IMMUTABLE"


class DuplicateReferenceError(GenerationError):
    """Ledger entry with the same (reference_type, reference_id) already exists."""

    error_code = "DUPLICATE_REFERENCE"

    def __init__(self, reference_type: str, reference_id: str):
        self.reference_type = reference_type
        self.reference_id = reference_id
        super().__init__(f"Ledger reference already exists: {reference_type}/{reference_id}")


# Substrings providers use when a request is refused for content reasons
SAFETY_MARKERS = (
    "nsfw",
    "safety",
    "sensitive content",
    "flagged",
    "content policy",
    "moderation",
    "inappropriate",
)


def is_safety_block(text: Any) -> bool:
    """Return True when a provider diagnostic reads like a content-safety refusal."""
    if not text:
        return False
    lowered = str(text).lower()
    return any(marker in lowered for marker in SAFETY_MARKERS)


def classify_failure(exc: BaseException, stage: str = None) -> GenerationError:
    """Wrap an arbitrary exception into the taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    details = {"exception": type(exc).__name__}
    if stage:
        details["stage"] = stage
    return PipelineError(str(exc) or type(exc).__name__, details=details)
