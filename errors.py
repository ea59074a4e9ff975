# errors.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ExpressrError(Exception):
    """Base for every error the orchestrator surfaces to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(ExpressrError):
    status_code = 400


class Conflict(ExpressrError):
    status_code = 409

    def __init__(self, message: str, existing_job_id: str):
        super().__init__(message)
        self.existing_job_id = existing_job_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "existing_job_id": self.existing_job_id}


class NotFound(ExpressrError):
    status_code = 404


class Forbidden(ExpressrError):
    status_code = 403


class QuotaExceeded(ExpressrError):
    status_code = 429

    def __init__(self, message: str, regeneration_count: int):
        super().__init__(message)
        self.regeneration_count = regeneration_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "regeneration_count": self.regeneration_count,
            "remaining_attempts": 0,
        }


class ProviderError(ExpressrError):
    """Any failure of an external collaborator (training, inference, storage, payment)."""

    status_code = 502

    def __init__(self, message: str, *, rate_limited: bool = False, retry_after: Optional[int] = None):
        super().__init__(message)
        self.rate_limited = rate_limited
        self.retry_after = retry_after


@dataclass
class PartialFailure:
    """Non-fatal note: a batch produced fewer items than requested."""

    requested: int
    succeeded: int
    failed_styles: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.succeeded == 0:
            return f"Generation failed for all {self.requested} styles: {', '.join(self.failed_styles)}"
        return (
            f"Partial failure: {self.requested - self.succeeded} of {self.requested} styles failed "
            f"({', '.join(self.failed_styles)})"
        )
