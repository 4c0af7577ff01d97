"""
Error taxonomy for the orchestration core.

Stage errors are raised by engines and classified by the pipeline into
retryable or fatal outcomes. Coordination errors are raised by the store
and the queue and are handled by their callers.
"""

from typing import Optional


class MaskctlError(Exception):
    """Base class for every error raised by maskctl."""


# ---------- Stage errors ----------

class StageError(MaskctlError):
    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ValidationError(StageError):
    """Malformed input or parameters. Never retried."""
    retryable = False


class TransientInfraError(StageError):
    """Storage or network blip."""


class EngineError(StageError):
    """Low-confidence segmentation, encoder crash, engine timeout."""


class FatalEngineError(StageError):
    """The engine classified the failure as permanent (e.g. corrupt input)."""
    retryable = False


class ResourceExhausted(StageError):
    """Out of memory or similar; retried with a smaller batch size."""


class DeliveryExhausted(MaskctlError):
    """Queue redelivery ceiling reached."""

    reason = "delivery exhausted"


class Interrupted(MaskctlError):
    """Pre-emption notice observed at a checkpoint. Not counted as a failure."""


# ---------- Coordination errors ----------

class NotFound(MaskctlError):
    pass


class VersionConflict(MaskctlError):
    def __init__(self, job_id: str, expected: int, actual: int):
        super().__init__(f"job {job_id}: expected version {expected}, found {actual}")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class InvalidTransition(MaskctlError):
    pass


class LeaseLost(MaskctlError):
    """The caller no longer owns the lease on a queue entry."""
