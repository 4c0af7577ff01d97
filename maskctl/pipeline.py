"""
Pipeline state machine.

A job moves through validate -> extract -> track -> process -> encode. One
call to PipelineStateMachine.step() runs exactly one attempt of the job's
current stage and persists the result with a version-checked write.

Stage functions raise; execute_stage() turns what they raise into one of
three result variants, so retry policy lives in one place:

    Success(output_ref)          advance to the next stage
    RetryableFailure(reason)     same stage again after backoff_delay(attempt)
    FatalFailure(reason)         job fails, no further stages

Every stage writes its artifact to a fixed key (jobs/<id>/<stage>), so a
stage re-executed after a crash or a lost race overwrites instead of
appending.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from .config import Settings
from .engines import Engines
from .errors import (
    Interrupted, NotFound, ResourceExhausted, StageError, ValidationError,
    VersionConflict,
)
from .models import (
    Job, MODES, QUEUED, RUNNING, COMPLETE, FAILED, STAGE_PROGRESS,
    VALIDATE, EXTRACT, TRACK, PROCESS, ENCODE, next_stage,
)
from .utils import SYSTEM_CLOCK, backoff_delay, now_iso

logger = logging.getLogger(__name__)

# Notification event kinds
EVENT_STAGE_STARTED = "stage_started"
EVENT_COMPLETE = "complete"
EVENT_FAILED = "failed"
EVENT_REQUEUED = "requeued"


@dataclass
class Success:
    output_ref: str


@dataclass
class RetryableFailure:
    reason: str
    batch_size: Optional[int] = None


@dataclass
class FatalFailure:
    reason: str


StageResult = Union[Success, RetryableFailure, FatalFailure]

# Step outcomes
ADVANCED = "advanced"
RETRY = "retry"
COMPLETED = "complete"
FAILED_OUT = "failed"
DISCARDED = "discarded"
INTERRUPTED = "interrupted"


@dataclass
class StepOutcome:
    kind: str
    job: Optional[Job]
    delay: float = 0
    reason: Optional[str] = None

    @property
    def finished(self) -> bool:
        """True when the job needs no further delivery."""
        return self.job is None or self.job.is_terminal


def artifact_key(job_id: str, stage: str) -> str:
    return f"jobs/{job_id}/{stage}"


# ---------- stage functions ----------

def validate(job: Job, engines: Engines, settings: Settings) -> str:
    if job.mode not in MODES:
        raise ValidationError(f"unknown mode {job.mode!r}")
    try:
        x, y = (float(v) for v in job.segmentation_point)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid segmentation point {job.segmentation_point!r}")
    if not (math.isfinite(x) and math.isfinite(y)) or x < 0 or y < 0:
        raise ValidationError(f"segmentation point {job.segmentation_point!r} is out of bounds")
    try:
        data = engines.blobs.get(job.input_ref)
    except NotFound:
        raise ValidationError(f"input {job.input_ref!r} not found")
    if not data:
        raise ValidationError(f"input {job.input_ref!r} is empty")
    batch_size = job.params.get("batch_size", settings.default_batch_size)
    if not isinstance(batch_size, int) or batch_size < 1:
        raise ValidationError(f"invalid batch_size {batch_size!r}")
    return job.input_ref


def extract(job: Job, engines: Engines, settings: Settings) -> str:
    video = engines.blobs.get(job.input_ref)
    frames = engines.codec.extract_frames(video)
    return _store(job, EXTRACT, frames, engines, settings)


def track(job: Job, engines: Engines, settings: Settings) -> str:
    frames = engines.blobs.get(job.outputs[EXTRACT])
    masks = engines.segmentation.segment_and_track(frames, tuple(job.segmentation_point))
    return _store(job, TRACK, masks, engines, settings)


def process(job: Job, engines: Engines, settings: Settings) -> str:
    frames = engines.blobs.get(job.outputs[EXTRACT])
    masks = engines.blobs.get(job.outputs[TRACK])
    processor = engines.processor_for(job.mode)
    batch_size = job.params.get("batch_size", settings.default_batch_size)
    processed = processor.apply(frames, masks, batch_size=batch_size)
    return _store(job, PROCESS, processed, engines, settings)


def encode(job: Job, engines: Engines, settings: Settings) -> str:
    processed = engines.blobs.get(job.outputs[PROCESS])
    video = engines.codec.encode(processed)
    return _store(job, ENCODE, video, engines, settings)


def _store(job, stage, data, engines, settings) -> str:
    key = artifact_key(job.id, stage)
    engines.blobs.put(key, data, ttl=settings.artifact_ttl_seconds)
    return key


STAGE_FUNCTIONS: Dict[str, Callable[[Job, Engines, Settings], str]] = {
    VALIDATE: validate,
    EXTRACT: extract,
    TRACK: track,
    PROCESS: process,
    ENCODE: encode,
}


def execute_stage(job: Job, engines: Engines, settings: Settings) -> StageResult:
    """Run the job's current stage once and classify the outcome."""
    stage = job.stage
    try:
        return Success(STAGE_FUNCTIONS[stage](job, engines, settings))
    except ResourceExhausted as e:
        if stage == VALIDATE:
            return FatalFailure(e.message)
        current = job.params.get("batch_size", settings.default_batch_size)
        return RetryableFailure(e.message, batch_size=max(1, current // 2))
    except StageError as e:
        if stage == VALIDATE or not e.retryable:
            return FatalFailure(e.message)
        return RetryableFailure(e.message)
    except NotFound as e:
        # a missing upstream artifact will not reappear by retrying
        return FatalFailure(f"{stage}: {e}")
    except Exception as e:
        if stage == VALIDATE:
            return FatalFailure(f"{type(e).__name__}: {e}")
        logger.warning("Unclassified error in %s stage of job %s", stage, job.id, exc_info=True)
        return RetryableFailure(f"{type(e).__name__}: {e}")


def notify_safely(engines: Engines, job_id: str, event_kind: str, payload: dict):
    """Notifications are fire-and-forget; a failing sink never affects the job."""
    try:
        engines.notifier.notify(job_id, event_kind, payload)
    except Exception:
        logger.warning("Notification %s for job %s failed", event_kind, job_id, exc_info=True)


def _no_checkpoint():
    pass


class _Stale(Exception):
    """The job moved on while the stage ran; the result no longer applies."""


class PipelineStateMachine:
    def __init__(self, store, engines: Engines, settings: Settings, clock=SYSTEM_CLOCK):
        self.store = store
        self.engines = engines
        self.settings = settings
        self.clock = clock

    def step(self, job_id: str, checkpoint: Callable[[], None] = _no_checkpoint) -> StepOutcome:
        """
        Run one attempt of the job's current stage.

        `checkpoint` is called at the stage boundary and again before the
        result is persisted; it raises Interrupted when the worker has been
        told to stop, in which case nothing is written.
        """
        try:
            job = self.store.get(job_id)
        except NotFound:
            logger.error("Queue entry for unknown job %s", job_id)
            return StepOutcome(DISCARDED, None, reason="job not found")
        if job.is_terminal:
            return StepOutcome(DISCARDED, job, reason=f"job already {job.status}")

        try:
            checkpoint()
        except Interrupted:
            return StepOutcome(INTERRUPTED, job)

        if job.status == QUEUED:
            try:
                job = self._persist(job, job.stage, job.attempt(), self._mark_running)
            except _Stale:
                return StepOutcome(DISCARDED, self.store.get(job_id), reason="job changed before start")

        stage, attempt = job.stage, job.attempt()
        logger.info("Job %s: running %s (attempt %d)", job.id, stage, attempt + 1)
        notify_safely(self.engines, job.id, EVENT_STAGE_STARTED, {"stage": stage, "attempt": attempt + 1})

        result = execute_stage(job, self.engines, self.settings)

        try:
            checkpoint()
        except Interrupted:
            logger.info("Job %s: interrupted after %s; result not persisted", job.id, stage)
            return StepOutcome(INTERRUPTED, job)

        try:
            return self._apply(job, stage, attempt, result)
        except _Stale:
            latest = self.store.get(job_id)
            logger.info("Job %s: discarding %s result; job is now %s/%s",
                        job.id, stage, latest.status, latest.stage)
            return StepOutcome(DISCARDED, latest, reason="stale result")

    # ---------- result handling ----------
    def _apply(self, job: Job, stage: str, attempt: int, result: StageResult) -> StepOutcome:
        if isinstance(result, Success):
            return self._on_success(job, stage, attempt, result)
        if isinstance(result, RetryableFailure):
            attempts = attempt + 1
            if attempts < self.settings.max_stage_attempts:
                return self._on_retry(job, stage, attempt, attempts, result)
            return self._on_fatal(job, stage, attempt,
                                  f"{stage} failed after {attempts} attempts: {result.reason}",
                                  attempts=attempts)
        return self._on_fatal(job, stage, attempt, result.reason)

    def _on_success(self, job, stage, attempt, result: Success) -> StepOutcome:
        following = next_stage(stage)
        ts = now_iso(self.clock)

        def mutation(j: Job):
            j.outputs[stage] = result.output_ref
            j.progress_percent = STAGE_PROGRESS[stage]
            if following is None:
                j.status = COMPLETE
                j.output_ref = result.output_ref
                j.completed_at = ts
            else:
                j.stage = following
                j.attempts[following] = 0

        updated = self._persist(job, stage, attempt, mutation)
        if following is None:
            logger.info("Job %s complete: %s", job.id, result.output_ref)
            notify_safely(self.engines, job.id, EVENT_COMPLETE, {"output_ref": result.output_ref})
            return StepOutcome(COMPLETED, updated)
        return StepOutcome(ADVANCED, updated)

    def _on_retry(self, job, stage, attempt, attempts, result: RetryableFailure) -> StepOutcome:
        def mutation(j: Job):
            j.attempts[stage] = attempts
            if result.batch_size is not None:
                j.params["batch_size"] = result.batch_size

        updated = self._persist(job, stage, attempt, mutation)
        delay = backoff_delay(attempts, self.settings.backoff_base)
        logger.warning("Job %s: %s attempt %d failed (%s); retrying in %ss",
                       job.id, stage, attempts, result.reason, delay)
        return StepOutcome(RETRY, updated, delay=delay, reason=result.reason)

    def _on_fatal(self, job, stage, attempt, reason: str, attempts: Optional[int] = None) -> StepOutcome:
        ts = now_iso(self.clock)

        def mutation(j: Job):
            if attempts is not None:
                j.attempts[stage] = attempts
            j.status = FAILED
            j.error_detail = reason
            j.completed_at = ts

        updated = self._persist(job, stage, attempt, mutation)
        logger.error("Job %s failed in %s: %s", job.id, stage, reason)
        notify_safely(self.engines, job.id, EVENT_FAILED, {"stage": stage, "error": reason})
        return StepOutcome(FAILED_OUT, updated, reason=reason)

    def _mark_running(self, j: Job):
        if j.status == QUEUED:
            j.status = RUNNING
            j.started_at = now_iso(self.clock)

    def _persist(self, job: Job, stage: str, attempt: int, mutation) -> Job:
        """
        Version-checked write. On conflict, re-read and retry only while the
        job is still non-terminal and on the same stage attempt we ran.
        """
        version = job.version
        for _ in range(5):
            try:
                return self.store.update(job.id, version, mutation)
            except VersionConflict:
                latest = self.store.get(job.id)
                if latest.is_terminal or latest.stage != stage or latest.attempt(stage) != attempt:
                    raise _Stale()
                version = latest.version
        raise _Stale()
