import copy
import json
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

# Job status
QUEUED = "queued"
RUNNING = "running"
COMPLETE = "complete"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETE, FAILED)
STATUSES = (QUEUED, RUNNING, COMPLETE, FAILED)

# Pipeline stages, in order
VALIDATE = "validate"
EXTRACT = "extract"
TRACK = "track"
PROCESS = "process"
ENCODE = "encode"
STAGES = (VALIDATE, EXTRACT, TRACK, PROCESS, ENCODE)

# Tiers
STANDARD = "standard"
PRIORITY = "priority"
TIER_PRIORITY_SCORE = {STANDARD: 0, PRIORITY: 1}

# Region processing modes
BLUR = "blur"
REMOVAL = "removal"
MODES = (BLUR, REMOVAL)

# Queue entry states
ENTRY_PENDING = "pending"
ENTRY_LEASED = "leased"
ENTRY_DEAD = "dead"  # DLQ

# Worker states
W_IDLE = "idle"
W_LEASING = "leasing"
W_PROCESSING = "processing"
W_DRAINING = "draining"
W_TERMINATED = "terminated"
WORKER_GONE_STATES = (W_DRAINING, W_TERMINATED)

# Cancellation / dead-letter reasons written to error_detail
CANCELLED = "cancelled"
DELIVERY_EXHAUSTED = "delivery exhausted"

# Progress reported once a stage has finished
STAGE_PROGRESS = {VALIDATE: 5, EXTRACT: 25, TRACK: 55, PROCESS: 85, ENCODE: 100}


def stage_index(stage: str) -> int:
    return STAGES.index(stage)


def next_stage(stage: str) -> Optional[str]:
    i = stage_index(stage)
    return STAGES[i + 1] if i + 1 < len(STAGES) else None


@dataclass
class Job:
    id: str
    owner_id: str
    tier: str
    mode: str
    input_ref: str
    segmentation_point: Tuple[float, float]
    stage: str = VALIDATE
    status: str = QUEUED
    attempts: Dict[str, int] = field(default_factory=lambda: {VALIDATE: 0})
    version: int = 0
    progress_percent: int = 0
    error_detail: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    output_ref: Optional[str] = None
    params: Dict[str, int] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def attempt(self, stage: Optional[str] = None) -> int:
        return self.attempts.get(stage or self.stage, 0)

    def copy(self) -> "Job":
        return copy.deepcopy(self)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "tier": self.tier,
            "mode": self.mode,
            "input_ref": self.input_ref,
            "segmentation_point": json.dumps(list(self.segmentation_point)),
            "stage": self.stage,
            "status": self.status,
            "attempts": json.dumps(self.attempts),
            "version": self.version,
            "progress_percent": self.progress_percent,
            "error_detail": self.error_detail,
            "outputs": json.dumps(self.outputs),
            "output_ref": self.output_ref,
            "params": json.dumps(self.params),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_row(cls, row) -> "Job":
        d = dict(row)
        d["segmentation_point"] = tuple(json.loads(d["segmentation_point"]))
        for key in ("attempts", "outputs", "params"):
            d[key] = json.loads(d[key])
        return cls(**d)


@dataclass
class QueueEntry:
    job_id: str
    priority_score: int
    enqueued_at: float
    available_at: float
    state: str = ENTRY_PENDING
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None
    delivery_count: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "QueueEntry":
        return cls(**dict(row))


@dataclass
class Worker:
    id: str
    state: str = W_IDLE
    current_job_id: Optional[str] = None
    last_heartbeat_at: Optional[float] = None
    idle_since: Optional[float] = None
    termination_requested: bool = False
    started_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.state not in WORKER_GONE_STATES and not self.termination_requested

    @property
    def is_idle(self) -> bool:
        return self.state in (W_IDLE, W_LEASING) and self.current_job_id is None

    def idle_for(self, now: float) -> float:
        if not self.is_idle or self.idle_since is None:
            return 0.0
        return now - self.idle_since

    @classmethod
    def from_row(cls, row) -> "Worker":
        d = dict(row)
        d["termination_requested"] = bool(d["termination_requested"])
        return cls(**d)


@dataclass
class JobStatusView:
    """What callers of get_status() see."""
    job_id: str
    stage: str
    status: str
    progress_percent: int
    output_ref: Optional[str] = None
    error_detail: Optional[str] = None

    @classmethod
    def of(cls, job: Job) -> "JobStatusView":
        return cls(
            job_id=job.id,
            stage=job.stage,
            status=job.status,
            progress_percent=job.progress_percent,
            output_ref=job.output_ref,
            error_detail=job.error_detail,
        )
