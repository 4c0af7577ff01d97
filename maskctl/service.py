import logging
import uuid
from typing import Dict, List, Optional, Tuple

from .errors import InvalidTransition, NotFound
from .job_queue import JobQueue
from .models import (
    Job, JobStatusView, QueueEntry, MODES, TIER_PRIORITY_SCORE, FAILED,
    CANCELLED, DELIVERY_EXHAUSTED,
)
from .pipeline import EVENT_FAILED, PipelineStateMachine, notify_safely
from .pool import PoolController, WorkerPool
from .repository import WorkerRegistry, load_settings
from .store import JobStore
from .utils import SYSTEM_CLOCK, now_iso
from .worker import WorkerAgent

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Entry point for callers: submit, get_status, cancel. Also wires the store,
    queue, state machine, worker agents and pool controller together.
    """

    def __init__(self, db, engines=None, settings=None, clock=SYSTEM_CLOCK):
        self.db = db
        self.engines = engines
        self.settings = settings or load_settings(db)
        self.clock = clock
        self.store = JobStore(db, clock)
        self.queue = JobQueue(db, clock, max_deliveries=self.settings.max_deliveries,
                              on_dead_letter=self._on_dead_letter)
        self.registry = WorkerRegistry(db)
        self._machine: Optional[PipelineStateMachine] = None

    # ---------- caller surface ----------
    def submit(self, owner_id: str, tier: str, mode: str, input_ref: str,
               segmentation_point: Tuple[float, float], params: Optional[Dict[str, int]] = None) -> str:
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id cannot be empty.")
        if tier not in TIER_PRIORITY_SCORE:
            raise ValueError(f"tier must be one of {', '.join(TIER_PRIORITY_SCORE)}")
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}")
        if not input_ref or not input_ref.strip():
            raise ValueError("input_ref cannot be empty.")

        job = Job(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            tier=tier,
            mode=mode,
            input_ref=input_ref,
            segmentation_point=tuple(segmentation_point),
            params=dict(params or {}),
        )
        with self.db.transaction() as conn:
            self.store.create(job, conn=conn)
            self.queue.enqueue(job.id, TIER_PRIORITY_SCORE[tier], conn=conn)
        logger.info("Submitted job %s for %s (tier=%s, mode=%s)", job.id, owner_id, tier, mode)
        return job.id

    def get_status(self, job_id: str) -> JobStatusView:
        return JobStatusView.of(self.store.get(job_id))

    def cancel(self, job_id: str) -> bool:
        """Mark the job failed/"cancelled". Returns False if it had already finished."""
        ts = now_iso(self.clock)

        def mutation(j: Job):
            j.status = FAILED
            j.error_detail = CANCELLED
            j.completed_at = ts

        try:
            job = self.store.update_with_retry(job_id, mutation)
        except InvalidTransition:
            return False
        self.queue.drop_pending(job_id)
        logger.info("Cancelled job %s at stage %s", job_id, job.stage)
        if self.engines is not None:
            notify_safely(self.engines, job_id, EVENT_FAILED, {"stage": job.stage, "error": CANCELLED})
        return True

    def list_jobs(self, status: Optional[str] = None) -> List[Job]:
        if status:
            return self.store.list_by_status(status)
        rows = self.db.query("SELECT * FROM jobs ORDER BY created_at ASC")
        return [Job.from_row(r) for r in rows]

    # ---------- dead letters ----------
    def _on_dead_letter(self, job_id: str):
        ts = now_iso(self.clock)

        def mutation(j: Job):
            j.status = FAILED
            j.error_detail = DELIVERY_EXHAUSTED
            j.completed_at = ts

        try:
            job = self.store.update_with_retry(job_id, mutation)
        except (InvalidTransition, NotFound):
            logger.warning("Dead-lettered job %s was already finished or missing", job_id)
            return
        if self.engines is not None:
            notify_safely(self.engines, job_id, EVENT_FAILED, {"stage": job.stage, "error": DELIVERY_EXHAUSTED})

    def dead_letters(self) -> List[QueueEntry]:
        return self.queue.dead_letters()

    def retry_dead_letter(self, job_id: str) -> str:
        """Resubmit a dead-lettered job as a new job; terminal records stay untouched."""
        old = self.store.get(job_id)
        if old.status != FAILED or old.error_detail != DELIVERY_EXHAUSTED:
            raise ValueError(f"Job {job_id} is not a dead-lettered job.")
        if not self.queue.purge_dead(job_id):
            raise ValueError(f"Job {job_id} not found in DLQ.")
        new_id = self.submit(old.owner_id, old.tier, old.mode, old.input_ref,
                             old.segmentation_point, params=old.params)
        logger.info("Resubmitted dead-lettered job %s as %s", job_id, new_id)
        return new_id

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {
            "jobs": self.store.counts(),
            "queue": self.queue.counts(),
            "workers": {"active": len(self.registry.active())},
        }

    # ---------- execution wiring ----------
    @property
    def machine(self) -> PipelineStateMachine:
        if self.engines is None:
            raise RuntimeError("Orchestrator was created without engines")
        if self._machine is None:
            self._machine = PipelineStateMachine(self.store, self.engines, self.settings, self.clock)
        return self._machine

    def new_agent(self, worker_id: str, controller=None) -> WorkerAgent:
        return WorkerAgent(worker_id, self.queue, self.machine, self.registry, self.settings,
                           controller=controller, clock=self.clock)

    def build_pool(self, autostart: bool = True) -> Tuple[WorkerPool, PoolController]:
        holder = {}
        pool = WorkerPool(
            self.registry,
            lambda worker_id: self.new_agent(worker_id, controller=holder.get("controller")),
            clock=self.clock,
            autostart=autostart,
        )
        controller = PoolController(self.queue, pool, self.registry, self.settings, self.clock)
        holder["controller"] = controller
        return pool, controller
