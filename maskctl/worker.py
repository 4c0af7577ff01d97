import logging
import signal
import threading
from typing import Callable, Optional

from .errors import Interrupted, LeaseLost
from .models import W_IDLE, W_LEASING, W_PROCESSING, W_DRAINING, W_TERMINATED
from .pipeline import INTERRUPTED, EVENT_REQUEUED, notify_safely
from .utils import SYSTEM_CLOCK

logger = logging.getLogger(__name__)


def setup_signal_handlers(on_signal: Callable[[int], None]):
    """Route SIGINT/SIGTERM (pre-emption notices) to `on_signal`."""
    def _handler(signum, frame):
        logger.warning("Received signal %s; interrupting workers at the next stage boundary", signum)
        on_signal(signum)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread
            logger.debug("Cannot install handler for signal %s outside the main thread", sig)


class _Heartbeat:
    """Extends the lease on a background thread while a stage runs."""

    def __init__(self, agent: "WorkerAgent", job_id: str):
        self.agent = agent
        self.job_id = job_id
        self.lost = False
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"{agent.id}-heartbeat", daemon=True
        )

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc):
        self._done.set()
        self._thread.join()
        return False

    def _run(self):
        settings = self.agent.settings
        while not self._done.wait(settings.heartbeat_seconds):
            try:
                self.agent.queue.heartbeat(self.agent.id, self.job_id, settings.lease_seconds)
                self.agent.registry.heartbeat(self.agent.id, self.agent.clock.time())
            except LeaseLost:
                logger.warning("[%s] Lease on job %s lost during heartbeat", self.agent.id, self.job_id)
                self.lost = True
                return
            except Exception:
                logger.exception("[%s] Heartbeat for job %s failed", self.agent.id, self.job_id)


class WorkerAgent:
    """
    One pool member. Leases an entry, runs one stage attempt, then completes,
    requeues or releases the entry. Exits when interrupted, when the pool
    controller asks it to, or after idling past the idle timeout.
    """

    def __init__(self, worker_id: str, queue, machine, registry, settings,
                 controller=None, clock=SYSTEM_CLOCK):
        self.id = worker_id
        self.queue = queue
        self.machine = machine
        self.registry = registry
        self.settings = settings
        self.controller = controller
        self.clock = clock
        self._interrupt = threading.Event()
        self.jobs_handled = 0

    def interrupt(self):
        """Pre-emption notice: stop at the next stage boundary and hand the job back."""
        self._interrupt.set()

    @property
    def interrupted(self) -> bool:
        return self._interrupt.is_set()

    def _checkpoint(self):
        if self._interrupt.is_set():
            raise Interrupted(self.id)

    def _set_state(self, state: str, job_id: Optional[str] = None, idle_since: Optional[float] = None):
        self.registry.set_state(self.id, state, self.clock.time(),
                                current_job_id=job_id, idle_since=idle_since)

    def run(self):
        logger.info("[%s] Worker started", self.id)
        last_lease_at = self.clock.time()
        try:
            while not self._interrupt.is_set():
                if self.registry.termination_requested(self.id):
                    logger.info("[%s] Termination requested by pool controller", self.id)
                    break
                try:
                    self._set_state(W_LEASING)
                    entry = self.queue.lease(
                        self.id, self.settings.lease_seconds, wait=self.settings.lease_wait_seconds
                    )
                    if entry is None:
                        self._set_state(W_IDLE)
                        idle_for = self.clock.time() - last_lease_at
                        if idle_for >= self.settings.worker_idle_timeout_seconds:
                            if self.controller is None or self.controller.request_self_termination(self.id):
                                logger.info("[%s] Idle for %.0fs; exiting", self.id, idle_for)
                                break
                            last_lease_at = self.clock.time()
                        continue

                    last_lease_at = self.clock.time()
                    self._handle(entry.job_id)
                except Exception:
                    logger.exception("[%s] Unexpected error; lease will expire and be redelivered", self.id)
                    self._set_state(W_IDLE, idle_since=self.clock.time())
                    self.clock.sleep(1)
        finally:
            self._set_state(W_TERMINATED)
            logger.info("[%s] Worker stopped after %d job step(s)", self.id, self.jobs_handled)

    def _handle(self, job_id: str):
        self._set_state(W_PROCESSING, job_id)
        with _Heartbeat(self, job_id) as hb:
            outcome = self.machine.step(job_id, checkpoint=self._checkpoint)
        self.jobs_handled += 1

        if outcome.kind == INTERRUPTED:
            self._release(job_id)
            return

        try:
            if outcome.finished:
                self.queue.complete(self.id, job_id)
            else:
                self.queue.requeue(self.id, job_id, delay=outcome.delay, error=outcome.reason)
        except LeaseLost:
            logger.warning("[%s] Lease on job %s lost before acknowledging (%s); leaving it to its owner",
                           self.id, job_id, outcome.kind)
        if hb.lost:
            logger.warning("[%s] Heartbeats for job %s failed during %s", self.id, job_id, outcome.kind)
        self._set_state(W_IDLE, idle_since=self.clock.time())

    def _release(self, job_id: str):
        self._set_state(W_DRAINING, job_id)
        try:
            self.queue.release(self.id, job_id)
        except LeaseLost:
            logger.warning("[%s] Lease on job %s already lost while draining", self.id, job_id)
            return
        logger.info("[%s] Released job %s for redelivery", self.id, job_id)
        notify_safely(self.machine.engines, job_id, EVENT_REQUEUED, {"worker_id": self.id})
