"""
Worker pool and the pool controller that sizes it.

The controller samples queue depth and the registry of workers on a timer,
launches workers when the backlog grows and asks idle workers to leave when
it drains. Termination requests are advisory: a worker only acts on one
between jobs.
"""

import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .utils import SYSTEM_CLOCK

logger = logging.getLogger(__name__)

# Scale actions
SCALE_UP = "scale_up"
SCALE_DOWN = "scale_down"
TOP_UP = "top_up"
NO_ACTION = "none"


@dataclass
class ScaleDecision:
    action: str
    depth: int
    pool_size: int
    launched: List[str] = field(default_factory=list)
    terminated: List[str] = field(default_factory=list)
    reason: str = ""


class WorkerPool:
    """Owns the worker threads. `agent_factory(worker_id)` builds each WorkerAgent."""

    def __init__(self, registry, agent_factory: Callable[[str], object],
                 clock=SYSTEM_CLOCK, autostart: bool = True):
        self.registry = registry
        self.agent_factory = agent_factory
        self.clock = clock
        self.autostart = autostart
        self.agents: Dict[str, object] = {}
        self.threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def launch(self, count: int) -> List[str]:
        ids = []
        for _ in range(count):
            worker_id = f"worker-{uuid.uuid4().hex[:8]}"
            self.registry.register(worker_id, self.clock.time())
            agent = self.agent_factory(worker_id)
            thread = threading.Thread(target=agent.run, name=worker_id, daemon=True)
            with self._lock:
                self.agents[worker_id] = agent
                self.threads[worker_id] = thread
            if self.autostart:
                thread.start()
            ids.append(worker_id)
        if ids:
            logger.info("Launched %d worker(s): %s", len(ids), ", ".join(ids))
        return ids

    def request_termination(self, worker_ids: List[str]):
        for worker_id in worker_ids:
            self.registry.request_termination(worker_id)

    def interrupt_all(self):
        with self._lock:
            agents = list(self.agents.values())
        for agent in agents:
            agent.interrupt()

    def reap(self) -> List[str]:
        """Forget threads that have exited."""
        with self._lock:
            done = [wid for wid, t in self.threads.items() if t.ident is not None and not t.is_alive()]
            for wid in done:
                self.threads.pop(wid)
                self.agents.pop(wid)
        return done

    def join(self, timeout: Optional[float] = None):
        with self._lock:
            threads = list(self.threads.values())
        for t in threads:
            if t.ident is not None:
                t.join(timeout)

    def alive(self) -> int:
        with self._lock:
            return sum(1 for t in self.threads.values() if t.is_alive())


class PoolController:
    def __init__(self, queue, pool: WorkerPool, registry, settings, clock=SYSTEM_CLOCK):
        self.queue = queue
        self.pool = pool
        self.registry = registry
        self.settings = settings
        self.clock = clock
        self.last_action_at: Optional[float] = None
        self._lock = threading.Lock()

    def _in_cooldown(self, now: float) -> bool:
        return (self.last_action_at is not None
                and now - self.last_action_at < self.settings.scale_cooldown_seconds)

    def tick(self) -> ScaleDecision:
        """One control-loop iteration. Safe to re-run: unchanged inputs issue no new actions."""
        s = self.settings
        with self._lock:
            self.pool.reap()
            now = self.clock.time()
            gone = self.registry.expire_stale(now - s.lease_seconds)
            if gone:
                logger.warning("No heartbeat for %ss from %s; counting them as gone",
                               s.lease_seconds, ", ".join(gone))
            depth = self.queue.depth()
            workers = self.registry.active()
            n = len(workers)

            if n < s.min_workers:
                launched = self.pool.launch(s.min_workers - n)
                return ScaleDecision(TOP_UP, depth, n, launched=launched, reason="below min_workers")

            if depth > s.scale_up_threshold and n < s.max_workers:
                if self._in_cooldown(now):
                    return ScaleDecision(NO_ACTION, depth, n, reason="cooldown")
                wanted = math.ceil((depth - s.scale_up_threshold) / s.jobs_per_worker)
                launched = self.pool.launch(min(wanted, s.max_workers - n))
                self.last_action_at = now
                logger.info("Scale up: depth=%d pool=%d -> %d", depth, n, n + len(launched))
                return ScaleDecision(SCALE_UP, depth, n, launched=launched)

            if depth < s.scale_down_threshold and n > s.min_workers:
                idle = [w for w in workers if w.is_idle]
                timeout = s.worker_idle_timeout_seconds
                if not any(w.idle_for(now) > timeout for w in idle):
                    return ScaleDecision(NO_ACTION, depth, n, reason="no worker past idle timeout")
                if self._in_cooldown(now):
                    return ScaleDecision(NO_ACTION, depth, n, reason="cooldown")
                idle.sort(key=lambda w: w.idle_for(now), reverse=True)
                victims = [w.id for w in idle[: n - s.min_workers]]
                self.pool.request_termination(victims)
                self.last_action_at = now
                logger.info("Scale down: depth=%d pool=%d; asked %s to exit", depth, n, ", ".join(victims))
                return ScaleDecision(SCALE_DOWN, depth, n, terminated=victims)

            return ScaleDecision(NO_ACTION, depth, n)

    def request_self_termination(self, worker_id: str) -> bool:
        """An idle worker asks to leave; granted while the pool stays at or above min_workers."""
        with self._lock:
            active = self.registry.active()
            if worker_id not in {w.id for w in active}:
                return True
            if len(active) - 1 < self.settings.min_workers:
                return False
            self.registry.request_termination(worker_id)
            return True

    def shutdown(self, stop: threading.Event, control: threading.Thread):
        """Join the control loop before interrupting workers; a running tick may still launch one."""
        stop.set()
        control.join()
        self.pool.interrupt_all()
        self.pool.join()

    def run(self, stop: threading.Event):
        logger.info("Pool controller started (interval=%ss)", self.settings.control_interval_seconds)
        while not stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Pool controller tick failed")
            if self.clock.wait(stop, self.settings.control_interval_seconds):
                break
        logger.info("Pool controller stopped")
