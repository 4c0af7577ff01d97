import threading

import pytest

from maskctl.config import Settings
from maskctl.models import W_PROCESSING, W_TERMINATED
from maskctl.pool import NO_ACTION, SCALE_DOWN, SCALE_UP, TOP_UP, PoolController, WorkerPool
from maskctl.repository import WorkerRegistry


class FakeQueue:
    def __init__(self, depth=0):
        self._depth = depth

    def depth(self):
        return self._depth


class IdleAgent:
    def __init__(self, worker_id):
        self.id = worker_id
        self.interrupted = False

    def run(self):
        pass

    def interrupt(self):
        self.interrupted = True


@pytest.fixture
def registry(db):
    return WorkerRegistry(db)


@pytest.fixture
def pool(registry, clock):
    return WorkerPool(registry, IdleAgent, clock=clock, autostart=False)


def heartbeat_all(registry, clock):
    for worker in registry.active():
        registry.heartbeat(worker.id, clock.time())


def make_controller(depth, pool, registry, clock, **overrides):
    settings = Settings(**overrides)
    return PoolController(FakeQueue(depth), pool, registry, settings, clock)


def test_scale_up_from_queue_depth(pool, registry, clock):
    pool.launch(2)
    controller = make_controller(15, pool, registry, clock, min_workers=1, max_workers=50)

    decision = controller.tick()

    assert decision.action == SCALE_UP
    assert decision.pool_size == 2
    size = len(registry.active())
    assert 2 < size <= 50
    # ceil((15 - 10) / jobs_per_worker=2)
    assert len(decision.launched) == 3


def test_scale_up_respects_max_workers(pool, registry, clock):
    pool.launch(2)
    controller = make_controller(40, pool, registry, clock, max_workers=4)
    decision = controller.tick()
    assert len(decision.launched) == 2
    assert len(registry.active()) == 4
    assert controller.tick().action == NO_ACTION


def test_cooldown_prevents_duplicate_actions(pool, registry, clock):
    pool.launch(2)
    controller = make_controller(15, pool, registry, clock)
    controller.tick()
    size = len(registry.active())

    again = controller.tick()
    assert again.action == NO_ACTION
    assert again.reason == "cooldown"
    assert len(registry.active()) == size

    clock.advance(240)
    heartbeat_all(registry, clock)
    assert controller.tick().action == SCALE_UP


def test_scale_down_only_touches_idle_workers(pool, registry, clock):
    ids = pool.launch(4)
    busy = ids[1]
    registry.set_state(busy, W_PROCESSING, clock.time(), current_job_id="job-1")
    clock.advance(301)
    heartbeat_all(registry, clock)
    controller = make_controller(3, pool, registry, clock, min_workers=1)

    decision = controller.tick()

    assert decision.action == SCALE_DOWN
    assert busy not in decision.terminated
    assert len(decision.terminated) == 3
    remaining = registry.active()
    assert [w.id for w in remaining] == [busy]
    assert registry.get(busy).state == W_PROCESSING


def test_scale_down_never_goes_below_min(pool, registry, clock):
    pool.launch(4)
    clock.advance(301)
    heartbeat_all(registry, clock)
    controller = make_controller(0, pool, registry, clock, min_workers=2)
    decision = controller.tick()
    assert len(decision.terminated) == 2
    assert len(registry.active()) == 2


def test_scale_down_needs_a_worker_past_idle_timeout(pool, registry, clock):
    pool.launch(4)
    clock.advance(100)
    controller = make_controller(3, pool, registry, clock)
    decision = controller.tick()
    assert decision.action == NO_ACTION
    assert len(registry.active()) == 4


def test_tops_up_below_min_workers(pool, registry, clock):
    controller = make_controller(0, pool, registry, clock, min_workers=2)
    decision = controller.tick()
    assert decision.action == TOP_UP
    assert len(decision.launched) == 2


def test_self_termination_keeps_min_workers(pool, registry, clock):
    first, second = pool.launch(2)
    controller = make_controller(0, pool, registry, clock, min_workers=1)
    assert controller.request_self_termination(first) is True
    assert registry.get(first).termination_requested
    assert controller.request_self_termination(second) is False
    assert not registry.get(second).termination_requested


def test_pool_interrupts_and_reaps(pool, registry):
    ids = pool.launch(2)
    assert len(registry.list()) == 2
    pool.interrupt_all()
    assert all(agent.interrupted for agent in pool.agents.values())
    for t in pool.threads.values():
        t.start()
    pool.join()
    assert sorted(pool.reap()) == sorted(ids)
    assert pool.alive() == 0


def test_controller_loop_stops_on_event(pool, registry, clock):
    controller = make_controller(0, pool, registry, clock, min_workers=1)
    stop = threading.Event()
    ticks = []
    original = controller.tick

    def tick():
        ticks.append(1)
        if len(ticks) == 3:
            stop.set()
        return original()

    controller.tick = tick
    controller.run(stop)
    assert len(ticks) == 3


def test_workers_without_heartbeats_stop_counting(registry, pool, clock):
    for worker_id in ("ghost-1", "ghost-2", "ghost-3"):
        registry.register(worker_id, clock.time())
    clock.advance(3600)
    controller = make_controller(12, pool, registry, clock, min_workers=1)

    decision = controller.tick()

    assert decision.action == TOP_UP
    assert decision.pool_size == 0
    assert len(decision.launched) == 1
    assert registry.get("ghost-1").state == W_TERMINATED
    assert [w.id for w in registry.active()] == decision.launched


def test_recent_heartbeat_keeps_worker_counted(registry, pool, clock):
    registry.register("busy", clock.time())
    registry.set_state("busy", W_PROCESSING, clock.time(), current_job_id="job-1")
    clock.advance(100)
    registry.heartbeat("busy", clock.time())
    clock.advance(100)
    controller = make_controller(0, pool, registry, clock, min_workers=1)

    assert controller.tick().action == NO_ACTION
    assert registry.get("busy").state == W_PROCESSING


def test_shutdown_interrupts_workers_launched_by_a_running_tick(pool, registry, clock):
    controller = make_controller(0, pool, registry, clock)
    stop = threading.Event()
    launched = []

    def tick_in_flight():
        stop.wait()
        launched.extend(pool.launch(1))

    control = threading.Thread(target=tick_in_flight)
    control.start()
    controller.shutdown(stop, control)

    assert not control.is_alive()
    assert pool.agents[launched[0]].interrupted
