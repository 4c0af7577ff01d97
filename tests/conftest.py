import pytest

from maskctl.config import Settings
from maskctl.db import Database
from maskctl.engines import (
    Engines, MediaCodec, MemoryBlobStore, NotificationSink, RegionProcessingEngine,
    SegmentationEngine,
)
from maskctl.models import BLUR, REMOVAL
from maskctl.service import Orchestrator
from maskctl.utils import FakeClock

INPUT_REF = "inputs/clip.mp4"


class Script:
    """Per-stage queue of exceptions to raise and hooks to run inside engine calls."""

    def __init__(self):
        self.failures = {}
        self.hooks = {}
        self.calls = []

    def fail(self, stage, *errors):
        self.failures.setdefault(stage, []).extend(errors)

    def on(self, stage, hook):
        self.hooks[stage] = hook

    def run(self, stage):
        self.calls.append(stage)
        hook = self.hooks.pop(stage, None)
        if hook:
            hook()
        pending = self.failures.get(stage)
        if pending:
            raise pending.pop(0)


class ScriptedCodec(MediaCodec):
    def __init__(self, script):
        self.script = script

    def extract_frames(self, video):
        self.script.run("extract")
        return b"frames:" + video

    def encode(self, frames):
        self.script.run("encode")
        return b"video:" + frames


class ScriptedSegmentation(SegmentationEngine):
    def __init__(self, script):
        self.script = script

    def segment_and_track(self, frames, point):
        self.script.run("track")
        return f"masks@{point[0]},{point[1]}".encode()


class ScriptedProcessor(RegionProcessingEngine):
    def __init__(self, mode, script):
        self.mode = mode
        self.script = script
        self.batch_sizes = []

    def apply(self, frames, masks, batch_size=None):
        self.batch_sizes.append(batch_size)
        self.script.run("process")
        return frames + b"|" + self.mode.encode()


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.events = []

    def notify(self, job_id, event_kind, payload):
        self.events.append((job_id, event_kind, payload))

    def kinds(self, job_id):
        return [kind for jid, kind, _ in self.events if jid == job_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def settings():
    return Settings(worker_idle_timeout_seconds=20)


@pytest.fixture
def script():
    return Script()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engines(script, notifier, clock):
    blobs = MemoryBlobStore(clock)
    blobs.put(INPUT_REF, b"video-bytes")
    return Engines(
        codec=ScriptedCodec(script),
        segmentation=ScriptedSegmentation(script),
        processors={BLUR: ScriptedProcessor(BLUR, script), REMOVAL: ScriptedProcessor(REMOVAL, script)},
        blobs=blobs,
        notifier=notifier,
    )


@pytest.fixture
def orch(db, engines, settings, clock):
    return Orchestrator(db, engines=engines, settings=settings, clock=clock)


@pytest.fixture
def submit(orch):
    def _submit(tier="standard", mode=BLUR, input_ref=INPUT_REF, point=(10, 20), **params):
        return orch.submit("owner-1", tier, mode, input_ref, point, params=params or None)
    return _submit
