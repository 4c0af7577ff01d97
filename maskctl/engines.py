"""
Collaborator interfaces consumed by the pipeline, plus small bundled
implementations for local runs.

Frames, masks and videos are opaque byte payloads to the core: stages only
move them between engines and the blob store, keyed per job and stage.
"""

import importlib
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import NotFound
from .models import BLUR, REMOVAL

logger = logging.getLogger(__name__)

Frames = bytes
Masks = bytes


class SegmentationEngine(ABC):
    @abstractmethod
    def segment_and_track(self, frames: Frames, point: Tuple[float, float]) -> Masks:
        """Track the object under `point` through every frame.

        Raises EngineError on low confidence or timeout.
        """
        ...


class RegionProcessingEngine(ABC):
    """Applies one region treatment to the masked area of every frame."""

    mode: str = ""

    @abstractmethod
    def apply(self, frames: Frames, masks: Masks, batch_size: Optional[int] = None) -> Frames:
        ...


class MediaCodec(ABC):
    @abstractmethod
    def extract_frames(self, video: bytes) -> Frames:
        ...

    @abstractmethod
    def encode(self, frames: Frames) -> bytes:
        ...


class BlobStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Raises NotFound for unknown or expired keys."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        try:
            self.get(key)
        except NotFound:
            return False
        return True


class NotificationSink(ABC):
    @abstractmethod
    def notify(self, job_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass
class Engines:
    """Everything a stage may call, bundled once per process."""
    codec: MediaCodec
    segmentation: SegmentationEngine
    processors: Dict[str, RegionProcessingEngine]
    blobs: BlobStore
    notifier: NotificationSink

    def processor_for(self, mode: str) -> RegionProcessingEngine:
        try:
            return self.processors[mode]
        except KeyError:
            raise ValueError(f"No region processing engine for mode {mode!r}")


# ---------- bundled implementations ----------

class MemoryBlobStore(BlobStore):
    def __init__(self, clock=None):
        self._data: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _now(self) -> float:
        return self._clock.time() if self._clock else time.time()

    def put(self, key, data, ttl=None):
        expires = self._now() + ttl if ttl else None
        with self._lock:
            self._data[key] = (bytes(data), expires)

    def get(self, key):
        with self._lock:
            item = self._data.get(key)
        if item is None or (item[1] is not None and item[1] <= self._now()):
            raise NotFound(f"blob {key!r} not found")
        return item[0]

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)


class FileBlobStore(BlobStore):
    """
    Blobs as files under `base_dir`. Writes go through a temp file and rename,
    so a re-run overwrites. A TTL is stored as an absolute expiry in a
    `<blob>.expires` file next to the blob, visible to every process sharing
    the directory.
    """

    _EXPIRES = ".expires"

    def __init__(self, base_dir: str, clock=None):
        self.base_dir = os.path.abspath(base_dir)
        os.makedirs(self.base_dir, exist_ok=True)
        self._clock = clock

    def _now(self) -> float:
        return self._clock.time() if self._clock else time.time()

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.base_dir, key))
        if not path.startswith(self.base_dir + os.sep) or path.endswith((self._EXPIRES, ".tmp")):
            raise ValueError(f"Invalid blob key {key!r}")
        return path

    @staticmethod
    def _write(path: str, data: bytes):
        tmp = path + ".tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    def put(self, key, data, ttl=None):
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if ttl:
            self._write(path + self._EXPIRES, repr(self._now() + ttl).encode())
        else:
            _remove(path + self._EXPIRES)
        self._write(path, data)

    def _expired(self, path: str) -> bool:
        try:
            with open(path + self._EXPIRES, "rb") as f:
                expires_at = float(f.read())
        except FileNotFoundError:
            return False
        return expires_at <= self._now()

    def get(self, key):
        path = self._path(key)
        if not os.path.exists(path) or self._expired(path):
            raise NotFound(f"blob {key!r} not found")
        with open(path, "rb") as f:
            return f.read()

    def delete(self, key):
        path = self._path(key)
        _remove(path)
        _remove(path + self._EXPIRES)


def _remove(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class LoggingNotifier(NotificationSink):
    def notify(self, job_id, event_kind, payload):
        logger.info("[notify] job=%s event=%s payload=%s", job_id, event_kind, payload)


class PassthroughCodec(MediaCodec):
    def extract_frames(self, video):
        return video

    def encode(self, frames):
        return frames


class PassthroughSegmentation(SegmentationEngine):
    def segment_and_track(self, frames, point):
        return f"{point[0]},{point[1]}".encode()


class PassthroughProcessor(RegionProcessingEngine):
    def __init__(self, mode: str):
        self.mode = mode

    def apply(self, frames, masks, batch_size=None):
        return frames


def passthrough_engines(blob_dir: str) -> Engines:
    """Engines that copy bytes through every stage; useful for dry runs of the pool."""
    return Engines(
        codec=PassthroughCodec(),
        segmentation=PassthroughSegmentation(),
        processors={BLUR: PassthroughProcessor(BLUR), REMOVAL: PassthroughProcessor(REMOVAL)},
        blobs=FileBlobStore(blob_dir),
        notifier=LoggingNotifier(),
    )


def load_engines(target: str, blob_dir: str) -> Engines:
    """Resolve 'package.module:factory' and call factory(blob_dir)."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Engines target must look like 'module:factory', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    engines = factory(blob_dir)
    if not isinstance(engines, Engines):
        raise TypeError(f"{target} returned {type(engines).__name__}, expected Engines")
    return engines
