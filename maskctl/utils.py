import re
import threading
import time
from datetime import datetime, timezone

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse duration strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("duration string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid duration format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("duration must be > 0 seconds")
    return total


def iso_from_ts(ts: float) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z' for an epoch value."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso(clock=None) -> str:
    return iso_from_ts((clock or SYSTEM_CLOCK).time())


def backoff_delay(attempt: int, base: int = 2) -> int:
    """Seconds to wait before retry number `attempt` (1-based): 2, 4, 8, ..."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return base ** attempt


def parse_point(s: str):
    """Parse 'X,Y' into a float pair."""
    try:
        x, y = (float(p) for p in s.split(","))
    except ValueError:
        raise ValueError(f"Invalid point {s!r}; expected X,Y")
    return x, y


class SystemClock:
    """Wall clock; every timing decision in the core goes through a clock."""

    def time(self) -> float:
        return time.time()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        return event.wait(seconds)


class FakeClock(SystemClock):
    """Manually advanced clock. sleep() and wait() advance time instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float):
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float):
        if seconds > 0:
            self.advance(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        if event.is_set():
            return True
        self.advance(seconds)
        return event.is_set()


SYSTEM_CLOCK = SystemClock()
