import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import List, Sequence

QUEUE_LEN = 500 #inter-arrival samples kept by the worker

#target fractions for the display percentiles, in field order of DisplayInfo
PERCENTILE_FRACTIONS = (0.80, 0.85, 0.90, 0.95, 0.98, 0.99, 0.995, 0.999)


def now_ms() -> int:
    """Wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def get_timestamp():
    """Return formatted timestamp for logging: HH:MM:SS.mmm"""
    now = time.time()
    ms = int((now * 1000) % 1000)
    return time.strftime("%H:%M:%S", time.localtime(now)) + f".{ms:03d}"


class IntervalWindow:
    """
    Fixed-capacity FIFO of inter-arrival samples (ms). When full, the oldest
    sample is evicted before the new one is appended.

    push() and snapshot() run under the same lock, so a snapshot never sees a
    half-applied push. A caller that needs to update other state atomically
    with the window can pass its own (reentrant) lock in.
    """

    def __init__(self, capacity: int = QUEUE_LEN, lock=None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._lock = lock if lock is not None else threading.RLock()
        self._samples = deque(maxlen=capacity)

    def push(self, value: int):
        with self._lock:
            #deque(maxlen) drops from the left on append when full
            self._samples.append(value)

    def snapshot(self) -> List[int]:
        with self._lock:
            return list(self._samples)

    def __len__(self):
        with self._lock:
            return len(self._samples)


@dataclass(frozen=True)
class DisplayInfo:
    avg: int = 0
    p80: int = 0
    p85: int = 0
    p90: int = 0
    p95: int = 0
    p98: int = 0
    p99: int = 0
    p99_5: int = 0
    p99_9: int = 0

    def percentiles(self):
        return (self.p80, self.p85, self.p90, self.p95,
                self.p98, self.p99, self.p99_5, self.p99_9)

    def __str__(self):
        return (f"   avg: {self.avg}\n"
                f"   80th: {self.p80},   85th: {self.p85},\n"
                f"   90th: {self.p90},   95th: {self.p95},\n"
                f"   98th: {self.p98},   99th: {self.p99},\n"
                f"   995th: {self.p99_5}, 999th: {self.p99_9},\n")


@dataclass(frozen=True)
class Summary:
    intervals: DisplayInfo
    missing_count: int
    total_count: int

    @property
    def loss_percent(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return self.missing_count / self.total_count * 100

    def __str__(self):
        if self.total_count > 0:
            loss_pct = f"{self.loss_percent:.2f}"
        else:
            loss_pct = "0"
        return (f"loss: {self.missing_count}/{self.total_count} ({loss_pct} %)\n"
                f"intervals:\n{self.intervals}")


def compute_display_info(samples: Sequence[int]) -> DisplayInfo:
    """
    Average plus nearest-rank percentiles over a window snapshot.

    The percentile for fraction f is sorted[floor(n * f)], clamped to the last
    index. No interpolation: on small windows the high percentiles collapse
    onto the maximum sample.
    """
    n = len(samples)
    if n == 0:
        return DisplayInfo()

    avg = int(sum(samples) / n) #truncates toward zero
    s = sorted(samples)

    def pct(f):
        idx = min(int(math.floor(n * f)), n - 1)
        return s[idx]

    return DisplayInfo(avg, *(pct(f) for f in PERCENTILE_FRACTIONS))


def interpolated_percentile(sorted_samples: Sequence[float], p: float) -> float:
    """Linear interpolation between the two samples around the pth percentile position."""
    pos = (len(sorted_samples) - 1) * (p / 100)
    frac, i = math.modf(pos)
    i = int(i)
    if frac == 0:
        return sorted_samples[i]
    upper = sorted_samples[min(i + 1, len(sorted_samples) - 1)]
    return sorted_samples[i] * (1 - frac) + upper * frac


class RttStats:
    """
    RTT samples taken from replays, as seen by the peer. Keeps a bounded
    history for percentiles and an RFC3550-style smoothed jitter over
    consecutive RTTs.
    """

    JITTER_GAIN = 1 / 16

    def __init__(self, maxlen: int = 2048):
        self.samples = deque(maxlen=maxlen)
        self.count = 0
        self.jitter_ms = 0.0
        self._prev_rtt_ms = None

    def add(self, rtt_ms: float):
        if self._prev_rtt_ms is not None:
            diff = abs(rtt_ms - self._prev_rtt_ms)
            self.jitter_ms += (diff - self.jitter_ms) * self.JITTER_GAIN
        self._prev_rtt_ms = rtt_ms
        self.samples.append(rtt_ms)
        self.count += 1

    def report(self) -> dict:
        """min/avg/p50/p95/max over the retained samples plus jitter; empty dict before any replay."""
        if not self.samples:
            return {}
        s = sorted(self.samples)
        return {
            "count": self.count,
            "min": s[0],
            "avg": sum(s) / len(s),
            "p50": interpolated_percentile(s, 50),
            "p95": interpolated_percentile(s, 95),
            "max": s[-1],
            "jitter": self.jitter_ms,
        }
