"""Process-local counters and partner-call latency samples for /v1/ops/metrics.

Nothing here is persisted; each API or worker process reports its own view.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import math
import threading
import time


_MAX_SAMPLES = 10000


@dataclass(frozen=True)
class ExternalCallSample:
    recorded_at: float
    integration: str
    latency_ms: float
    success: bool


class _TelemetryStore:
    def __init__(self, max_samples: int = _MAX_SAMPLES) -> None:
        self._lock = threading.Lock()
        self._samples: deque[ExternalCallSample] = deque(maxlen=max_samples)
        self._counters: Counter[str] = Counter()

    def add_sample(self, sample: ExternalCallSample) -> None:
        with self._lock:
            self._samples.append(sample)

    def bump(self, name: str, value: int) -> None:
        with self._lock:
            self._counters[name] += value

    def samples_since(self, cutoff: float) -> list[ExternalCallSample]:
        with self._lock:
            return [sample for sample in self._samples if sample.recorded_at >= cutoff]

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self._counters.clear()


_store = _TelemetryStore()


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _store.add_sample(
        ExternalCallSample(
            recorded_at=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _store.bump(name, value)


def _percentile(sorted_values: list[float], fraction: float) -> float:
    index = max(0, math.ceil(fraction * len(sorted_values)) - 1)
    return sorted_values[index]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    """Summarise partner calls from the last ``window_s`` seconds, per integration.

    Each entry has ``calls``, ``failures``, ``p95`` and ``max`` latency in ms.
    """
    grouped: dict[str, list[ExternalCallSample]] = {}
    for sample in _store.samples_since(time.time() - window_s):
        grouped.setdefault(sample.integration, []).append(sample)
    summary: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        summary[integration] = {
            "calls": len(samples),
            "failures": sum(not sample.success for sample in samples),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return _store.counters()


def reset_telemetry() -> None:
    _store.clear()
