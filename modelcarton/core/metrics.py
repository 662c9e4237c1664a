"""
Metrics & Observability Module.

Counters and duration histograms for the archive store, the loader and the
device resolver, timing spans mirrored to the debug log, and a logger that
binds carton context to its messages. The library only emits events;
configuring log handlers is left to the application.

Emitted metrics:

    carton_cache_hits_total            store, verified cache hit
    carton_cache_misses_total          store, blob absent or invalid
    carton_downloads_total             store, completed download
    carton_integrity_failures_total    store, cached or fresh blob rejected
    carton_packs_total                 orchestrator, archive written
    carton_inferences_total{runner}    model, successful inference
    carton_device_fallbacks_total      device resolver, absent device
    carton_download_duration_seconds   store, fetch of one remote archive
    carton_load_duration_seconds       orchestrator, load and load_unpacked
"""

import time
import logging
import threading
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from contextlib import contextmanager
import json


logger = logging.getLogger(__name__)


DURATION_BUCKETS = {
    "carton_download_duration_seconds": [0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
    "carton_load_duration_seconds": [0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
}


class Histogram:
    """Cumulative duration histogram with fixed upper bounds in seconds."""

    def __init__(self, name: str, buckets: List[float]):
        self.name = name
        self.buckets = sorted(buckets)
        self._counts = [0] * (len(self.buckets) + 1)
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[i] += 1
            self._counts[-1] += 1

    @property
    def count(self) -> int:
        return self._counts[-1]

    @property
    def total(self) -> float:
        return self._sum

    def cumulative_counts(self) -> Dict[str, int]:
        """Observation count per upper bound, ``+Inf`` last."""
        labels = [str(bound) for bound in self.buckets] + ["+Inf"]
        return dict(zip(labels, self._counts))


@dataclass
class Span:
    """Timing of one library operation (pack, load, download, infer)."""
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: str = "ok"
    duration_ms: Optional[float] = None


class Tracer:
    """Times operations and writes each finished span to the debug log."""

    @contextmanager
    def start_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        span = Span(name=name, attributes=dict(attributes or {}))
        start = time.perf_counter()
        try:
            yield span
        except BaseException as e:
            span.status = "error"
            span.attributes["error"] = f"{type(e).__name__}: {e}"
            raise
        finally:
            span.duration_ms = (time.perf_counter() - start) * 1000
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    f"span {span.name} {span.status} {span.duration_ms:.1f}ms "
                    f"{json.dumps(span.attributes, default=str)}"
                )


class MetricsCollector:
    """
    Process-wide metrics for modelcarton.

    Example:
        metrics = MetricsCollector()

        with metrics.measure_time("carton_load_duration_seconds"):
            model = await load(url)

        metrics.increment_counter("carton_cache_hits_total")
    """

    _instance: Optional["MetricsCollector"] = None

    def __new__(cls) -> "MetricsCollector":
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._counters: Dict[str, float] = {}
        self._histograms = {
            name: Histogram(name, buckets) for name, buckets in DURATION_BUCKETS.items()
        }
        self._lock = threading.Lock()
        self._tracer = Tracer()
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from zero."""
        cls._instance = None

    @staticmethod
    def _make_key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._make_key(name, labels), 0.0)

    def histogram(self, name: str) -> Histogram:
        """
        Get one of the duration histograms listed in ``DURATION_BUCKETS``.

        Raises:
            KeyError: Unknown histogram name
        """
        return self._histograms[name]

    @contextmanager
    def measure_time(self, histogram_name: str):
        """Observe the wall time of the block, including when it raises."""
        histogram = self.histogram(histogram_name)
        start = time.perf_counter()
        try:
            yield
        finally:
            histogram.observe(time.perf_counter() - start)

    @property
    def tracer(self) -> Tracer:
        return self._tracer


# -------------------------------------------------------------------------
# Structured Logging
# -------------------------------------------------------------------------

class StructuredLogger:
    """
    Logger that appends bound ``key=value`` context to each message.

    Example:
        log = StructuredLogger("modelcarton.core.orchestrator")

        with log.context(source=str(source), output=str(output)):
            log.info("Packed carton", sha256=manifest.content_sha256)
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self._local_context: Dict[str, Any] = {}

    @contextmanager
    def context(self, **kwargs):
        """Bind context to every message logged in this scope."""
        previous = self._local_context.copy()
        self._local_context.update(kwargs)
        try:
            yield
        finally:
            self._local_context = previous

    def _format_message(self, message: str, **kwargs) -> str:
        ctx = {**self._local_context, **kwargs}
        if not ctx:
            return message
        ctx_str = " ".join(
            f"{k}={json.dumps(v) if isinstance(v, (dict, list)) else v}" for k, v in ctx.items()
        )
        return f"{message} | {ctx_str}"

    def info(self, message: str, **kwargs) -> None:
        if self.logger.isEnabledFor(logging.INFO):
            self.logger.info(self._format_message(message, **kwargs))


# -------------------------------------------------------------------------
# Global Instance
# -------------------------------------------------------------------------

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector()


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger."""
    return StructuredLogger(name)
