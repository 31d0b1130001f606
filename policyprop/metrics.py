"""Simple metrics recorded by the propagator."""

from __future__ import annotations

import math
import threading
from bisect import bisect_left
from collections.abc import Sequence

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)


class Gauge:
    """A value that can go up and down."""

    def __init__(self, name: str, help: str) -> None:
        self.name = name
        self.help = help
        self.value = 0.0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self.value = float(value)


class Counter:
    """A monotonically increasing count, one per combination of label values."""

    def __init__(self, name: str, help: str, label_names: Sequence[str] = ()) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _labels(self, values: tuple[str, ...]) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name} expects {len(self.label_names)} label values, got {len(values)}"
            )
        return values

    def inc(self, *args: str) -> None:
        """Add one to the count for the given label values."""
        key = self._labels(args)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + 1.0

    def value(self, *args: str) -> float:
        """The current count for the given label values."""
        key = self._labels(args)
        with self._lock:
            return self._values.get(key, 0.0)


class Histogram:
    """Observations counted into cumulative buckets."""

    def __init__(self, name: str, help: str, buckets: Sequence[float] = DEFAULT_BUCKETS) -> None:
        bounds = sorted(float(b) for b in buckets)
        if not bounds:
            raise ValueError("a histogram needs at least one bucket")
        self.name = name
        self.help = help
        self.buckets = tuple(bounds)
        self._counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        index = bisect_left(self.buckets, value)
        with self._lock:
            if index < len(self._counts):
                self._counts[index] += 1
            self.count += 1
            self.sum += value

    def bucket_count(self, upper_bound: float) -> int:
        """Number of observations less than or equal to a bucket's upper bound."""
        with self._lock:
            if math.isinf(upper_bound) and upper_bound > 0:
                return self.count
            if upper_bound not in self.buckets:
                raise ValueError(f"{upper_bound} is not a bucket of {self.name}")
            index = self.buckets.index(upper_bound)
            return sum(self._counts[: index + 1])


HUB_TEMPLATE_ACTIVE_WATCHES = Gauge(
    "hub_templates_active_watches",
    "The number of active watch API requests for Hub policy templates",
)
PROPAGATION_FAILURE = Counter(
    "policy_propagation_failure_total",
    "The number of failed policy propagation attempts per policy",
    ("name", "namespace"),
)
ROOT_HANDLER_MEASURE = Histogram(
    "ocm_handle_root_policy_duration_seconds_bucket",
    "Time the handleRootPolicy function takes to complete.",
)