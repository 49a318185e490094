"""Lightweight metrics registry for the decision engine."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Mapping, MutableMapping, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class MetricRegistry:
    """A minimal Prometheus-style collector used for in-process accounting."""

    counters: MutableMapping[MetricKey, float] = field(default_factory=lambda: defaultdict(float))
    histograms: MutableMapping[MetricKey, list] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, name: str, *, labels: Mapping[str, str] | None = None, amount: float = 1.0) -> None:
        key = self._key(name, labels)
        with self._lock:
            self.counters[key] += amount

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._key(name, labels)
        with self._lock:
            self.histograms[key].append(value)

    def value(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        return self.counters.get(self._key(name, labels), 0.0)

    def snapshot(self) -> Dict[str, float]:
        """Flatten counters into ``name{label=value}`` keys."""

        flattened: Dict[str, float] = {}
        with self._lock:
            for (name, labels), value in self.counters.items():
                if labels:
                    rendered = ",".join(f"{key}={val}" for key, val in labels)
                    flattened[f"{name}{{{rendered}}}"] = value
                else:
                    flattened[name] = value
        return flattened

    def _key(self, name: str, labels: Mapping[str, str] | None) -> MetricKey:
        sorted_labels = tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))
        return name, sorted_labels


class Timer:
    """Context manager to record elapsed time into a histogram."""

    def __init__(self, registry: MetricRegistry, name: str, *, labels: Mapping[str, str] | None = None) -> None:
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start: float | None = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._start is None:
            return
        duration = time.perf_counter() - self._start
        self._registry.observe(self._name, duration, labels=self._labels)
