"""
In-process billing counters, exported in Prometheus text format at /metrics.

Counters live for the life of the process; a restart starts them at zero.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def _format_value(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


class Counter:
    """Monotonic counter with a fixed label set."""

    def __init__(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Mapping[str, str]]) -> LabelKey:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Mapping[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Mapping[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def export(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._values.items())
        for key, value in samples:
            labels = ""
            if self.label_names:
                labels = "{" + ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key)) + "}"
            lines.append(f"{self.name}{labels} {_format_value(value)}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, help_text, label_names)
            return self.counters[name]

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.counters.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for metric in self.counters.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status", ["method", "path", "status"]
)
webhook_events_total = METRICS.counter(
    "billing_webhook_events_total", "Payment provider webhook deliveries by outcome", ["provider", "outcome"]
)
gateway_calls_total = METRICS.counter(
    "billing_gateway_calls_total", "Outbound payment gateway calls by result", ["provider", "operation", "result"]
)
subscription_transitions_total = METRICS.counter(
    "subscription_transitions_total", "Subscription status changes by target status", ["to_status"]
)


_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|[A-Z]+_[A-Z]+_\w+)$")


def normalize_path(path: str, path_params: Optional[Mapping[str, object]] = None) -> str:
    """
    Collapse identifiers in a request path to keep label cardinality bounded.

    Matched route parameters become ":<name>"; otherwise numeric, uuid-like and
    checkout-reference segments become ":id".
    """
    by_value = {str(v): f":{k}" for k, v in (path_params or {}).items()}
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        if segment in by_value:
            parts.append(by_value[segment])
        elif _ID_SEGMENT.match(segment):
            parts.append(":id")
        else:
            parts.append(segment)
    return "/" + "/".join(parts)
