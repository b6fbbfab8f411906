"""
Observability Layer

RESPONSIBILITY: Audit log and metrics for view-model mutations
ALLOWED INPUTS: Copies of mutation outcomes and emitted events
OUTPUTS: AuditLogEntry list, MetricPoint series

WHAT THIS LAYER MUST NOT DO:
============================
- Modify view-model or store state
- Make decisions based on logged data
- Block mutations
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
import itertools

from .contracts import AuditEventType, AuditLogEntry, MetricPoint


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# LOG COLLECTOR
# =============================================================================

class LogCollector:
    """
    Append-only collector of audit entries.

    Entries are frozen; readers always get a copy of the list.
    """

    def __init__(self, layer_name: str, clock: Callable[[], datetime] = _utc_now):
        self._layer_name = layer_name
        self._clock = clock
        self._entries: List[AuditLogEntry] = []
        self._sequence = itertools.count(1)

    def record(
        self,
        event_type: AuditEventType,
        action: str,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = "comment",
        metadata: Optional[Dict[str, object]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            entry_id=f"{self._layer_name}_{next(self._sequence):06d}",
            event_type=event_type,
            timestamp=self._clock(),
            layer=self._layer_name,
            action=action,
            entity_id=entity_id,
            entity_type=entity_type,
            metadata=tuple(sorted((k, str(v)) for k, v in (metadata or {}).items())),
        )
        self.collect(entry)
        return entry

    def collect(self, entry: AuditLogEntry) -> None:
        self._entries.append(entry)

    def get_entries(
        self,
        event_type: Optional[AuditEventType] = None,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        entries = self._entries
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if action:
            entries = [e for e in entries if e.action == action]
        if entity_id:
            entries = [e for e in entries if e.entity_id == entity_id]
        return list(entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

@dataclass(frozen=True)
class MetricDefinition:
    name: str
    description: str
    labels: Tuple[str, ...] = ()


DEFAULT_METRICS: Tuple[MetricDefinition, ...] = (
    MetricDefinition("mutations_total", "Mutations applied optimistically", ("kind",)),
    MetricDefinition("rollbacks_total", "Mutations reverted after a gateway error", ("kind",)),
    MetricDefinition("gateway_latency_ms", "Time from dispatch to gateway completion", ("kind",)),
)


class MetricsCollector:
    """Append-only metric series."""

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self._clock = clock
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        for definition in DEFAULT_METRICS:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition) -> None:
        self._definitions[definition.name] = definition
        self._metrics.setdefault(definition.name, [])

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        label_tuple = tuple(sorted(labels.items())) if labels else ()
        self._metrics.setdefault(metric_name, []).append(MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=self._clock(),
            labels=label_tuple,
        ))

    def get_metric(
        self,
        metric_name: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[MetricPoint]:
        points = self._metrics.get(metric_name, [])
        if labels:
            wanted = set(labels.items())
            points = [p for p in points if wanted <= set(p.labels)]
        return list(points)

    def total(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return sum(p.value for p in self.get_metric(metric_name, labels))

    def compute_aggregates(self, metric_name: str) -> Dict[str, float]:
        """Aggregate statistics for a metric; empty dict if no points."""
        values = [p.value for p in self._metrics.get(metric_name, [])]
        if not values:
            return {}
        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }


# =============================================================================
# COMBINED OBSERVER
# =============================================================================

class MutationObserver:
    """Audit log and metrics bundled for the view-model."""

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self.audit = LogCollector("viewmodel", clock=clock)
        self.metrics = MetricsCollector(clock=clock)
