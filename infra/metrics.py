"""Prometheus-backed metrics hooks for the follow loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

from core.models import FollowEvent

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    status: str
    actions: Dict[str, int]
    rejected: int
    following: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose follow loop stats via Prometheus.

    Each recorder owns its own registry, so several recorders (tests, or
    one loop per agent) never collide on metric names.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_tick: Optional[TickStats] = None
        self._event_counts: Dict[str, int] = {}

        self._tick_summary = Summary(
            "follower_tick_duration_seconds",
            "Duration of a full follow tick",
            registry=self.registry,
        )
        self._tick_counter = Counter(
            "follower_tick_total",
            "Total follow ticks by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._action_counter = Counter(
            "follower_actions_total",
            "Classified follow actions by kind",
            labelnames=("action",),
            registry=self.registry,
        )
        self._event_counter = Counter(
            "follower_events_total",
            "Recorded follow events by kind",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._rejections_counter = Counter(
            "follower_rejections_total",
            "Per-symbol exchange rejections",
            registry=self.registry,
        )
        self._following_gauge = Gauge(
            "follower_following_symbols",
            "Number of symbols currently FOLLOWING",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_tick(self, stats: TickStats) -> None:
        self._tick_summary.observe(stats.duration_seconds)
        self._tick_counter.labels(status=stats.status).inc()
        for action, count in stats.actions.items():
            self._action_counter.labels(action=action).inc(count)
        if stats.rejected:
            self._rejections_counter.inc(stats.rejected)
        self._following_gauge.set(stats.following)
        self._last_tick = stats

    def record_event(self, event: FollowEvent) -> None:
        kind = event.kind.value
        self._event_counter.labels(kind=kind).inc()
        self._event_counts[kind] = self._event_counts.get(kind, 0) + 1

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick

    def event_snapshot(self) -> Dict[str, int]:
        return dict(self._event_counts)
