"""Monitoring utilities for detection sessions."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.conf import settings

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


@dataclass
class _HealthState:
    """Mutable snapshot of the latest session activity."""

    running_sessions: Dict[str, int] = field(default_factory=dict)
    last_tick_timestamp: Optional[float] = None
    last_tick_duration: Optional[float] = None
    last_action_error: Optional[str] = None


_STATE = _HealthState()
_STATE_LOCK = threading.Lock()
_ALERTS: deque[Dict[str, Any]] = deque()


def _max_alert_history() -> int:
    value = getattr(settings, "RECOGNITION_HEALTH_ALERT_HISTORY", 50)
    try:
        numeric = int(value)
    except (TypeError, ValueError):  # pragma: no cover
        numeric = 50
    return max(1, numeric)


def get_tick_alert_threshold() -> float:
    """Tick duration (seconds) above which a slow-tick alert is recorded."""

    value = getattr(settings, "RECOGNITION_TICK_ALERT_SECONDS", 1.0)
    try:
        return float(value)
    except (TypeError, ValueError):  # pragma: no cover
        return 1.0


def _now_timestamp() -> float:
    return time.time()


def _format_timestamp(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc).isoformat()


def _append_alert(
    event_type: str, severity: str, message: str, data: Optional[Dict[str, Any]] = None
) -> None:
    payload = {
        "timestamp": _format_timestamp(_now_timestamp()),
        "type": event_type,
        "severity": severity,
        "message": message,
        "data": data or {},
    }
    with _STATE_LOCK:
        _ALERTS.append(payload)
        max_alerts = _max_alert_history()
        while len(_ALERTS) > max_alerts:
            _ALERTS.popleft()


def _build_metrics() -> None:
    global REGISTRY
    global SESSION_RUNNING_GAUGE
    global TICK_COUNTER
    global TICK_DURATION_HISTOGRAM
    global DECISION_COUNTER
    global FAILURE_COUNTER
    global ACCEPT_ACTION_COUNTER
    global ACTIVE_TRACKS_GAUGE

    REGISTRY = CollectorRegistry(auto_describe=True)

    SESSION_RUNNING_GAUGE = Gauge(
        "checkin_session_running",
        "Number of detection sessions currently polling",
        labelnames=("flow",),
        registry=REGISTRY,
    )
    TICK_COUNTER = Counter(
        "checkin_ticks",
        "Detection loop ticks by outcome",
        labelnames=("flow", "outcome"),
        registry=REGISTRY,
    )
    TICK_DURATION_HISTOGRAM = Histogram(
        "checkin_tick_duration_seconds",
        "Wall time of a processed tick, detector call included",
        labelnames=("flow",),
        buckets=(0.01, 0.025, 0.05, 0.1, 0.2, 0.35, 0.5, 1.0, 2.0, 5.0),
        registry=REGISTRY,
    )
    DECISION_COUNTER = Counter(
        "checkin_decisions",
        "Per-face policy decisions",
        labelnames=("flow", "status"),
        registry=REGISTRY,
    )
    FAILURE_COUNTER = Counter(
        "checkin_failures",
        "Ticks that ended without progress, by reason",
        labelnames=("flow", "reason"),
        registry=REGISTRY,
    )
    ACCEPT_ACTION_COUNTER = Counter(
        "checkin_accept_actions",
        "Accept actions fired by detection sessions",
        labelnames=("flow", "outcome"),
        registry=REGISTRY,
    )
    ACTIVE_TRACKS_GAUGE = Gauge(
        "checkin_active_tracks",
        "Face tracks alive after the latest tick",
        labelnames=("flow",),
        registry=REGISTRY,
    )


_build_metrics()


def reset_for_tests() -> None:
    """Reset in-memory state and metrics (intended for test suites)."""

    with _STATE_LOCK:
        global _STATE
        _STATE = _HealthState()
        _ALERTS.clear()
    _build_metrics()


def _metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    labels = labels or {}
    sample = REGISTRY.get_sample_value(name, labels)
    if sample is None and name.endswith("_total"):
        sample = REGISTRY.get_sample_value(name.replace("_total", ""), labels)
    return sample


def get_metric_value(name: str, **labels: str) -> float:
    """Return a sample value from the registry, ``0.0`` when it was never recorded."""

    return _metric_value(name, labels) or 0.0


def record_session_start(flow: str) -> None:
    SESSION_RUNNING_GAUGE.labels(flow=flow).inc()
    with _STATE_LOCK:
        _STATE.running_sessions[flow] = _STATE.running_sessions.get(flow, 0) + 1
    logger.info(
        "Detection session started", extra={"event": "session_start", "flow": flow}
    )


def record_session_stop(flow: str) -> None:
    SESSION_RUNNING_GAUGE.labels(flow=flow).dec()
    with _STATE_LOCK:
        _STATE.running_sessions[flow] = max(0, _STATE.running_sessions.get(flow, 0) - 1)
    logger.info("Detection session stopped", extra={"event": "session_stop", "flow": flow})


def record_tick(flow: str, outcome: str, duration: Optional[float] = None) -> None:
    """Count a tick and, for processed ticks, track its duration."""

    TICK_COUNTER.labels(flow=flow, outcome=outcome).inc()
    if duration is None:
        return

    TICK_DURATION_HISTOGRAM.labels(flow=flow).observe(max(0.0, duration))
    with _STATE_LOCK:
        _STATE.last_tick_timestamp = _now_timestamp()
        _STATE.last_tick_duration = duration

    threshold = get_tick_alert_threshold()
    if duration > threshold:
        message = f"Tick took {duration:.3f}s, above threshold {threshold:.3f}s"
        logger.warning(
            message,
            extra={
                "event": "slow_tick",
                "flow": flow,
                "duration_seconds": duration,
                "threshold": threshold,
            },
        )
        _append_alert(
            "slow_tick", "warning", message, {"flow": flow, "duration": duration}
        )


def record_decision(flow: str, status: str) -> None:
    DECISION_COUNTER.labels(flow=flow, status=status).inc()


def record_failure(flow: str, reason: str) -> None:
    FAILURE_COUNTER.labels(flow=flow, reason=reason).inc()


def record_accept_action(flow: str, outcome: str, error: Optional[str] = None) -> None:
    ACCEPT_ACTION_COUNTER.labels(flow=flow, outcome=outcome).inc()
    if error is None:
        return
    with _STATE_LOCK:
        _STATE.last_action_error = error
    _append_alert("accept_action_failure", "error", "Accept action failed", {
        "flow": flow,
        "error": error,
    })


def update_active_tracks(flow: str, count: int) -> None:
    ACTIVE_TRACKS_GAUGE.labels(flow=flow).set(count)


def get_health_snapshot() -> Dict[str, Any]:
    """Return a serialisable snapshot of session health and alert history."""

    with _STATE_LOCK:
        sessions = dict(_STATE.running_sessions)
        ticks = {
            "last_tick_timestamp": _format_timestamp(_STATE.last_tick_timestamp),
            "last_tick_duration": _STATE.last_tick_duration,
        }
        last_action_error = _STATE.last_action_error
        alerts = list(_ALERTS)
    return {
        "sessions": sessions,
        "ticks": ticks,
        "last_action_error": last_action_error,
        "alerts": alerts,
        "thresholds": {"tick": get_tick_alert_threshold()},
    }


def export_metrics() -> bytes:
    """Serialise the Prometheus metrics registry."""

    return generate_latest(REGISTRY)


__all__ = [
    "export_metrics",
    "get_health_snapshot",
    "get_metric_value",
    "get_tick_alert_threshold",
    "record_accept_action",
    "record_decision",
    "record_failure",
    "record_session_start",
    "record_session_stop",
    "record_tick",
    "reset_for_tests",
    "update_active_tracks",
]
