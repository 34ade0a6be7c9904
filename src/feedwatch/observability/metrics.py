"""Prometheus metrics for monitoring."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Info, generate_latest, start_http_server

from feedwatch.core.types import WatcherState
from feedwatch.observability.logging import get_logger

logger = get_logger(__name__)

# Create a custom registry
REGISTRY = CollectorRegistry()


APP_INFO = Info(
    "feedwatch",
    "feedwatch application info",
    registry=REGISTRY,
)

EVENTS_DISPATCHED_TOTAL = Counter(
    "feedwatch_events_dispatched_total",
    "Change events delivered to the handler",
    ["namespace", "operation"],
    registry=REGISTRY,
)

HANDLER_ERRORS_TOTAL = Counter(
    "feedwatch_handler_errors_total",
    "Handler failures",
    ["namespace"],
    registry=REGISTRY,
)

STORE_ERRORS_TOTAL = Counter(
    "feedwatch_store_errors_total",
    "Resume token persistence failures",
    ["namespace"],
    registry=REGISTRY,
)

RECONNECT_ATTEMPTS_TOTAL = Counter(
    "feedwatch_reconnect_attempts_total",
    "Reconnect attempts",
    ["namespace", "reason"],
    registry=REGISTRY,
)

GAPS_TOTAL = Counter(
    "feedwatch_gaps_total",
    "Resubscriptions from now after an expired resume token",
    ["namespace"],
    registry=REGISTRY,
)

SUPERVISOR_GIVE_UPS_TOTAL = Counter(
    "feedwatch_supervisor_give_ups_total",
    "Times the reconnect supervisor gave up",
    ["namespace"],
    registry=REGISTRY,
)

WATCHER_STATE = Gauge(
    "feedwatch_watcher_state",
    "1 for the watcher's current state, 0 otherwise",
    ["namespace", "state"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    """Set application info metric."""
    APP_INFO.info({"version": version, "environment": environment})


def record_state(namespace: str, state: WatcherState) -> None:
    """Flip the state gauge for a namespace."""
    for candidate in WatcherState:
        WATCHER_STATE.labels(namespace=namespace, state=candidate.value).set(
            1 if candidate is state else 0
        )


def start_metrics_server(port: int) -> None:
    """Expose the registry over HTTP."""
    start_http_server(port, registry=REGISTRY)
    logger.info("Metrics server started", port=port)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)
