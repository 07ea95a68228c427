"""Prometheus metrics for Polymux"""

from prometheus_client import Counter, Gauge

TURNS_STARTED = Counter(
    "polymux_turns_started_total",
    "Turns accepted by the dispatcher",
    ["provider"],
)
TURN_OUTCOMES = Counter(
    "polymux_turn_outcomes_total",
    "Finished turns by outcome (success, error, aborted, rejected)",
    ["provider", "outcome"],
)
ACTIVE_TURNS = Gauge(
    "polymux_active_turns",
    "Turns currently running",
    ["provider"],
)
WEBSOCKET_CONNECTIONS = Gauge(
    "polymux_websocket_connections",
    "Active WebSocket connections",
)
