"""Prometheus metrics for the detector.

Each Counter/Gauge below registers itself in prometheus_client's global
REGISTRY on import.  main.py exposes them with start_http_server(); tests
read them back with REGISTRY.get_sample_value().
"""

from prometheus_client import Counter, Gauge

# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------
events_total = Counter(
    "fd_events_total",
    "Events seen by the engine, by kind and outcome",
    ["kind", "outcome"],  # outcome: applied | duplicate | late_rejected | malformed | error
)
late_events_accepted_total = Counter(
    "fd_late_events_accepted_total",
    "Out-of-order events accepted within the lateness bound",
)

# ---------------------------------------------------------------------------
# Window state
# ---------------------------------------------------------------------------
windows_active = Gauge(
    "fd_windows_active",
    "Window keys currently held in the aggregation store",
)
windows_evicted_total = Counter(
    "fd_windows_evicted_total",
    "Window keys evicted by the expiry manager",
    ["window"],
)
shard_resets_total = Counter(
    "fd_shard_resets_total",
    "Window keys reset after an aggregate invariant violation",
)

# ---------------------------------------------------------------------------
# Rules and alerts
# ---------------------------------------------------------------------------
rules_skipped_total = Counter(
    "fd_rules_skipped_total",
    "Per-event rule evaluations skipped because reference data was unavailable",
    ["rule_id"],
)
alert_mutations_total = Counter(
    "fd_alert_mutations_total",
    "Alert mutations by rule and kind",
    ["rule_id", "mutation"],  # created | updated | suppressed
)
alert_transitions_total = Counter(
    "fd_alert_transitions_total",
    "Investigator status changes by target status",
    ["status"],
)

# ---------------------------------------------------------------------------
# Alert sink
# ---------------------------------------------------------------------------
sink_written_total = Counter(
    "fd_sink_written_total",
    "Alert records accepted by the sink",
)
sink_retries_total = Counter(
    "fd_sink_retries_total",
    "Alert sink write attempts that failed and were retried",
)
sink_dropped_total = Counter(
    "fd_sink_dropped_total",
    "Alert records lost: pending buffer full, or undelivered with nowhere to requeue",
)
sink_pending = Gauge(
    "fd_sink_pending",
    "Alert records waiting for the sink",
)
sink_delivery_failures_total = Counter(
    "fd_sink_delivery_failures_total",
    "Alert records the broker reported as undelivered after produce()",
)
