"""
Prometheus metrics for settlement monitoring.

Tracks:
- Order and payment status transitions
- Refund outcomes
- Gateway calls and inbound gateway events
- Optimistic concurrency conflicts
- Side-effect failures and the deferred command backlog
- Aggregates flagged for manual reconciliation
"""
from prometheus_client import Counter, Gauge, Histogram

# Aggregate transitions
order_transitions_total = Counter(
    "settlement_order_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

payment_transitions_total = Counter(
    "settlement_payment_transitions_total",
    "Total payment status transitions",
    ["from_status", "to_status"],
)

refunds_total = Counter(
    "settlement_refunds_total",
    "Refund attempts by outcome",
    ["outcome"],  # completed, failed, unknown, rejected, duplicate
)

# Gateway metrics
gateway_calls_total = Counter(
    "settlement_gateway_calls_total",
    "Total gateway calls",
    ["operation", "outcome"],  # outcome: success, failure, timeout
)

gateway_call_duration_seconds = Histogram(
    "settlement_gateway_call_duration_seconds",
    "Gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "settlement_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

gateway_events_total = Counter(
    "settlement_gateway_events_total",
    "Inbound gateway events",
    ["event_type", "outcome"],  # applied, duplicate, ignored, failed
)

# Concurrency metrics
optimistic_conflicts_total = Counter(
    "settlement_optimistic_conflicts_total",
    "Version conflicts detected on aggregate writes",
    ["aggregate"],
)

aggregates_flagged_total = Counter(
    "settlement_aggregates_flagged_total",
    "Aggregates flagged for manual reconciliation",
    ["aggregate"],
)

# Side effects
side_effect_failures_total = Counter(
    "settlement_side_effect_failures_total",
    "Side effects that failed and were deferred",
    ["kind"],
)

deferred_commands_pending = Gauge(
    "settlement_deferred_commands_pending",
    "Deferred commands awaiting retry",
)

deferred_commands_dead_lettered_total = Counter(
    "settlement_deferred_commands_dead_lettered_total",
    "Deferred commands abandoned after exhausting retries",
    ["kind"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_transition(from_status: str, to_status: str) -> None:
        """Record an order status change."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_payment_transition(from_status: str, to_status: str) -> None:
        """Record a payment status change."""
        payment_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_calls_total.labels(operation=operation, outcome=outcome).inc()
        gateway_call_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_gateway_event(event_type: str, outcome: str) -> None:
        gateway_events_total.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_conflict(aggregate: str) -> None:
        optimistic_conflicts_total.labels(aggregate=aggregate).inc()

    @staticmethod
    def record_flagged(aggregate: str) -> None:
        aggregates_flagged_total.labels(aggregate=aggregate).inc()

    @staticmethod
    def record_side_effect_failure(kind: str) -> None:
        side_effect_failures_total.labels(kind=kind).inc()

    @staticmethod
    def set_deferred_queue_depth(depth: int) -> None:
        deferred_commands_pending.set(depth)

    @staticmethod
    def record_dead_letter(kind: str) -> None:
        deferred_commands_dead_lettered_total.labels(kind=kind).inc()


# Export singleton instance
metrics = MetricsCollector()
