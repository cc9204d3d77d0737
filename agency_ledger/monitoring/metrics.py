"""
Prometheus metrics for the membership ledger.

Tracks:
- Lifecycle transitions by operation and outcome
- Races lost to a competing activation
- Cascading auto-cancellations
- Notification fan-out outcomes
- Collaborator HTTP calls and circuit breaker state
- Expiry sweeps and counter drift
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Transition metrics
ledger_transitions_total = Counter(
    "ledger_transitions_total",
    "Total membership and verification transitions",
    ["operation", "status"],  # status: success, rejected, conflict, error
)

ledger_transition_duration_seconds = Histogram(
    "ledger_transition_duration_seconds",
    "Transition duration in seconds, retries included",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

ledger_transaction_retries_total = Counter(
    "ledger_transaction_retries_total",
    "Transactions retried after a transient storage failure",
    ["operation"],
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Transitions aborted by the in-transaction re-check",
    ["error_code"],
)

ledger_auto_cancellations_total = Counter(
    "ledger_auto_cancellations_total",
    "Pending requests auto-cancelled by a cascade",
)

# Verification metrics
verifications_issued_total = Counter(
    "verifications_issued_total",
    "Verifications issued",
    ["kind"],  # first, renewal
)

verification_revenue_total = Counter(
    "verification_revenue_total",
    "Sum of verification tier costs charged",
)

# Fan-out metrics
fanout_deliveries_total = Counter(
    "fanout_deliveries_total",
    "Side-effect deliveries",
    ["kind", "status"],  # kind: notification, trust; status: delivered, outboxed, lost
)

collaborator_requests_total = Counter(
    "collaborator_requests_total",
    "Collaborator HTTP requests",
    ["service", "status"],
)

collaborator_request_duration_seconds = Histogram(
    "collaborator_request_duration_seconds",
    "Collaborator HTTP call duration in seconds",
    ["service"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

collaborator_circuit_breaker_state = Gauge(
    "collaborator_circuit_breaker_state",
    "Collaborator circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service"],
)

# Maintenance metrics
sweep_items_total = Counter(
    "sweep_items_total",
    "Rows flipped by the expiry sweep",
    ["kind"],  # invitation, verification
)

counter_drift_total = Gauge(
    "counter_drift_total",
    "Agency counters found out of step by the last audit",
)

maintenance_duration_seconds = Histogram(
    "maintenance_duration_seconds",
    "Maintenance job duration in seconds",
    ["run_type"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)

maintenance_last_run_timestamp = Gauge(
    "maintenance_last_run_timestamp",
    "Timestamp of last maintenance run",
    ["run_type"],
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of undelivered events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events redelivered",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transition(operation: str, status: str, duration_seconds: float) -> None:
        """Record a lifecycle transition."""
        ledger_transitions_total.labels(operation=operation, status=status).inc()
        ledger_transition_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_transaction_retry(operation: str) -> None:
        """Record a transaction retried after a transient failure."""
        ledger_transaction_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_conflict(error_code: str) -> None:
        """Record a transition that lost the re-check."""
        ledger_conflicts_total.labels(error_code=error_code).inc()

    @staticmethod
    def record_auto_cancellations(count: int) -> None:
        """Record requests cancelled by a cascade."""
        if count > 0:
            ledger_auto_cancellations_total.inc(count)

    @staticmethod
    def record_verification(is_renewal: bool, cost: float) -> None:
        """Record an issued verification."""
        verifications_issued_total.labels(kind="renewal" if is_renewal else "first").inc()
        verification_revenue_total.inc(cost)

    @staticmethod
    def record_fanout(kind: str, status: str) -> None:
        """Record a side-effect delivery outcome."""
        fanout_deliveries_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def record_collaborator_call(service: str, status: str, duration_seconds: float) -> None:
        """Record a collaborator HTTP call."""
        collaborator_requests_total.labels(service=service, status=status).inc()
        collaborator_request_duration_seconds.labels(service=service).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(service: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        collaborator_circuit_breaker_state.labels(service=service).set(state_map.get(state, 0))

    @staticmethod
    def record_sweep(invitations: int, verifications: int) -> None:
        """Record rows flipped by an expiry sweep."""
        sweep_items_total.labels(kind="invitation").inc(invitations)
        sweep_items_total.labels(kind="verification").inc(verifications)

    @staticmethod
    def set_counter_drift(count: int) -> None:
        """Set counter drift found by the last audit."""
        counter_drift_total.set(count)

    @staticmethod
    def record_maintenance_run(run_type: str, duration_seconds: float) -> None:
        """Record a maintenance run."""
        maintenance_duration_seconds.labels(run_type=run_type).observe(duration_seconds)
        maintenance_last_run_timestamp.labels(run_type=run_type).set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
