"""
Prometheus metrics for the catalog import engine.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Sessions ─────────────────────────────────────────────────
import_sessions_created_total = Counter(
    "import_sessions_created_total",
    "Total import sessions created",
)

import_sessions_finished_total = Counter(
    "import_sessions_finished_total",
    "Total import sessions reaching a terminal state",
    ["status"],
)

workflow_transition_total = Counter(
    "workflow_transition_total",
    "Session state transitions",
    ["to_status"],
)

aggregate_confidence_scores = Histogram(
    "aggregate_confidence_scores",
    "Distribution of session aggregate confidence at the auto-advance decision",
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0],
)

# ── Field Mapping ────────────────────────────────────────────
field_mappings_total = Counter(
    "field_mappings_total",
    "Field mappings emitted, by winning strategy",
    ["strategy"],
)

mapping_confidence = Histogram(
    "mapping_confidence",
    "Distribution of final field mapping confidence (0-100)",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 95, 100],
)

mapping_resolve_duration_seconds = Histogram(
    "mapping_resolve_duration_seconds",
    "Time to resolve a full mapping set",
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10],
)

# ── External Classifier ──────────────────────────────────────
external_classifier_calls_total = Counter(
    "external_classifier_calls_total",
    "External classifier calls by outcome",
    ["outcome"],
)

external_api_cost_usd = Counter(
    "external_api_cost_usd_total",
    "Cumulative cost of external classifier calls in USD",
    ["provider"],
)

external_api_latency_seconds = Histogram(
    "external_api_latency_seconds",
    "Latency of external classifier calls",
    ["provider"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

# ── Approvals ────────────────────────────────────────────────
approval_requests_total = Counter(
    "approval_requests_total",
    "Approval requests created",
    ["risk_level"],
)

approval_decisions_total = Counter(
    "approval_decisions_total",
    "Approval decisions recorded",
    ["decision"],
)

approval_queue_depth = Gauge(
    "approval_queue_depth",
    "Current number of pending approval requests",
)

# ── Batch Commit ─────────────────────────────────────────────
import_batches_total = Counter(
    "import_batches_total",
    "Import batches finished, by status",
    ["status"],
)

batch_commit_duration_seconds = Histogram(
    "batch_commit_duration_seconds",
    "Time to commit a single batch",
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30],
)

records_committed_total = Counter(
    "records_committed_total",
    "Records processed during commit, by outcome",
    ["outcome"],
)

# ── Worker ───────────────────────────────────────────────────
worker_jobs_active = Gauge(
    "worker_jobs_active",
    "Number of currently active worker jobs",
)
