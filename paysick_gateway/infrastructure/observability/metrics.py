"""Prometheus metrics for risk decisions, marketplace activity and lender webhooks"""

from prometheus_client import Counter, Histogram

# Risk engine metrics
risk_decision_counter = Counter(
    "paysick_risk_decision_total",
    "Risk assessments by decision",
    ["outcome"],  # approve | review | decline
)

pd_histogram = Histogram(
    "paysick_risk_pd",
    "Probability of default per assessment",
    buckets=[0.01, 0.02, 0.03, 0.05, 0.08, 0.10, 0.15],
)

data_source_fallback_counter = Counter(
    "data_source_fallback_total",
    "Scoring inputs replaced by neutral defaults after a data source failure",
    ["source"],
)

# Marketplace metrics
applications_submitted_counter = Counter(
    "paysick_applications_submitted_total",
    "Applications submitted to the marketplace",
)

offers_created_counter = Counter(
    "paysick_offers_created_total",
    "Lender offers created or refreshed",
    ["lender_type"],  # PAYSICK_BALANCE_SHEET | BANK | ALTERNATIVE
)

offers_accepted_counter = Counter(
    "paysick_offers_accepted_total",
    "Offers accepted by patients",
)

# Webhook metrics
webhook_latency_histogram = Histogram(
    "webhook_latency_seconds",
    "Lender webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

webhook_failure_counter = Counter(
    "webhook_failures_total",
    "Failed lender webhook deliveries",
    ["lender"],
)

webhook_signature_bypass_counter = Counter(
    "webhook_signature_bypass_total",
    "Lender webhooks accepted with a missing or invalid signature outside production",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_assessment(decision: str, pd_score: float) -> None:
    """Record decision mix and PD distribution for model monitoring"""
    risk_decision_counter.labels(outcome=decision).inc()
    pd_histogram.observe(pd_score)


def record_offer_created(lender_type: str) -> None:
    offers_created_counter.labels(lender_type=lender_type).inc()
