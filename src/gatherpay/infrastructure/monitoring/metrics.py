# src/gatherpay/infrastructure/monitoring/metrics.py
"""Prometheus instruments shared by the services and the API."""

from prometheus_client import Counter, Histogram

REQUESTS = Counter("gp_requests_total", "Total API requests", ["method", "status"])
LATENCY = Histogram("gp_request_latency_seconds", "Request latency")

MATCH_DECISIONS = Counter(
    "gp_match_decisions_total", "Matching decisions by source and verdict", ["source", "verdict"]
)
MATCH_LATENCY = Histogram("gp_match_latency_seconds", "Time spent producing a matching decision")

RESERVATIONS_EXPIRED = Counter("gp_reservations_expired_total", "Reservations expired by the payment window")
PAYMENT_OUTCOMES = Counter("gp_payment_outcomes_total", "Payment intent outcomes", ["outcome"])
LEDGER_WEBHOOKS = Counter("gp_ledger_webhooks_total", "Ledger webhook deliveries", ["event_type", "outcome"])
ESCROW_RELEASES = Counter("gp_escrow_release_attempts_total", "Escrow release attempts", ["outcome"])
REFUNDS = Counter("gp_refunds_total", "Refund request outcomes", ["outcome"])
