# tixpay/metrics.py
from prometheus_client import Counter, Gauge, Histogram, make_asgi_app

# Checkout
checkout_sessions_total = Counter(
    "checkout_sessions_total", "Checkout sessions created", ["mode"],
)
checkout_errors = Counter("checkout_errors_total", "Checkout errors", ["type"])

# Webhooks
webhook_events_total = Counter(
    "webhook_events_total", "Gateway webhook events logged", ["event"],
)
webhook_signature_failures = Counter(
    "webhook_signature_failures_total", "Webhooks rejected for a bad signature",
)

# Issuance
tickets_issued_total = Counter("tickets_issued_total", "Tickets minted")
issuance_idempotency_hits = Counter(
    "issuance_idempotency_hits_total",
    "Issuance steps skipped because they already happened for the order",
    ["stage"],
)
issuance_failures = Counter("issuance_failures_total", "Issuance task failures", ["type"])
notification_failures = Counter(
    "notification_failures_total", "Emails that could not be sent", ["kind"],
)
issuance_queue_depth = Gauge("issuance_queue_depth", "Issuance tasks waiting in the queue")

# Latency
issuance_latency = Histogram("issuance_latency_seconds", "Issuance task latency in seconds")
gateway_latency = Histogram(
    "gateway_request_latency_seconds", "Gateway request latency in seconds", ["operation"],
)

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
