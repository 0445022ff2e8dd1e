# metrics.py
from prometheus_client import Counter, Histogram

BOOKING_OUTCOMES = Counter(
    "booking_outcome_total",
    "Booking operations by outcome (accepted or error kind)",
    ["operation", "outcome"],
)
BOOKING_CONFLICT_RETRIES = Counter(
    "booking_conflict_retries_total",
    "Units of work retried after a uniqueness conflict",
    ["operation"],
)
BOOKING_LATENCY = Histogram(
    "booking_operation_latency_seconds",
    "Booking operation latency in seconds",
    ["operation"],
)
