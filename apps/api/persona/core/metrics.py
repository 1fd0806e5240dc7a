"""Prometheus series exported on ``/metrics``."""

from prometheus_client import Counter, Histogram

# --- retrieval ---
retrieval_source_calls_total = Counter(
    "retrieval_source_calls_total",
    "Knowledge source lookups by outcome",
    ["source", "status"],  # success | empty | timeout | error
)
retrieval_duration_seconds = Histogram(
    "retrieval_duration_seconds",
    "Wall time of a fan-out retrieval including the merge",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)
retrieval_confidence_total = Counter(
    "retrieval_confidence_total",
    "Merged retrieval results grouped by confidence",
    ["level"],
)

# --- conversation web-search cache ---
cache_hits_total = Counter(
    "cache_hits_total",
    "Conversation cache lookups that found an entry",
    ["cache_backend", "cache_type"],
)
cache_misses_total = Counter(
    "cache_misses_total",
    "Conversation cache lookups that found nothing",
    ["cache_backend", "cache_type"],
)

# --- outbound HTTP ---
api_calls_total = Counter(
    "api_calls_total",
    "Outbound requests to Exa, Mem0 and fetched pages",
    ["api_name", "status"],
)
api_call_duration_seconds = Histogram(
    "api_call_duration_seconds",
    "Outbound request latency",
    ["api_name"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)
circuit_breaker_state_changes_total = Counter(
    "circuit_breaker_state_changes_total",
    "Breaker transitions between closed, open and half-open",
    ["api_name", "from_state", "to_state"],
)
circuit_breaker_open_total = Counter(
    "circuit_breaker_open_total",
    "Times a breaker entered the open state",
    ["api_name"],
)
rate_limiter_throttled_total = Counter(
    "rate_limiter_throttled_total",
    "Outbound requests delayed by the token bucket",
    ["api_name"],
)

# --- generation ---
completion_requests_total = Counter(
    "completion_requests_total",
    "Completion sessions by terminal loop state",
    ["status"],  # finished | errored
)
loop_steps_total = Counter(
    "loop_steps_total",
    "Model calls made by the tool loop",
    ["mode"],  # default | deep
)
loop_outcomes_total = Counter(
    "loop_outcomes_total",
    "Tool loop terminations",
    ["state", "finish_reason"],
)
tool_calls_total = Counter(
    "tool_calls_total",
    "Tool calls executed for the model",
    ["tool", "status"],
)
stream_writes_skipped_total = Counter(
    "stream_writes_skipped_total",
    "Stream events not written because the client had disconnected",
)
persistence_failures_total = Counter(
    "persistence_failures_total",
    "Post-stream writes (messages, titles) that failed",
    ["operation"],
)
