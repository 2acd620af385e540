"""
Prometheus metrics definitions for chatengine.

Naming conventions: snake_case, chatengine_ prefix.
"""

from prometheus_client import Counter, Histogram

# ==============================================================================
# COUNTERS - Monotonically increasing values
# ==============================================================================

exchanges_total = Counter(
    "chatengine_exchanges_total",
    "Completed or failed conversation exchanges",
    ["backend", "status"],
    # status: success, failed, rejected, cancelled
)

retries_total = Counter(
    "chatengine_retries_total",
    "Retry attempts scheduled after retryable failures",
    ["status"],
    # status: HTTP status that triggered the retry (429, 500, 503, ...)
)

retry_exhausted_total = Counter(
    "chatengine_retry_exhausted_total",
    "Retry budgets exhausted (converted to rate-limit failures)",
)

stream_frames_total = Counter(
    "chatengine_stream_frames_total",
    "Stream frames processed by the decoder",
    ["framing", "outcome"],
    # outcome: event, ignored, malformed, terminal
)

tokens_requested_total = Counter(
    "chatengine_tokens_requested_total",
    "Tokens sent (windowed history) and requested (response budget)",
    ["backend", "direction"],
    # direction: prompt, completion_budget
)

# ==============================================================================
# HISTOGRAMS - Latency distributions
# ==============================================================================

exchange_duration_seconds = Histogram(
    "chatengine_exchange_duration_seconds",
    "Wall-clock duration of an exchange, request to end of stream",
    ["backend"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

retry_delay_seconds = Histogram(
    "chatengine_retry_delay_seconds",
    "Backoff delay slept before a retry",
    buckets=[0.0, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)
