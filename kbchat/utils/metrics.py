"""
Metrics tracking utilities
"""
from prometheus_client import Counter, Histogram, Gauge
import structlog

logger = structlog.get_logger()

# Define metrics
request_counter = Counter(
    'kbchat_requests_total',
    'Total number of requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'kbchat_request_duration_seconds',
    'Request duration',
    ['method', 'endpoint']
)

active_connections = Gauge(
    'kbchat_active_connections',
    'Number of active connections'
)

turn_counter = Counter(
    'kbchat_turns_total',
    'Chat turns by outcome',
    ['outcome']
)

first_token_latency = Histogram(
    'kbchat_first_token_latency_seconds',
    'Time from turn start to first upstream delta',
    buckets=[0.1, 0.5, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0, 30.0]
)

frames_skipped = Counter(
    'kbchat_sse_frames_skipped_total',
    'SSE data frames dropped because they were not valid JSON'
)

relay_errors = Counter(
    'kbchat_relay_errors_total',
    'Transport failures talking to the backend',
    ['kind']
)

proxy_requests = Counter(
    'kbchat_proxy_requests_total',
    'Proxied requests',
    ['target', 'status']
)


def track_turn(outcome: str, turn_id: str = ""):
    """Track a finished chat turn"""
    turn_counter.labels(outcome=outcome).inc()
    logger.info(
        "Turn finished",
        turn_id=turn_id,
        outcome=outcome
    )


def track_first_token(latency: float):
    """Track time to first token"""
    first_token_latency.observe(latency)
