from prometheus_client import Counter, Histogram, start_http_server
from .config import settings
from .utils.logging import setup_logger

logger = setup_logger(__name__)

# Task metrics
task_total = Counter(
    'celery_task_total',
    'Total number of tasks processed',
    ['task_name', 'status']
)

task_duration = Histogram(
    'celery_task_duration_seconds',
    'Task processing duration in seconds',
    ['task_name']
)

# HTTP metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# Challenge lifecycle metrics
challenge_transitions_total = Counter(
    'challenge_transitions_total',
    'Challenge status transitions attempted by the engine',
    ['to_status', 'result']
)

# Settlement metrics
settlement_attempts_total = Counter(
    'settlement_attempts_total',
    'Penalty charge attempts sent to the payment provider',
    ['kind', 'status']
)

terminal_settlement_failures_total = Counter(
    'terminal_settlement_failures_total',
    'Challenges settled with an unresolved payment after exhausting retries'
)

payment_provider_duration = Histogram(
    'payment_provider_duration_seconds',
    'Payment provider request duration in seconds',
    ['operation']
)

# Notification metrics
notifications_total = Counter(
    'notifications_enqueued_total',
    'Notification requests enqueued',
    ['kind', 'status']
)

def start_metrics_server(port: int = None):
    """Start the Prometheus metrics server."""
    port = port or settings.metrics_port
    try:
        start_http_server(port)
        logger.info(f"Started Prometheus metrics server on port {port}")
    except Exception as e:
        logger.error(f"Failed to start metrics server: {e}")
        raise
