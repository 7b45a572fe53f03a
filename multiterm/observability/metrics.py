"""
Observability Module - Prometheus Metrics.

Process-wide metrics for the session core. Hosts expose them through
their own scrape endpoint (prometheus_client.start_http_server or an
application route); this module only records.

Metrics Collected:
- Session metrics (created, closed, currently registered)
- Socket metrics (connect attempts, opens, failures, open sockets)
- Reconnection metrics (retries scheduled, duplicate connects suppressed)
- Heartbeat round-trip times
- Catalog REST requests
- Start-up recovery outcomes

Author: Backend Lead Developer
"""

from prometheus_client import Counter, Gauge, Histogram, Info
import time
from functools import wraps

from .. import __version__

# Session Metrics
sessions_created_total = Counter(
    'multiterm_sessions_created_total',
    'Total number of terminal sessions created',
    ['protocol']
)

sessions_closed_total = Counter(
    'multiterm_sessions_closed_total',
    'Total number of terminal sessions closed'
)

sessions_active = Gauge(
    'multiterm_sessions_active',
    'Number of sessions currently in the registry'
)

# Socket Metrics
connect_attempts_total = Counter(
    'multiterm_connect_attempts_total',
    'Total number of socket connect attempts',
    ['protocol']
)

connections_opened_total = Counter(
    'multiterm_connections_opened_total',
    'Total number of sockets successfully opened',
    ['protocol']
)

connection_failures_total = Counter(
    'multiterm_connection_failures_total',
    'Total number of sessions that ended FAILED',
    ['reason']
)

connect_duration_seconds = Histogram(
    'multiterm_connect_duration_seconds',
    'Time from connect attempt to open socket in seconds',
    buckets=(.01, .05, .1, .25, .5, 1.0, 2.5, 5.0)
)

open_sockets = Gauge(
    'multiterm_open_sockets',
    'Number of currently open sockets'
)

messages_total = Counter(
    'multiterm_messages_total',
    'Total number of socket messages',
    ['direction']
)

# Reconnection Metrics
retries_scheduled_total = Counter(
    'multiterm_retries_scheduled_total',
    'Total number of reconnection retries scheduled'
)

duplicate_connects_suppressed_total = Counter(
    'multiterm_duplicate_connects_suppressed_total',
    'Total number of connect attempts suppressed by the lock table'
)

# Heartbeat Metrics
heartbeat_rtt_seconds = Histogram(
    'multiterm_heartbeat_rtt_seconds',
    'Heartbeat round-trip time in seconds',
    buckets=(.005, .01, .025, .05, .1, .25, .5, 1.0, 2.5)
)

# Catalog Metrics
catalog_requests_total = Counter(
    'multiterm_catalog_requests_total',
    'Total number of connection catalog requests',
    ['operation']
)

catalog_errors_total = Counter(
    'multiterm_catalog_errors_total',
    'Total number of failed connection catalog requests',
    ['operation']
)

catalog_latency_seconds = Histogram(
    'multiterm_catalog_latency_seconds',
    'Connection catalog request latency in seconds',
    buckets=(.01, .025, .05, .1, .25, .5, 1.0, 2.5)
)

# Recovery Metrics
recoveries_total = Counter(
    'multiterm_recoveries_total',
    'Start-up recovery runs by outcome',
    ['outcome']
)

sessions_restored_total = Counter(
    'multiterm_sessions_restored_total',
    'Total number of sessions restored from a snapshot'
)

# Service Info
service_info = Info(
    'multiterm',
    'Multi-session terminal core information'
)

service_info.info({
    'version': __version__,
})


# Metric Decorators

def track_catalog_request(operation_name: str):
    """Decorator to track catalog REST calls."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            catalog_requests_total.labels(operation=operation_name).inc()
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                catalog_errors_total.labels(operation=operation_name).inc()
                raise
            catalog_latency_seconds.observe(time.time() - start_time)
            return result
        return wrapper
    return decorator


# Helper Functions

def record_session_created(protocol: str):
    """Record session creation."""
    sessions_created_total.labels(protocol=protocol).inc()


def record_session_closed():
    sessions_closed_total.inc()


def update_active_sessions(count: int):
    sessions_active.set(count)


def record_connect_attempt(protocol: str):
    connect_attempts_total.labels(protocol=protocol).inc()


def record_connection_opened(protocol: str, duration_seconds: float):
    """Record a socket that reached OPEN."""
    connections_opened_total.labels(protocol=protocol).inc()
    connect_duration_seconds.observe(duration_seconds)


def record_connection_failed(reason: str):
    connection_failures_total.labels(reason=reason).inc()


def update_open_sockets(count: int):
    open_sockets.set(count)


def record_message(direction: str):
    messages_total.labels(direction=direction).inc()


def record_retry_scheduled():
    retries_scheduled_total.inc()


def record_duplicate_suppressed():
    duplicate_connects_suppressed_total.inc()


def observe_heartbeat_rtt(rtt_seconds: float):
    heartbeat_rtt_seconds.observe(rtt_seconds)


def record_recovery(outcome: str, restored: int):
    """Record one start-up recovery run."""
    recoveries_total.labels(outcome=outcome).inc()
    if restored:
        sessions_restored_total.inc(restored)


__all__ = [
    # Metrics
    'sessions_created_total',
    'sessions_active',
    'connect_attempts_total',
    'open_sockets',

    # Decorators
    'track_catalog_request',

    # Helper Functions
    'record_session_created',
    'record_session_closed',
    'update_active_sessions',
    'record_connect_attempt',
    'record_connection_opened',
    'record_connection_failed',
    'update_open_sockets',
    'record_message',
    'record_retry_scheduled',
    'record_duplicate_suppressed',
    'observe_heartbeat_rtt',
    'record_recovery',
]
