"""Observability package initialization."""

from .metrics import (
    record_session_created,
    record_session_closed,
    record_connection_opened,
    record_connection_failed,
    record_recovery,
)

__all__ = [
    'record_session_created',
    'record_session_closed',
    'record_connection_opened',
    'record_connection_failed',
    'record_recovery',
]
