"""
Registro: system log service.

Records operator-relevant events and exceptions into SystemLog.
Use log_event() for explicit entries and log_exception() inside except blocks.
"""

import logging
import traceback
from typing import Optional

from django.db import DatabaseError

from bingo.models import SystemLog

logger = logging.getLogger(__name__)


def log_event(
    level: str,
    category: str,
    message: str,
    *,
    metadata: Optional[dict] = None,
) -> Optional[SystemLog]:
    """
    Create a SystemLog entry. Levels: INFO, WARNING, ERROR, CRITICAL.
    Categories: REGISTRATION, INVENTORY, CAMPAIGN, TRANSPORT, CLASSIFIER, SYSTEM.
    """
    try:
        return SystemLog.objects.create(
            level=level,
            category=category,
            message=(message or '')[:512],
            metadata=metadata or {},
        )
    except DatabaseError as e:
        # Never let audit logging break the caller; keep the trace in the Python log.
        logger.exception("log_event failed: %s", e)
        return None


def _traceback_to_dict(exc: BaseException) -> dict:
    tb_lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return {
        'type': type(exc).__name__,
        'message': str(exc)[:2000],
        'traceback': ''.join(tb_lines)[:8000],
    }


def log_exception(
    exc: BaseException,
    category: str,
    message: str,
    *,
    metadata: Optional[dict] = None,
) -> Optional[SystemLog]:
    """Log an exception with its traceback to SystemLog."""
    data = dict(metadata or {})
    data['exception'] = _traceback_to_dict(exc)
    return log_event(
        SystemLog.Level.ERROR,
        category,
        message[:512],
        metadata=data,
    )
