"""
Rolling system message log.

Every user-visible outcome (validation failures, backend rejections,
network errors, successes) is appended here as a timestamped,
severity-tagged record. The log is a plain list of dicts so it can live
inside the session snapshot.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from assessment_builder.utils.helpers import utc_timestamp

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


def build_message(
    severity: Severity,
    text: str,
    stage: Optional[str] = None,
    timestamp: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build a message record.

    Args:
        severity: Severity tag
        text: Human-readable message
        stage: Workflow stage the message refers to, if any
        timestamp: ISO 8601 timestamp (defaults to now)

    Returns:
        dict: {'severity', 'message', 'stage', 'timestamp'}
    """
    return {
        'severity': Severity(severity).value,
        'message': text,
        'stage': stage,
        'timestamp': timestamp or utc_timestamp(),
    }


def append_message(
    messages: List[Dict[str, Any]],
    severity: Severity,
    text: str,
    stage: Optional[str] = None,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """
    Return a new log with the message appended, keeping the newest `limit`.

    The input list is not modified.
    """
    severity = Severity(severity)
    logger.log(_LOG_LEVELS[severity], f"[{severity.value}] {text}" + (f" (stage={stage})" if stage else ""))
    updated = list(messages) + [build_message(severity, text, stage)]
    if limit > 0 and len(updated) > limit:
        updated = updated[-limit:]
    return updated


def dismiss_message(messages: List[Dict[str, Any]], index: int) -> List[Dict[str, Any]]:
    """Return a new log without the message at `index` (no-op if out of range)."""
    if index < 0 or index >= len(messages):
        return list(messages)
    return list(messages[:index]) + list(messages[index + 1:])


def latest(messages: List[Dict[str, Any]], severity: Optional[Severity] = None) -> Optional[Dict[str, Any]]:
    """Most recent message, optionally filtered by severity."""
    for message in reversed(messages):
        if severity is None or message['severity'] == Severity(severity).value:
            return message
    return None
