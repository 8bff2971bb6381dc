"""
Utility helpers for the assessment builder

Label normalization, timestamps and id generation.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def normalize_label(text: Optional[str]) -> str:
    """
    Canonical form used for every label comparison.

    Trims surrounding whitespace and case-folds.

    Examples:
        >>> normalize_label('  Pain Level ')
        'pain level'
    """
    return (text or '').strip().casefold()


def labels_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive, whitespace-trimmed equality."""
    return normalize_label(a) == normalize_label(b)


def is_blank(text: Optional[str]) -> bool:
    return not (text or '').strip()


def find_duplicate_labels(labels: Iterable[str]) -> list:
    """
    Return labels that occur more than once (first spelling kept).

    Examples:
        >>> find_duplicate_labels(['Mild', 'mild ', 'Severe'])
        ['mild ']
    """
    seen = set()
    duplicates = []
    for label in labels:
        key = normalize_label(label)
        if key in seen:
            duplicates.append(label)
        seen.add(key)
    return duplicates


def utc_timestamp() -> str:
    """ISO 8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def generate_session_id(short=True):
    """
    Generate unique edit-session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def extract_id(payload: Any) -> Optional[str]:
    """
    Pull a canonical id out of a server record.

    Records carry their id either as {'id': ...} or {'ids': {'id': ...}}.

    Examples:
        >>> extract_id({'ids': {'id': 'q-1'}})
        'q-1'
        >>> extract_id({'id': 7})
        '7'
        >>> extract_id(None) is None
        True
    """
    if not isinstance(payload, dict):
        return None
    nested = payload.get('ids')
    if isinstance(nested, dict) and nested.get('id'):
        return str(nested['id'])
    if payload.get('id') not in (None, ''):
        return str(payload['id'])
    return None
