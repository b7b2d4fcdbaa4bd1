"""
Date parsing helpers for request payloads.
"""
from datetime import datetime, timezone
from typing import Optional

from .exceptions import ValidationError


def parse_datetime(value, field: str = None) -> Optional[datetime]:
    """
    Parse an ISO 8601 string into a naive UTC datetime.

    Stored timestamps are naive UTC, so aware inputs are converted.
    """
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError(f'Invalid datetime: {value}', field)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
