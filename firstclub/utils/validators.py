"""
Input validation helpers shared by services and the API layer.
"""
from datetime import datetime, timezone
from typing import Optional

from .exceptions import ValidationError

USER_ID_MIN_LENGTH = 3
USER_ID_MAX_LENGTH = 50


def validate_user_id(user_id) -> str:
    """
    Normalise and check a user id supplied by the identity layer.

    Raises:
        ValidationError: if missing or outside 3-50 characters
    """
    if user_id is None:
        raise ValidationError('user_id is required', 'user_id')
    user_id = str(user_id).strip()
    if not USER_ID_MIN_LENGTH <= len(user_id) <= USER_ID_MAX_LENGTH:
        raise ValidationError(
            f'user_id must be between {USER_ID_MIN_LENGTH} and {USER_ID_MAX_LENGTH} characters',
            'user_id'
        )
    return user_id


def validate_id(value, field: str) -> int:
    """Parse a positive integer id."""
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a positive integer', field)
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a positive integer', field)
    if parsed <= 0:
        raise ValidationError(f'{field} must be a positive integer', field)
    return parsed


def parse_timestamp(value, field: str = 'occurred_at') -> Optional[datetime]:
    """
    Parse an ISO-8601 string or datetime into naive UTC.

    Returns None for None.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f'{field} must be an ISO-8601 timestamp', field)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
