"""
Avatar identifier validation.

An avatar ID is ``avtr_`` (any case) followed by a UUID written with or
without hyphens.
"""

import string
import uuid

from gallery_shared.exceptions import ValidationError, ErrorCode

AVATAR_ID_PREFIX = 'avtr_'
# prefix + 32 hex digits
MIN_AVATAR_ID_LENGTH = len(AVATAR_ID_PREFIX) + 32
_HEX_DIGITS = frozenset(string.hexdigits)


def _normalized_uuid_part(value: str) -> str:
    suffix = value[len(AVATAR_ID_PREFIX):].strip()
    return ''.join(c for c in suffix if not c.isspace() and c != '-')


def is_valid_avatar_id(value: str) -> bool:
    """
    Check whether a string is a well-formed avatar ID.

    The suffix must be exactly 32 hex digits once whitespace and hyphens are
    stripped, and must also parse as a UUID.
    """
    if not isinstance(value, str) or not value.strip():
        return False
    if not value.lower().startswith(AVATAR_ID_PREFIX):
        return False
    if len(value) < MIN_AVATAR_ID_LENGTH:
        return False

    digits = _normalized_uuid_part(value)
    if len(digits) != 32 or not all(c in _HEX_DIGITS for c in digits):
        return False

    try:
        uuid.UUID(hex=digits)
    except ValueError:
        return False
    return True


def validate_avatar_id(value: str) -> str:
    """
    Validate an avatar ID.

    Args:
        value: Raw user or file input

    Returns:
        The trimmed avatar ID

    Raises:
        ValidationError: If the ID is malformed
    """
    candidate = value.strip() if isinstance(value, str) else value
    if not is_valid_avatar_id(candidate):
        raise ValidationError(
            "Invalid avatar ID. Must start with 'avtr_' followed by a UUID, "
            "e.g. avtr_5f2a3b4c-1d2e-3f4a-5b6c-7d8e9f0a1b2c",
            field_name="avatar_id",
            error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
            context={'provided_value': value}
        )
    return candidate
