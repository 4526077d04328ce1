"""
Core data models for the VRChat Avatar Gallery.

This module defines the avatar record, the persisted login credential, the
session states and the tagged outcome values returned to the UI layer.
"""

import base64
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Iterator
from enum import Enum

from gallery_shared.exceptions import ErrorCode


AVATAR_PAGE_URL = "https://vrchat.com/home/avatar/{avatar_id}"


class SessionState(Enum):
    """Lifecycle of the authenticated session."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    TWO_FACTOR_PENDING = "two_factor_pending"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class LoginStatus(Enum):
    """Result of a login or two-factor attempt."""
    SUCCESS = "success"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    FAILURE = "failure"


class OutcomeKind(Enum):
    """Tag carried by outcome values returned from core operations."""
    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    AUTH_ERROR = "auth_error"
    TRANSPORT_ERROR = "transport_error"


def lookup_key(data: Dict[str, Any], key: str) -> Any:
    """Case-insensitive dictionary lookup."""
    if key in data:
        return data[key]
    lowered = key.lower()
    for candidate, value in data.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return value
    return None


@dataclass(frozen=True)
class AvatarRecord:
    """Metadata of a single avatar as returned by the API."""
    id: str
    name: str = ""
    image_url: str = ""
    author_name: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Avatar ID cannot be empty")

    @property
    def page_url(self) -> str:
        """Public web page of the avatar."""
        return AVATAR_PAGE_URL.format(avatar_id=self.id)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AvatarRecord":
        """
        Build a record from an API or cache payload.

        Keys are matched case-insensitively; missing string fields default to "".

        Raises:
            ValueError: If the payload is not an object or has no id
        """
        if not isinstance(data, dict):
            raise ValueError("Avatar payload must be a JSON object")

        def text(key: str) -> str:
            value = lookup_key(data, key)
            return str(value) if value is not None else ""

        return cls(
            id=text('id'),
            name=text('name'),
            image_url=text('imageUrl'),
            author_name=text('authorName'),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'id': self.id,
            'name': self.name,
            'imageUrl': self.image_url,
            'authorName': self.author_name,
        }


@dataclass
class Credential:
    """Saved login. The password is only ever held encrypted."""
    username: str
    encrypted_password: bytes
    two_factor_secret: Optional[str] = None
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'username': self.username,
            'encryptedPassword': base64.b64encode(self.encrypted_password).decode('ascii'),
            'twoFactorSecret': self.two_factor_secret,
            'token': self.token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        """
        Rebuild a credential from its serialized form.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Credential payload must be a JSON object")

        username = lookup_key(data, 'username')
        encrypted = lookup_key(data, 'encryptedPassword')
        if not username or not encrypted:
            raise ValueError("Credential requires username and encryptedPassword")

        return cls(
            username=str(username),
            encrypted_password=base64.b64decode(encrypted, validate=True),
            two_factor_secret=lookup_key(data, 'twoFactorSecret'),
            token=lookup_key(data, 'token'),
        )


@dataclass(frozen=True)
class LoginOutcome:
    """Outcome of login, two-factor submission or silent refresh."""
    status: LoginStatus
    token: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == LoginStatus.SUCCESS

    @classmethod
    def success(cls, token: str) -> "LoginOutcome":
        return cls(status=LoginStatus.SUCCESS, token=token)

    @classmethod
    def two_factor_required(cls) -> "LoginOutcome":
        return cls(status=LoginStatus.TWO_FACTOR_REQUIRED, reason="2FA code required")

    @classmethod
    def failure(cls, reason: str) -> "LoginOutcome":
        return cls(status=LoginStatus.FAILURE, reason=reason)


@dataclass(frozen=True)
class AddOutcome:
    """Outcome of adding an avatar to the tracked list."""
    kind: OutcomeKind
    record: Optional[AvatarRecord] = None
    message: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


@dataclass
class RefreshSummary:
    """
    Result of a full refresh.

    Unpacks as ``records, ok_count, fail_count``.
    """
    records: List[AvatarRecord] = field(default_factory=list)
    ok_count: int = 0
    fail_count: int = 0
    from_cache: bool = False

    def __iter__(self) -> Iterator[Any]:
        return iter((self.records, self.ok_count, self.fail_count))

    @property
    def message(self) -> str:
        return f"Refresh complete - {self.ok_count} OK, {self.fail_count} failed."
