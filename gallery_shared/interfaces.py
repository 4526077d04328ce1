"""
Core interfaces for the VRChat Avatar Gallery.

This module defines the abstract interfaces the client components implement,
so collaborators (and test doubles) can be swapped without touching callers.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from .models import AvatarRecord, Credential, LoginOutcome


class IAPIClient(ABC):
    """Interface for the HTTP transport to the avatar service."""

    @abstractmethod
    async def login(self, username: str, password: str) -> Dict[str, Any]:
        """Submit credentials; returns the decoded login response."""
        pass

    @abstractmethod
    async def verify_two_factor(self, code: str) -> None:
        """Verify a TOTP code for the pending login."""
        pass

    @abstractmethod
    async def get_current_user(self, token: str) -> Dict[str, Any]:
        """Lightweight authenticated probe."""
        pass

    @abstractmethod
    async def get_avatar(self, avatar_id: str, token: Optional[str]) -> Dict[str, Any]:
        """Fetch the raw avatar payload."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        pass


class ICredentialStore(ABC):
    """Interface for the encrypted, per-user login persistence."""

    @abstractmethod
    def load(self) -> Optional[Credential]:
        """Load the saved credential, or None if absent or unreadable."""
        pass

    @abstractmethod
    def save(self, credential: Credential) -> bool:
        """Persist the credential, best effort."""
        pass

    @abstractmethod
    def clear(self) -> bool:
        """Remove the saved credential."""
        pass

    @abstractmethod
    def encrypt_password(self, password: str) -> bytes:
        """Encrypt a password for the current user context."""
        pass

    @abstractmethod
    def decrypt_password(self, encrypted: bytes) -> str:
        """Decrypt a password encrypted for the current user context."""
        pass


class ISessionClient(ABC):
    """Interface for the component owning the bearer token."""

    @property
    @abstractmethod
    def token(self) -> Optional[str]:
        """Current bearer token."""
        pass

    @property
    @abstractmethod
    def can_refresh(self) -> bool:
        """True when a stored credential allows a silent refresh."""
        pass

    @abstractmethod
    async def login(self, username: str, password: str, remember: bool = False) -> LoginOutcome:
        """Interactive login."""
        pass

    @abstractmethod
    async def refresh(self) -> bool:
        """Silently re-authenticate with the stored credential."""
        pass


class IAvatarFetcher(ABC):
    """Interface for fetching one avatar record."""

    @abstractmethod
    async def fetch(self, avatar_id: str, session: ISessionClient) -> Optional[AvatarRecord]:
        """Fetch an avatar; never raises."""
        pass
