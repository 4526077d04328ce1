"""
Gallery service for the VRChat Avatar Gallery client.

This module wires the API client, session, fetcher and repository together
and exposes the operations a UI drives: silent start-up from a saved login,
interactive login, loading the gallery, full refresh, add and remove.
"""

import logging
import os
from typing import Optional

from gallery_client.api_client import VRChatAPIClient
from gallery_client.auth.credential_store import CredentialStore
from gallery_client.auth.session_client import SessionClient
from gallery_client.avatar_fetcher import AvatarFetcher
from gallery_client.avatar_repository import AvatarRepository, ProgressFn
from gallery_client.config import GalleryConfiguration
from gallery_shared.interfaces import IAPIClient, ICredentialStore
from gallery_shared.logging_config import setup_logging, LogLevel, LogFormat
from gallery_shared.models import AddOutcome, LoginOutcome, RefreshSummary

logger = logging.getLogger(__name__)


def configure_logging(config: GalleryConfiguration) -> None:
    """Set up logging from the configuration; falls back to basic logging."""
    try:
        log_file = config.get_log_file()
        audit_file = None
        if log_file:
            audit_file = os.path.join(os.path.dirname(log_file), "gallery-audit.log")

        setup_logging(
            log_level=LogLevel(config.get_log_level()),
            log_format=LogFormat(config.get_log_format()),
            log_file=log_file,
            enable_audit=True,
            audit_file=audit_file
        )
        logger.info("Logging configured")

    except Exception as e:
        logging.basicConfig(level=logging.INFO)
        logger.warning(f"Failed to set up logging, using basic logging: {e}")


class GalleryService:
    """
    Facade over the gallery components for a UI.

    Collaborators are built from the configuration unless passed in.
    """

    def __init__(
        self,
        config: Optional[GalleryConfiguration] = None,
        api_client: Optional[IAPIClient] = None,
        credential_store: Optional[ICredentialStore] = None,
        repository: Optional[AvatarRepository] = None
    ):
        self.config = config or GalleryConfiguration()

        self.api_client = api_client or VRChatAPIClient(
            base_url=self.config.get_api_url(),
            timeout=self.config.get_timeout(),
            user_agent=self.config.get_user_agent()
        )
        self.credential_store = credential_store or CredentialStore(self.config.get_credential_file())
        self.session = SessionClient(self.api_client, self.credential_store)
        self.fetcher = AvatarFetcher(self.api_client, self.session)
        self.repository = repository or AvatarRepository(
            self.config.get_ids_file(),
            self.config.get_cache_file()
        )

        self._refreshing = False

        logger.info("Gallery service initialized")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    async def bootstrap(self) -> bool:
        """
        Resume a saved login without prompting.

        Returns:
            True if the saved token was accepted; otherwise the UI should ask
            for credentials (a saved credential still enables silent refresh)
        """
        credential = self.credential_store.load()
        if credential is None:
            logger.info("No saved login, interactive login required")
            return False

        self.session.set_credential(credential)
        if await self.session.validate_existing_token(credential.token):
            logger.info(f"Resumed saved session for {credential.username}")
            return True

        logger.info(f"Saved token for {credential.username} is no longer valid")
        return False

    async def login(self, username: str, password: str, remember: bool = False) -> LoginOutcome:
        return await self.session.login(username, password, remember)

    async def submit_two_factor(self, code: str) -> LoginOutcome:
        return await self.session.submit_two_factor(code)

    def logout(self) -> None:
        self.session.logout()

    async def load_gallery(self, progress: Optional[ProgressFn] = None) -> RefreshSummary:
        """Show the cached gallery, fetching everything when there is no usable cache."""
        return await self.repository.load_cache_or_refresh(self.fetcher, progress)

    async def refresh_all(self, progress: Optional[ProgressFn] = None) -> Optional[RefreshSummary]:
        """
        Re-fetch every tracked avatar.

        Returns:
            The summary, or None if a refresh is already running
        """
        if self._refreshing:
            logger.info("Refresh already running, ignoring request")
            return None

        self._refreshing = True
        try:
            ids = self.repository.load_tracked_ids()
            return await self.repository.refresh_all(ids, self.fetcher, progress)
        finally:
            self._refreshing = False

    async def add_avatar(self, avatar_id: str) -> AddOutcome:
        return await self.repository.add(avatar_id, self.fetcher)

    def remove_avatar(self, avatar_id: str) -> bool:
        return self.repository.remove(avatar_id)

    async def close(self) -> None:
        """Close the HTTP session."""
        await self.api_client.close()
        logger.info("Gallery service closed")
