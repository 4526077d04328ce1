"""
Avatar metadata fetching.

Fetches one avatar by ID with the session's token. An expired token triggers
at most one silent refresh and one retry; every failure is reported as None.
"""

import logging
from typing import Optional

from gallery_shared.exceptions import AuthError, GalleryError, TransportError, ErrorCode
from gallery_shared.interfaces import IAPIClient, IAvatarFetcher, ISessionClient
from gallery_shared.logging_config import record_error
from gallery_shared.models import AvatarRecord

logger = logging.getLogger(__name__)


class AvatarFetcher(IAvatarFetcher):
    """
    Fetches avatar records through the API client.

    Bound to a session it is also usable as the ``fetch_fn`` the repository
    expects: ``await fetcher(avatar_id)``.
    """

    def __init__(self, api_client: IAPIClient, session: Optional[ISessionClient] = None):
        self.api_client = api_client
        self.session = session

    async def __call__(self, avatar_id: str) -> Optional[AvatarRecord]:
        return await self.fetch(avatar_id, self.session)

    async def _fetch_once(self, avatar_id: str, token: Optional[str]) -> AvatarRecord:
        payload = await self.api_client.get_avatar(avatar_id, token)
        try:
            return AvatarRecord.from_api(payload)
        except ValueError as e:
            raise TransportError(
                f"Malformed avatar payload for {avatar_id}: {e}",
                ErrorCode.NETWORK_INVALID_RESPONSE,
                cause=e
            )

    async def fetch(self, avatar_id: str, session: Optional[ISessionClient] = None) -> Optional[AvatarRecord]:
        """
        Fetch one avatar.

        Args:
            avatar_id: Validated avatar ID
            session: Session supplying the token; defaults to the bound session

        Returns:
            The avatar record, or None on any failure
        """
        session = session or self.session
        if session is None:
            logger.error("Cannot fetch avatar without a session")
            return None

        try:
            try:
                return await self._fetch_once(avatar_id, session.token)
            except AuthError:
                if not session.can_refresh:
                    logger.warning(f"Unauthorized fetching {avatar_id} and no saved login to refresh with")
                    return None

                logger.info(f"Token rejected while fetching {avatar_id}, refreshing session")
                if not await session.refresh():
                    return None
                return await self._fetch_once(avatar_id, session.token)

        except GalleryError as e:
            record_error(logger, e, resource_id=avatar_id, level=logging.WARNING)
            return None
        except Exception as e:
            record_error(logger, e, context={'avatar_id': avatar_id}, resource_id=avatar_id)
            return None
