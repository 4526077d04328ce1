"""
HTTP API Client for the VRChat Avatar Gallery.

This module provides the HTTP transport to the VRChat API: the credential
login, TOTP verification, the authenticated user probe and avatar lookups.
Non-success statuses are raised as AuthError (401) or TransportError so the
components above can turn them into outcome values.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any
from urllib.parse import quote

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from gallery_client.config import DEFAULT_API_URL, DEFAULT_TIMEOUT, DEFAULT_USER_AGENT
from gallery_shared.exceptions import AuthError, TransportError, ErrorCode
from gallery_shared.interfaces import IAPIClient

logger = logging.getLogger(__name__)


def extract_error_message(body: str) -> Optional[str]:
    """
    Pull the human-readable message out of an error body.

    The API answers errors with ``{"error": {"message": "..."}}``; anything
    else yields None.
    """
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None

    if not isinstance(data, dict):
        return None
    error = data.get('error')
    if isinstance(error, dict):
        message = error.get('message')
        return str(message) if message else None
    if isinstance(error, str) and error:
        return error
    return None


class VRChatAPIClient(IAPIClient):
    """
    HTTP API client for the VRChat avatar and authentication endpoints.

    A single ClientSession is reused for every call so the cookies set during
    login survive into the two-factor verification.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.user_agent = user_agent

        self._session: Optional[ClientSession] = None

        logger.info(f"API client initialized for: {self.base_url}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': self.user_agent,
                    'Accept': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {}
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        form: Optional[Dict[str, str]] = None,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Make one HTTP request and decode the JSON body.

        Args:
            method: HTTP method (GET, POST)
            endpoint: API path relative to the base URL
            form: Form fields sent url-encoded in the body
            token: Bearer token, if the call is authenticated

        Returns:
            Decoded response object ({} for an empty body)

        Raises:
            AuthError: On HTTP 401
            TransportError: On any other failure
        """
        await self._ensure_session()

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._get_auth_headers(token)

        try:
            logger.debug(f"Making {method} request to {url}")

            async with self._session.request(
                method=method,
                url=url,
                data=form,
                headers=headers
            ) as response:
                body = await response.text()

                if 200 <= response.status < 300:
                    return self._decode_body(body, url)

                server_message = extract_error_message(body)
                if response.status == 401:
                    raise AuthError(
                        f"Unauthorized: {server_message or 'HTTP 401'}",
                        ErrorCode.AUTH_TOKEN_EXPIRED if token else ErrorCode.AUTH_INVALID_CREDENTIALS,
                        status=401,
                        server_message=server_message,
                        context={'url': url}
                    )

                raise TransportError(
                    f"Request failed ({response.status}): {server_message or 'no details'}",
                    ErrorCode.NETWORK_HTTP_STATUS,
                    status=response.status,
                    server_message=server_message,
                    context={'url': url}
                )

        except asyncio.TimeoutError as e:
            logger.warning(f"Request to {url} timed out")
            raise TransportError(
                "Request timed out",
                ErrorCode.NETWORK_TIMEOUT,
                context={'url': url},
                cause=e
            )
        except (ClientError, OSError, ValueError) as e:
            logger.warning(f"Network error calling {url}: {e}")
            raise TransportError(
                f"Network request failed: {e}",
                ErrorCode.NETWORK_CONNECTION_FAILED,
                context={'url': url},
                cause=e
            )

    def _decode_body(self, body: str, url: str) -> Dict[str, Any]:
        if not body.strip():
            return {}
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise TransportError(
                "Response body is not valid JSON",
                ErrorCode.NETWORK_INVALID_RESPONSE,
                context={'url': url},
                cause=e
            )
        if not isinstance(data, dict):
            raise TransportError(
                "Response body is not a JSON object",
                ErrorCode.NETWORK_INVALID_RESPONSE,
                context={'url': url}
            )
        return data

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        """
        Submit credentials.

        Returns:
            The login response; carries either ``token`` or a two-factor demand
        """
        logger.info(f"Logging in as {username}")
        return await self._make_request(
            'POST',
            '/auth/user/login',
            form={'username': username, 'password': password}
        )

    async def verify_two_factor(self, code: str) -> None:
        await self._make_request(
            'POST',
            '/auth/twofactorauth/totp/verify',
            form={'code': code}
        )

    async def get_current_user(self, token: str) -> Dict[str, Any]:
        return await self._make_request('GET', '/auth/user', token=token)

    async def get_avatar(self, avatar_id: str, token: Optional[str]) -> Dict[str, Any]:
        return await self._make_request(
            'GET',
            f"/avatars/{quote(avatar_id, safe='')}",
            token=token
        )
