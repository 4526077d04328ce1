"""
Session management for the VRChat Avatar Gallery client.

This module owns the bearer token: interactive login with the optional TOTP
step, validation of a previously saved token, and silent refresh by logging in
again with the saved, encrypted credential.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, List

from gallery_shared.exceptions import AuthError, ErrorCode, GalleryError, ValidationError
from gallery_shared.interfaces import IAPIClient, ICredentialStore, ISessionClient
from gallery_shared.logging_config import AuditLogger, record_error
from gallery_shared.models import Credential, LoginOutcome, LoginStatus, SessionState, lookup_key

logger = logging.getLogger(__name__)


@dataclass
class _PendingLogin:
    username: str
    password: str
    remember: bool


def _requires_two_factor(response: Dict[str, Any]) -> bool:
    # older responses use a boolean flag, newer ones list the accepted methods
    return bool(lookup_key(response, 'requiresTwoFactor') or lookup_key(response, 'requiresTwoFactorAuth'))


def _token_from(response: Dict[str, Any]) -> Optional[str]:
    token = lookup_key(response, 'token')
    return str(token) if token else None


class SessionClient(ISessionClient):
    """
    Holds the current bearer token and the optional saved credential.

    Login, two-factor submission and refresh are serialised with a lock so a
    refresh triggered by one request cannot interleave with another login.
    """

    def __init__(
        self,
        api_client: IAPIClient,
        credential_store: ICredentialStore,
        credential: Optional[Credential] = None
    ):
        self.api_client = api_client
        self.credential_store = credential_store
        self.audit = AuditLogger()

        self._token: Optional[str] = None
        self._state = SessionState.UNAUTHENTICATED
        self._credential = credential
        self._pending: Optional[_PendingLogin] = None
        self._refresh_failed = False
        self._lock = asyncio.Lock()

        self._state_callbacks: List[Callable[[SessionState], None]] = []
        self._token_refresh_callbacks: List[Callable[[str], None]] = []

        logger.info("Session client initialized")

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def is_authenticated(self) -> bool:
        return self._state == SessionState.AUTHENTICATED and self._token is not None

    @property
    def can_refresh(self) -> bool:
        """True while a saved credential exists and no refresh has failed since the last login."""
        return self._credential is not None and not self._refresh_failed

    @property
    def two_factor_pending(self) -> bool:
        return self._pending is not None

    def set_credential(self, credential: Optional[Credential]) -> None:
        """Adopt a credential loaded from storage so the session can refresh silently."""
        self._credential = credential
        self._refresh_failed = False

    def add_state_callback(self, callback: Callable[[SessionState], None]) -> None:
        """
        Add callback for session state changes.

        Args:
            callback: Function called with the new SessionState
        """
        self._state_callbacks.append(callback)

    def add_token_refresh_callback(self, callback: Callable[[str], None]) -> None:
        """
        Add callback for successful silent refreshes.

        Args:
            callback: Function called with the new token
        """
        self._token_refresh_callbacks.append(callback)

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        for callback in self._state_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in session state callback: {e}")

    def _notify_token_refresh(self, token: str) -> None:
        for callback in self._token_refresh_callbacks:
            try:
                callback(token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    def _adopt_token(self, token: str) -> None:
        self._token = token
        self._refresh_failed = False
        self._set_state(SessionState.AUTHENTICATED)

    async def _request_token(self, username: str, password: str) -> LoginOutcome:
        """Run one credential login and classify the response."""
        try:
            response = await self.api_client.login(username, password)
        except GalleryError as e:
            return LoginOutcome.failure(e.describe())

        if _requires_two_factor(response):
            return LoginOutcome.two_factor_required()

        token = _token_from(response)
        if not token:
            return LoginOutcome.failure("Login response did not include a token")
        return LoginOutcome.success(token)

    def _remember(self, username: str, password: str, two_factor_code: Optional[str], token: str) -> None:
        """Save the credential; a failure here never fails the login itself."""
        try:
            credential = Credential(
                username=username,
                encrypted_password=self.credential_store.encrypt_password(password),
                two_factor_secret=two_factor_code,
                token=token
            )
        except Exception as e:
            logger.error(f"Could not encrypt credential for {username}: {e}")
            return

        self._credential = credential
        if not self.credential_store.save(credential):
            logger.warning(f"Login for {username} succeeded but could not be saved")

    async def login(self, username: str, password: str, remember: bool = False) -> LoginOutcome:
        """
        Interactive login with username and password.

        Args:
            username: Account name
            password: Plain password; kept in memory only while 2FA is pending
            remember: Save the credential for silent refresh after success

        Returns:
            LoginOutcome: SUCCESS with the token, TWO_FACTOR_REQUIRED or FAILURE
        """
        username = username.strip() if username else ""
        if not username or not password:
            record_error(logger, ValidationError(
                "Username and password are required.",
                field_name="password" if username else "username",
                error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
            ), level=logging.INFO)
            return LoginOutcome.failure("Username and password are required.")

        async with self._lock:
            self._pending = None
            self._set_state(SessionState.AUTHENTICATING)

            outcome = await self._request_token(username, password)

            if outcome.status == LoginStatus.TWO_FACTOR_REQUIRED:
                self._pending = _PendingLogin(username, password, remember)
                self._set_state(SessionState.TWO_FACTOR_PENDING)
                logger.info(f"Two-factor code required for {username}")
                return outcome

            if not outcome.ok:
                # a failed attempt leaves an existing token usable
                self._set_state(SessionState.AUTHENTICATED if self._token else SessionState.UNAUTHENTICATED)
                self.audit.log_authentication(username, success=False, failure_reason=outcome.reason)
                return outcome

            self._adopt_token(outcome.token)
            if remember:
                self._remember(username, password, None, outcome.token)
            else:
                self._credential = None
            self.audit.log_authentication(username, success=True)
            return outcome

    async def submit_two_factor(self, code: str) -> LoginOutcome:
        """
        Verify a TOTP code for the pending login, then log in again.

        On a rejected code the pending login is kept so the user can retry.

        Args:
            code: Code from the authenticator app

        Returns:
            LoginOutcome: SUCCESS with the token or FAILURE
        """
        code = code.strip() if code else ""

        async with self._lock:
            pending = self._pending
            if pending is None:
                return LoginOutcome.failure("No login is waiting for a 2FA code")
            if not code:
                return LoginOutcome.failure("2FA code required")

            try:
                await self.api_client.verify_two_factor(code)
            except GalleryError as e:
                record_error(logger, AuthError(
                    f"Two-factor verification rejected for {pending.username}: {e.describe()}",
                    ErrorCode.AUTH_TWO_FACTOR_INVALID, status=getattr(e, "status", None), cause=e
                ), level=logging.INFO)
                self.audit.log_authentication(
                    pending.username, success=False, failure_reason="invalid 2FA code", method="totp"
                )
                return LoginOutcome.failure("invalid 2FA code")

            outcome = await self._request_token(pending.username, pending.password)
            if outcome.status == LoginStatus.TWO_FACTOR_REQUIRED:
                return LoginOutcome.failure("Login after 2FA failed: 2FA code was not accepted")
            if not outcome.ok:
                self.audit.log_authentication(
                    pending.username, success=False, failure_reason=outcome.reason, method="totp"
                )
                return LoginOutcome.failure(f"Login after 2FA failed: {outcome.reason}")

            self._pending = None
            self._adopt_token(outcome.token)
            if pending.remember:
                self._remember(pending.username, pending.password, code, outcome.token)
            else:
                self._credential = None
            self.audit.log_authentication(pending.username, success=True, method="totp")
            return outcome

    async def validate_existing_token(self, token: Optional[str]) -> bool:
        """
        Check a previously saved token against the API.

        Returns:
            True if the token is accepted; the session then uses it
        """
        if not token:
            return False

        async with self._lock:
            username = self._credential.username if self._credential else None
            try:
                await self.api_client.get_current_user(token)
            except GalleryError as e:
                logger.info(f"Saved token rejected: {e.describe()}")
                self.audit.log_authentication(username, success=False, failure_reason=e.describe(), method="token")
                return False

            self._adopt_token(token)
            self.audit.log_authentication(username, success=True, method="token")
            return True

    async def refresh(self) -> bool:
        """
        Log in again with the saved credential.

        A two-factor demand counts as failure. After a failure the session is
        EXPIRED and no further silent refresh is attempted until the next
        successful login.

        Returns:
            True if a new token was obtained
        """
        async with self._lock:
            credential = self._credential
            if credential is None or self._refresh_failed:
                reason = "no saved credential" if credential is None else "a previous refresh failed"
                record_error(logger, AuthError(
                    f"Cannot refresh session: {reason}", ErrorCode.AUTH_REFRESH_UNAVAILABLE
                ), level=logging.WARNING)
                self._expire()
                return False

            try:
                password = self.credential_store.decrypt_password(credential.encrypted_password)
            except GalleryError as e:
                record_error(logger, e)
                self.audit.log_token_refresh(credential.username, False, e.message)
                self._expire()
                return False

            logger.info(f"Refreshing session for {credential.username}")
            outcome = await self._request_token(credential.username, password)
            if not outcome.ok:
                reason = outcome.reason or "unknown error"
                code = (ErrorCode.AUTH_TWO_FACTOR_REQUIRED if outcome.status == LoginStatus.TWO_FACTOR_REQUIRED
                        else ErrorCode.AUTH_REFRESH_FAILED)
                record_error(logger, AuthError(f"Session refresh failed: {reason}", code))
                self.audit.log_token_refresh(credential.username, False, reason)
                self._expire()
                return False

            self._adopt_token(outcome.token)
            credential.token = outcome.token
            self.credential_store.save(credential)
            self.audit.log_token_refresh(credential.username, True)
            self._notify_token_refresh(outcome.token)
            return True

    def _expire(self) -> None:
        self._token = None
        self._refresh_failed = True
        self._set_state(SessionState.EXPIRED)

    def logout(self) -> None:
        """Forget the session and delete the saved credential."""
        logger.info("Logging out and clearing saved login")
        self._token = None
        self._pending = None
        self._credential = None
        self._refresh_failed = False
        self.credential_store.clear()
        self._set_state(SessionState.UNAUTHENTICATED)
