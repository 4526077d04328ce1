"""
Encrypted credential storage for the VRChat Avatar Gallery client.

This module persists the single saved login. Encryption is bound to the local
OS account: the Fernet key is derived from a per-installation secret (kept in
the system keyring, or in a private key file when no keyring is available)
salted with the account name, so a blob written by one account cannot be
decrypted by another.
"""

import os
import json
import base64
import getpass
import logging
import tempfile
from pathlib import Path
from typing import Optional

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from gallery_client.config import APP_DIR_NAME, get_user_config_dir
from gallery_shared.exceptions import PersistenceError, ErrorCode
from gallery_shared.interfaces import ICredentialStore
from gallery_shared.models import Credential

logger = logging.getLogger(__name__)

SECRET_KEY_NAME = "credential_secret"
KDF_ITERATIONS = 100000


def current_user_scope() -> str:
    """Name of the OS account the process runs under."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "default"


class UserScopedCipher:
    """
    Symmetric encryption scoped to the current OS user.

    Uses the system keyring for the secret when available, falls back to a
    key file readable only by the owner.
    """

    def __init__(
        self,
        service_name: str = APP_DIR_NAME,
        scope: Optional[str] = None,
        key_file: Optional[Path] = None,
        use_keyring: Optional[bool] = None
    ):
        self.service_name = service_name
        self.scope = scope or current_user_scope()
        self.key_file = Path(key_file) if key_file else get_user_config_dir() / 'secret.key'

        self._keyring_available = use_keyring
        self._fernet: Optional[Fernet] = None

    @property
    def keyring_available(self) -> bool:
        # probed on first use so constructing a store never touches the keyring
        if self._keyring_available is None:
            self._keyring_available = self._check_keyring_availability()
        return self._keyring_available

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _load_or_create_secret(self) -> bytes:
        """Get the per-installation secret, creating it on first use."""
        if self.keyring_available:
            stored = keyring.get_password(self.service_name, SECRET_KEY_NAME)
            if stored:
                return base64.b64decode(stored.encode())

            secret = os.urandom(32)
            keyring.set_password(self.service_name, SECRET_KEY_NAME, base64.b64encode(secret).decode())
            return secret

        if self.key_file.exists():
            return base64.b64decode(self.key_file.read_bytes())

        secret = os.urandom(32)
        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.key_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(base64.b64encode(secret))
        logger.info(f"Created credential key file: {self.key_file}")
        return secret

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=f"{self.service_name}:{self.scope}".encode('utf-8'),
                iterations=KDF_ITERATIONS,
            )
            key = base64.urlsafe_b64encode(kdf.derive(self._load_or_create_secret()))
            self._fernet = Fernet(key)
        return self._fernet

    def encrypt(self, data: bytes) -> bytes:
        return self._get_fernet().encrypt(data)

    def decrypt(self, token: bytes) -> bytes:
        """
        Decrypt data encrypted under the same user scope.

        Raises:
            InvalidToken: If the data was written under another scope or is corrupt
        """
        return self._get_fernet().decrypt(token)


class CredentialStore(ICredentialStore):
    """
    Persists one Credential to a fixed per-user file.

    Loading fails soft: every error reads as "no saved login". Saving is best
    effort: failures are logged and reported through the return value.
    """

    def __init__(self, path: Optional[Path] = None, cipher: Optional[UserScopedCipher] = None):
        self.path = Path(path) if path else get_user_config_dir() / 'login.dat'
        self.cipher = cipher or UserScopedCipher()

    def load(self) -> Optional[Credential]:
        """
        Load the saved credential.

        Returns:
            The credential, or None if missing, corrupt or written by another user
        """
        if not self.path.exists():
            logger.debug(f"No saved login at {self.path}")
            return None

        try:
            plain = self.cipher.decrypt(self.path.read_bytes())
            return Credential.from_dict(json.loads(plain.decode('utf-8')))
        except InvalidToken:
            logger.warning("Saved login could not be decrypted for this user; ignoring it")
        except Exception as e:
            logger.warning(f"Failed to read saved login: {e}")
        return None

    def save(self, credential: Credential) -> bool:
        """
        Encrypt and write the credential, replacing any previous file.

        Returns:
            True if the file was written
        """
        tmp_path = None
        try:
            payload = json.dumps(credential.to_dict()).encode('utf-8')
            encrypted = self.cipher.encrypt(payload)

            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix='.login-', suffix='.tmp')
            with os.fdopen(fd, 'wb') as f:
                f.write(encrypted)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
            tmp_path = None

            logger.info(f"Saved login for {credential.username}")
            return True
        except Exception as e:
            logger.error(f"Failed to save login: {e}")
            return False
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def clear(self) -> bool:
        """Remove the saved login file."""
        try:
            self.path.unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Failed to remove saved login: {e}")
            return False

    def encrypt_password(self, password: str) -> bytes:
        return self.cipher.encrypt(password.encode('utf-8'))

    def decrypt_password(self, encrypted: bytes) -> str:
        """
        Recover a password encrypted with encrypt_password.

        Raises:
            PersistenceError: If the password cannot be decrypted in this user context
        """
        try:
            return self.cipher.decrypt(encrypted).decode('utf-8')
        except (InvalidToken, UnicodeDecodeError) as e:
            raise PersistenceError(
                "Stored password cannot be decrypted for this user",
                ErrorCode.PERSISTENCE_DECRYPT_FAILED,
                path=str(self.path),
                cause=e
            )
