"""
Settings for the VRChat Avatar Gallery client.

This module handles client configuration including the API base URL, request
timeout and the locations of the avatar list, cache and saved-login files,
with support for a configuration file and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
import configparser

from gallery_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

APP_DIR_NAME = 'vrc-avatar-gallery'
DEFAULT_API_URL = 'https://api.vrchat.cloud/api/1'
DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = 'VrcAvatarGallery/1.0'

DEFAULT_CONFIG_TEMPLATE = """# VRChat Avatar Gallery Configuration
# Configuration file: {config_path}

[api]
# Base URL of the VRChat API
url = {api_url}

# Request timeout in seconds
timeout = {timeout}

# User-Agent header sent with every request
user_agent = {user_agent}

[storage]
# Directory holding avatars.txt and avatars.json (defaults to the config directory)
# data_dir =

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO
"""


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'api': {
        'url': DEFAULT_API_URL,
        'timeout': DEFAULT_TIMEOUT,
        'user_agent': DEFAULT_USER_AGENT,
    },
    'storage': {
        'data_dir': None,
        'ids_file': 'avatars.txt',
        'cache_file': 'avatars.json',
        'credential_file': None,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'format': 'standard',
    },
}


def get_user_config_dir() -> Path:
    """Per-user application directory, honouring XDG_CONFIG_HOME."""
    base = os.environ.get('XDG_CONFIG_HOME')
    root = Path(base) if base else Path.home() / '.config'
    return root / APP_DIR_NAME


def _parse_value(raw: str) -> Any:
    """Numbers, booleans and quoted strings are decoded as JSON, anything else stays text."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class GalleryConfiguration:
    """
    Layered settings for the gallery client.

    Lookup order, first hit wins: ``set_override`` values, ``VRC_GALLERY_*``
    environment variables, the INI file, then ``DEFAULTS``. Empty values in
    the file or environment fall through to the default.
    """

    ENV_MAPPINGS = {
        'VRC_GALLERY_API_URL': ('api', 'url'),
        'VRC_GALLERY_TIMEOUT': ('api', 'timeout'),
        'VRC_GALLERY_USER_AGENT': ('api', 'user_agent'),
        'VRC_GALLERY_DATA_DIR': ('storage', 'data_dir'),
        'VRC_GALLERY_CREDENTIAL_FILE': ('storage', 'credential_file'),
        'VRC_GALLERY_LOG_LEVEL': ('logging', 'level'),
        'VRC_GALLERY_LOG_FILE': ('logging', 'file'),
    }

    def __init__(self, config_file: Optional[str] = None, create_if_missing: bool = True):
        self._config_dir = get_user_config_dir()
        self._config_file = config_file or str(self._config_dir / 'client.conf')
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        if create_if_missing and not os.path.exists(self._config_file):
            self._write_template()

        self._load_configuration()

    def _write_template(self) -> None:
        path = Path(self._config_file)
        text = DEFAULT_CONFIG_TEMPLATE.format(
            config_path=path,
            api_url=DEFAULT_API_URL,
            timeout=int(DEFAULT_TIMEOUT),
            user_agent=DEFAULT_USER_AGENT,
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding='utf-8')
        except OSError as e:
            logger.warning(f"Could not write default configuration to {path}: {e}")
            return
        logger.info(f"Wrote default configuration to {path}")

    def _load_configuration(self) -> None:
        layers = [self._read_file(), self._read_environment()]

        merged: Dict[str, Dict[str, Any]] = {}
        for section, defaults in DEFAULTS.items():
            merged[section] = dict(defaults)
        for layer in layers:
            for section, values in layer.items():
                target = merged.setdefault(section, {})
                target.update({k: v for k, v in values.items() if v != ''})

        self._config_data = merged

    def _read_file(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self._config_file):
            logger.info(f"No configuration file at {self._config_file}, using defaults")
            return {}

        parser = configparser.ConfigParser()
        try:
            parser.read(self._config_file, encoding='utf-8')
        except (OSError, UnicodeDecodeError, configparser.Error) as e:
            logger.warning(f"Ignoring unreadable configuration file {self._config_file}: {e}")
            return {}

        logger.info(f"Read configuration from {self._config_file}")
        return {
            section: {key: _parse_value(raw) for key, raw in parser[section].items()}
            for section in parser.sections()
        }

    def _read_environment(self) -> Dict[str, Dict[str, Any]]:
        values: Dict[str, Dict[str, Any]] = {}
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            raw = os.environ.get(env_var)
            if raw is not None:
                values.setdefault(section, {})[key] = _parse_value(raw)
        return values

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Look up ``section.key``; a bare section name returns the whole section.

        ``None`` values are treated as unset and yield ``default``.
        """
        if key in self._overrides:
            return self._overrides[key]

        section, _, name = key.partition('.')
        if not name:
            return self._config_data.get(section, default)

        value = self._config_data.get(section, {}).get(name)
        return default if value is None else value

    def set_override(self, key: str, value: Any) -> None:
        self._overrides[key] = value

    def get_config_file_path(self) -> str:
        return self._config_file

    def get_all_config(self) -> Dict[str, Any]:
        return {section: dict(values) for section, values in self._config_data.items()}

    def reload_configuration(self) -> None:
        """Re-read the file and environment; overrides are kept."""
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Typed accessors

    def get_api_url(self) -> str:
        return str(self.get_config('api.url', DEFAULT_API_URL)).rstrip('/')

    def get_timeout(self) -> float:
        """Per-request timeout in seconds."""
        raw = self.get_config('api.timeout', DEFAULT_TIMEOUT)
        try:
            timeout = float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid request timeout: {raw!r}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key='api.timeout'
            )
        if timeout <= 0:
            raise ConfigurationError(
                f"Request timeout must be positive, got {timeout}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key='api.timeout'
            )
        return timeout

    def get_user_agent(self) -> str:
        return str(self.get_config('api.user_agent', DEFAULT_USER_AGENT))

    def get_data_dir(self) -> Path:
        data_dir = self.get_config('storage.data_dir')
        if data_dir is None or data_dir == '':
            return self._config_dir
        # numeric names come back from the value parser as int
        return Path(str(data_dir)).expanduser()

    def get_ids_file(self) -> Path:
        return self.get_data_dir() / str(self.get_config('storage.ids_file', 'avatars.txt'))

    def get_cache_file(self) -> Path:
        return self.get_data_dir() / str(self.get_config('storage.cache_file', 'avatars.json'))

    def get_credential_file(self) -> Path:
        """Encrypted login file; always per user, independent of the data directory."""
        credential_file = self.get_config('storage.credential_file')
        if credential_file is not None and credential_file != '':
            return Path(str(credential_file)).expanduser()
        return self._config_dir / 'login.dat'

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        log_file = self.get_config('logging.file')
        return str(log_file) if log_file not in (None, '') else None

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()
