"""Persistent application settings (settings.ini)"""

import base64
import configparser
import getpass
import hashlib
import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from .constants import APP_NAME, DEFAULT_API_TIMEOUT, DEFAULT_DOWNLOAD_TIMEOUT

MAPPING_SECTION_PREFIX = 'Mapping '

DEFAULTS = {
    'RomM': {
        'url': '',
        'port': '',
        'username': '',
        'password': '',
    },
    'Device': {
        'cfw': '',
        'rom_directory': '',
    },
    'Network': {
        'api_timeout': str(DEFAULT_API_TIMEOUT),
        'download_timeout': str(DEFAULT_DOWNLOAD_TIMEOUT),
    },
    'Cache': {
        'directory': '',
    },
    'Logging': {
        'level': 'ERROR',
        'file': '',
    },
}


def default_config_dir():
    env_dir = os.environ.get('ROMM_SYNC_CONFIG_DIR')
    if env_dir:
        return Path(env_dir)
    return Path.home() / '.config' / APP_NAME


@dataclass
class DirectoryMapping:
    """User override for where a platform's ROMs and saves live on the device"""
    relative_path: str = ''
    save_directory: str = ''


@dataclass
class Host:
    """A RomM server and the credentials used against it"""
    root_uri: str = ''
    port: int = 0
    username: str = ''
    password: str = ''

    def url(self):
        uri = self.root_uri.rstrip('/')
        if self.port:
            return f"{uri}:{self.port}"
        return uri

    def to_loggable(self):
        return {
            'root_uri': self.root_uri,
            'port': self.port,
            'username': self.username,
            'password': '*' * len(self.password),
        }


class SettingsManager:
    """Handle saving and loading application settings"""

    def __init__(self, config_dir=None):
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()
        self.config_file = self.config_dir / 'settings.ini'
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self._setup_encryption()

        self.config = configparser.ConfigParser(interpolation=None)
        self.load_settings()

    def _setup_encryption(self):
        """Derive a Fernet key from user + hostname for basic at-rest protection"""
        key_material = f"{getpass.getuser()}-{socket.gethostname()}".encode()
        key = hashlib.sha256(key_material).digest()
        self.cipher = Fernet(base64.urlsafe_b64encode(key))

    def _encrypt(self, value):
        if not value:
            return value
        return self.cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value):
        if not value:
            return value
        try:
            return self.cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            # Written by hand or on another machine
            logging.debug("Stored credential is not encrypted, using it as-is")
            return value

    def load_settings(self):
        """Load settings from file, creating defaults on first run"""
        if self.config_file.exists():
            self.config.read(self.config_file, encoding='utf-8')
            self._migrate_settings()
        else:
            for section, values in DEFAULTS.items():
                self.config[section] = dict(values)
            self.save_settings()

    def _migrate_settings(self):
        """Add sections/keys introduced after the file was written"""
        modified = False
        for section, values in DEFAULTS.items():
            if section not in self.config:
                self.config[section] = {}
                modified = True
            for key, default_value in values.items():
                if key not in self.config[section]:
                    self.config[section][key] = default_value
                    modified = True

        if modified:
            self.save_settings()
            logging.info("Settings migrated to latest version")

    def save_settings(self):
        with open(self.config_file, 'w', encoding='utf-8') as f:
            self.config.write(f)

    def get(self, section, key, fallback=''):
        """Get a setting value with decryption for sensitive data"""
        value = self.config.get(section, key, fallback=fallback)
        if section == 'RomM' and key in ('username', 'password') and value:
            value = self._decrypt(value)
        return value

    def get_int(self, section, key, fallback=0):
        try:
            return int(self.get(section, key, str(fallback)) or fallback)
        except ValueError:
            logging.warning(f"Invalid integer for [{section}] {key}, using {fallback}")
            return fallback

    def set(self, section, key, value):
        """Set a setting value with encryption for sensitive data"""
        if section not in self.config:
            self.config[section] = {}

        value = '' if value is None else str(value)
        if section == 'RomM' and key in ('username', 'password') and value:
            value = self._encrypt(value)

        self.config[section][key] = value
        self.save_settings()

    # Typed accessors

    def get_host(self):
        return Host(
            root_uri=self.get('RomM', 'url'),
            port=self.get_int('RomM', 'port', 0),
            username=self.get('RomM', 'username'),
            password=self.get('RomM', 'password'),
        )

    def set_host(self, host):
        self.set('RomM', 'url', host.root_uri)
        self.set('RomM', 'port', host.port or '')
        self.set('RomM', 'username', host.username)
        self.set('RomM', 'password', host.password)

    @property
    def api_timeout(self):
        return self.get_int('Network', 'api_timeout', DEFAULT_API_TIMEOUT)

    @property
    def download_timeout(self):
        return self.get_int('Network', 'download_timeout', DEFAULT_DOWNLOAD_TIMEOUT)

    @property
    def cache_dir(self):
        custom = self.get('Cache', 'directory').strip()
        if custom:
            return Path(custom)
        return self.config_dir / 'cache'

    def get_directory_mappings(self):
        mappings = {}
        for section in self.config.sections():
            if not section.startswith(MAPPING_SECTION_PREFIX):
                continue
            slug = section[len(MAPPING_SECTION_PREFIX):].strip()
            mappings[slug] = DirectoryMapping(
                relative_path=self.config.get(section, 'relative_path', fallback=''),
                save_directory=self.config.get(section, 'save_directory', fallback=''),
            )
        return mappings

    def set_directory_mapping(self, slug, mapping):
        section = f"{MAPPING_SECTION_PREFIX}{slug}"
        self.config[section] = {
            'relative_path': mapping.relative_path,
            'save_directory': mapping.save_directory,
        }
        self.save_settings()
