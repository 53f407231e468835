"""Static tables and tunables shared across the client."""

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional

APP_NAME = 'romm-handheld-sync'
APP_VERSION = '1.0.0'

DEFAULT_BUFFER_SIZE = 128 * 1024
SMALL_BUFFER_SIZE = 64 * 1024

# Seconds
DEFAULT_HTTP_TIMEOUT = 10
VALIDATION_TIMEOUT = 5
LOGIN_TIMEOUT = 15
DEFAULT_API_TIMEOUT = 60
DEFAULT_DOWNLOAD_TIMEOUT = 3600

PREFETCH_PAGE_SIZE = 1000

BACKUP_TIMESTAMP_FORMAT = '%Y-%m-%d %H-%M-%S'

SKIP_EXTENSIONS = (
    '.txt', '.nfo', '.diz', '.db',
    '.ini', '.cfg', '.conf',
    '.jpg', '.jpeg', '.png', '.gif', '.bmp',
    '.m3u',                    # playlists
    '.cue',
    '.srm', '.sav', '.state',  # saves live next to ROMs on some layouts
)

SKIP_NAMES = ('desktop.ini', 'thumbs.db', '.ds_store')


class CFW(str, Enum):
    """Supported handheld device layouts"""
    MUOS = 'MUOS'
    NEXTUI = 'NEXTUI'
    KNULLI = 'KNULLI'


@dataclass(frozen=True)
class BIOSFile:
    """A single firmware file an emulator core wants in its system directory"""
    file_name: str
    relative_path: str
    md5_hash: str = ''
    description: str = ''
    optional: bool = False


@dataclass(frozen=True)
class CoreBIOS:
    core_name: str
    display_name: str
    files: List[BIOSFile] = field(default_factory=list)


def _overrides_dir():
    config_dir = os.environ.get('ROMM_SYNC_CONFIG_DIR')
    if config_dir:
        return Path(config_dir) / 'overrides'
    return Path.home() / '.config' / APP_NAME / 'overrides'


def load_json_table(relative_path, overrides_dir: Optional[Path] = None):
    """Load a bundled JSON table, preferring a user override file if one exists.

    ``relative_path`` is relative to the package ``data`` directory, e.g.
    ``bios/core_bios.json``. An override lives at the same relative path under
    ``<config dir>/overrides``.
    """
    override = (overrides_dir or _overrides_dir()) / relative_path
    if override.is_file():
        logging.debug(f"Using override table {override}")
        with open(override, 'r', encoding='utf-8') as f:
            return json.load(f)

    data_file = resources.files('romm_handheld_sync').joinpath('data', *relative_path.split('/'))
    with data_file.open('r', encoding='utf-8') as f:
        return json.load(f)


def _parse_core_bios(raw) -> Dict[str, CoreBIOS]:
    cores = {}
    for core_name, info in raw.items():
        files = [
            BIOSFile(
                file_name=entry['file_name'],
                relative_path=entry.get('relative_path') or entry['file_name'],
                md5_hash=entry.get('md5', ''),
                description=entry.get('description', ''),
                optional=entry.get('optional', False),
            )
            for entry in info.get('files', [])
        ]
        cores[core_name] = CoreBIOS(core_name=core_name, display_name=info.get('display_name', core_name), files=files)
    return cores


PLATFORM_TO_LIBRETRO_CORES: Dict[str, List[str]] = load_json_table('bios/platform_cores.json')
LIBRETRO_CORE_TO_BIOS: Dict[str, CoreBIOS] = _parse_core_bios(load_json_table('bios/core_bios.json'))
# Cores missing from this map keep their files in the root BIOS directory
CORE_BIOS_SUBDIRECTORIES: Dict[str, str] = load_json_table('bios/core_subdirectories.json')


def load_cfw_layout(cfw: CFW):
    """Device layout table: platform folders, save folders and BIOS folders"""
    return load_json_table(f'cfw/{cfw.value.lower()}.json')
