"""Where each supported device layout keeps ROMs, saves and BIOS files"""

import logging
import os
import re
from pathlib import Path

from .constants import CFW, load_cfw_layout
from .errors import UnsupportedCFWError

MUOS_SD1 = '/mnt/mmc'
MUOS_SD2 = '/mnt/sdcard'
MUOS_ROMS_FOLDER_UNION = '/mnt/union/ROMS'

_TAG_PATTERN = re.compile(r'\(([^()]+)\)\s*$')


def parse_tag(name):
    """Return the trailing ``(TAG)`` of a NextUI folder name, or '' when absent"""
    if not name:
        return ''
    match = _TAG_PATTERN.search(Path(name).name)
    return match.group(1).strip() if match else ''


def get_cfw(configured=''):
    """Resolve the device layout from $CFW, falling back to the configured value"""
    raw = (os.environ.get('CFW') or configured or '').strip().upper()
    try:
        return CFW(raw)
    except ValueError:
        raise UnsupportedCFWError(f"Unsupported CFW: '{raw}'. Valid options: NextUI, muOS, Knulli") from None


def get_base_path(cfw):
    if cfw == CFW.MUOS:
        if os.environ.get('MUOS_BASE_PATH'):
            return Path(os.environ['MUOS_BASE_PATH'])
        # SD2 wins only when it actually carries a muOS install
        if (Path(MUOS_SD2) / 'MUOS' / 'info').exists():
            return Path(MUOS_SD2)
        return Path(MUOS_SD1)
    if cfw == CFW.NEXTUI:
        return Path(os.environ.get('NEXTUI_BASE_PATH') or '/mnt/SDCARD')
    if cfw == CFW.KNULLI:
        return Path(os.environ.get('KNULLI_BASE_PATH') or '/userdata')
    raise UnsupportedCFWError(f"Unsupported CFW: {cfw}")


class DeviceLayout:
    """Directory conventions for one device layout plus the user's overrides"""

    def __init__(self, cfw, base_path=None, rom_directory=None, directory_mappings=None, tables=None):
        self.cfw = cfw
        self.base_path = Path(base_path) if base_path else get_base_path(cfw)
        self._rom_directory = Path(rom_directory) if rom_directory else None
        self.directory_mappings = directory_mappings or {}

        if tables is None:
            tables = load_cfw_layout(cfw)
        self.platform_map = tables.get('platforms', {})
        self.save_directories_map = tables.get('saves', {})

    @classmethod
    def from_settings(cls, settings):
        cfw = get_cfw(settings.get('Device', 'cfw'))
        rom_directory = os.environ.get('ROM_DIRECTORY') or settings.get('Device', 'rom_directory').strip()
        return cls(cfw, rom_directory=rom_directory or None,
                   directory_mappings=settings.get_directory_mappings())

    @property
    def rom_directory(self):
        if self._rom_directory:
            return self._rom_directory
        if self.cfw == CFW.MUOS:
            return Path(MUOS_ROMS_FOLDER_UNION)
        if self.cfw == CFW.NEXTUI:
            return self.base_path / 'Roms'
        return self.base_path / 'roms'

    @property
    def save_directory(self):
        if self.cfw == CFW.MUOS:
            return self.base_path / 'MUOS' / 'save' / 'file'
        if self.cfw == CFW.NEXTUI:
            return self.base_path / 'Saves'
        return self.base_path / 'saves'

    @property
    def bios_directory(self):
        if self.cfw == CFW.MUOS:
            return self.base_path / 'MUOS' / 'bios'
        if self.cfw == CFW.NEXTUI:
            return self.base_path / 'Bios'
        return self.base_path / 'bios'

    def rom_slug_to_cfw(self, slug):
        """Default ROM folder name for a RomM platform slug"""
        if slug in self.platform_map:
            folders = self.platform_map[slug]
            return folders[0] if folders else ''
        return slug.lower()

    def platform_rom_directory(self, slug):
        mapping = self.directory_mappings.get(slug)
        relative_path = mapping.relative_path if mapping and mapping.relative_path else ''
        if not relative_path:
            relative_path = self.rom_slug_to_cfw(slug)
        return self.rom_directory / relative_path

    def platform_tags(self, slug):
        """Every NextUI tag that belongs to ``slug``, including the user override"""
        tags = {parse_tag(folder) for folder in self.platform_map.get(slug, [])}
        mapping = self.directory_mappings.get(slug)
        if mapping and mapping.relative_path:
            tags.add(parse_tag(mapping.relative_path))
        tags.discard('')
        return tags

    def save_folders_for_slug(self, slug):
        mapping = self.directory_mappings.get(slug)
        if mapping and mapping.save_directory:
            return [mapping.save_directory]
        return list(self.save_directories_map.get(slug, []))

    def save_directory_for_slug(self, slug, emulator=''):
        """Directory new saves for ``slug`` are written to, created on demand.

        When several emulators share a platform, the folder whose name contains
        ``emulator`` wins; otherwise the first known folder is used.
        """
        folders = self.save_folders_for_slug(slug)
        if not folders:
            raise FileNotFoundError(f"No save folder mapping for slug: {slug}")

        selected = folders[0]
        if emulator:
            for folder in folders:
                if emulator.lower() in folder.lower():
                    logging.debug(f"Matched emulator {emulator} to save folder {folder}")
                    selected = folder
                    break

        save_dir = self.save_directory / selected
        save_dir.mkdir(parents=True, exist_ok=True)
        return save_dir

    def bios_directories_for_slug(self, slug):
        """BIOS roots to try for ``slug``; NextUI adds one folder per platform tag"""
        directories = [self.bios_directory]
        if self.cfw == CFW.NEXTUI:
            for tag in sorted(self.platform_tags(slug)):
                directories.append(self.bios_directory / tag)
        return directories
