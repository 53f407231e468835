"""Walk the device's ROM and save folders and pair each ROM with its save"""

import datetime
import hashlib
import logging
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .cfw import parse_tag
from .constants import BACKUP_TIMESTAMP_FORMAT, CFW, DEFAULT_BUFFER_SIZE, SKIP_EXTENSIONS, SKIP_NAMES
from .models import RemoteSave

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def mtime_of(stat_result):
    """File mtime as an aware UTC datetime, exact to the microsecond"""
    return EPOCH + datetime.timedelta(microseconds=stat_result.st_mtime_ns // 1000)


def set_mtime(path, when):
    """Stamp ``path`` with ``when`` so a later ``mtime_of`` returns the same value"""
    ns = ((when - EPOCH) // datetime.timedelta(microseconds=1)) * 1000
    os.utime(path, ns=(ns, ns))


@dataclass
class LocalSave:
    slug: str
    path: Path
    last_modified: datetime.datetime

    def timestamped_filename(self):
        """``name [YYYY-MM-DD HH-MM-SS].ext`` using the save's mtime"""
        stem, ext = os.path.splitext(self.path.name)
        stamp = self.last_modified.strftime(BACKUP_TIMESTAMP_FORMAT)
        return f"{stem} [{stamp}]{ext}"

    def backup(self):
        """Copy the save into a ``.backup`` folder next to it"""
        dest = self.path.parent / '.backup' / self.timestamped_filename()
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.path, dest)
        logging.debug(f"Backed up {self.path.name} to {dest}")
        return dest


@dataclass
class LocalRomFile:
    """A ROM on the device; rebuilt on every scan"""
    slug: str
    path: Path
    file_name: str
    sha1: str = ''
    last_modified: Optional[datetime.datetime] = None
    rom_id: int = 0
    rom_name: str = ''
    remote_saves: List[RemoteSave] = field(default_factory=list)
    save_file: Optional[LocalSave] = None

    @property
    def base_name(self):
        return os.path.splitext(self.file_name)[0]

    def sync_action(self):
        from .save_sync import decide
        return decide(self.save_file, self.remote_saves)

    def last_remote_save(self):
        from .save_sync import last_remote_save
        return last_remote_save(self.remote_saves)


def should_skip_file(filename):
    lower_name = filename.lower()
    if lower_name in SKIP_NAMES:
        return True
    return lower_name.endswith(SKIP_EXTENSIONS)


def calculate_rom_sha1(file_path):
    sha1 = hashlib.sha1()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(DEFAULT_BUFFER_SIZE), b''):
            sha1.update(chunk)
    return sha1.hexdigest()


def _list_save_directory(slug, directory):
    saves = []
    if not directory.is_dir():
        return saves

    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        logging.error(f"Failed to read save directory {directory}: {e}")
        return saves

    for entry in entries:
        if entry.name.startswith('.'):
            continue
        try:
            if not entry.is_file():
                continue
            saves.append(LocalSave(slug=slug, path=Path(entry.path), last_modified=mtime_of(entry.stat())))
        except OSError as e:
            logging.warning(f"Failed to get file info for {entry.path}: {e}")

    logging.debug(f"Found {len(saves)} save files in {directory}")
    return saves


def find_save_files(layout, slug):
    """Every save file for ``slug`` across its save folders, read in parallel"""
    folders = layout.save_folders_for_slug(slug)
    if not folders:
        logging.debug(f"No save folder mapping for slug {slug}")
        return []

    directories = [layout.save_directory / folder for folder in folders]
    with ThreadPoolExecutor(max_workers=len(directories)) as executor:
        results = executor.map(lambda d: _list_save_directory(slug, d), directories)
        all_saves = [save for saves in results for save in saves]

    logging.debug(f"Found {len(all_saves)} save files for {slug}")
    return all_saves


def _save_map(saves):
    return {os.path.splitext(save.path.name)[0]: save for save in saves}


def scan_rom_directory(slug, rom_dir, save_map, rom_cache=None, fs_slug=None):
    roms = []
    try:
        entries = sorted(os.scandir(rom_dir), key=lambda e: e.name)
    except OSError as e:
        logging.error(f"Failed to read ROM directory {rom_dir}: {e}")
        return roms

    for entry in entries:
        if entry.name.startswith('.') or should_skip_file(entry.name):
            continue
        try:
            if entry.is_dir():
                continue
            stat = entry.stat()
        except OSError as e:
            logging.warning(f"Failed to get file info for {entry.name}: {e}")
            continue

        rom_path = Path(entry.path)
        try:
            sha1 = calculate_rom_sha1(rom_path)
        except OSError as e:
            logging.warning(f"Failed to calculate SHA1 for {rom_path}: {e}")
            sha1 = ''

        rom = LocalRomFile(
            slug=slug,
            path=rom_path,
            file_name=entry.name,
            sha1=sha1,
            last_modified=mtime_of(stat),
        )
        # Some emulators keep the ROM extension in the save name (game.gba.sav)
        rom.save_file = save_map.get(rom.base_name) or save_map.get(entry.name)

        if rom_cache is not None:
            rom_id, rom_name, found = rom_cache.lookup(fs_slug or slug, entry.name)
            if found:
                rom.rom_id, rom.rom_name = rom_id, rom_name

        roms.append(rom)

    return roms


def _scan_slug_dir(layout, slug, rom_dir, rom_cache, fs_slugs):
    save_map = _save_map(find_save_files(layout, slug))
    return scan_rom_directory(slug, rom_dir, save_map, rom_cache, fs_slugs.get(slug))


def _scan_tagged(layout, slugs, rom_cache, fs_slugs):
    result = {}
    base = layout.rom_directory
    try:
        entries = sorted(os.scandir(base), key=lambda e: e.name)
    except OSError as e:
        logging.error(f"Failed to read ROM directory {base}: {e}")
        return result

    tags_by_slug = {slug: layout.platform_tags(slug) for slug in slugs}

    for entry in entries:
        if entry.name.startswith('.') or not entry.is_dir():
            continue
        tag = parse_tag(entry.name)
        if not tag:
            logging.debug(f"No tag found in directory {entry.name}")
            continue

        for slug, tags in tags_by_slug.items():
            if tag not in tags:
                continue
            roms = _scan_slug_dir(layout, slug, Path(entry.path), rom_cache, fs_slugs)
            if roms:
                result.setdefault(slug, []).extend(roms)
                logging.debug(f"Found {len(roms)} ROMs for {slug} in {entry.name}")

    return result


def _scan_direct(layout, slugs, rom_cache, fs_slugs):
    result = {}
    for slug in slugs:
        rom_dir = layout.platform_rom_directory(slug)
        if not rom_dir.is_dir():
            continue
        roms = _scan_slug_dir(layout, slug, rom_dir, rom_cache, fs_slugs)
        if roms:
            result[slug] = roms
            logging.debug(f"Found {len(roms)} ROMs for {slug}")
    return result


def scan_all_roms(layout, rom_cache=None, platforms=None):
    """Map of RomM slug -> LocalRomFile list for everything on the device.

    ``platforms`` (RomM Platform records) narrows the scan and supplies the
    fs_slug used for ROM cache lookups; without it every known slug is tried.
    """
    if platforms:
        slugs = [p.slug for p in platforms]
        fs_slugs = {p.slug: p.fs_slug or p.slug for p in platforms}
    else:
        slugs = sorted(set(layout.platform_map) | set(layout.directory_mappings))
        fs_slugs = {}

    logging.debug(f"Starting ROM scan in {layout.rom_directory}")
    if layout.cfw == CFW.NEXTUI:
        result = _scan_tagged(layout, slugs, rom_cache, fs_slugs)
    else:
        result = _scan_direct(layout, slugs, rom_cache, fs_slugs)

    total = sum(len(roms) for roms in result.values())
    logging.info(f"ROM scan found {total} ROMs across {len(result)} platforms")
    return result
