"""
BIOS Manager for RomM handheld sync
Handles BIOS detection, verification, and download from RomM firmware
"""

import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .constants import (
    CORE_BIOS_SUBDIRECTORIES,
    LIBRETRO_CORE_TO_BIOS,
    PLATFORM_TO_LIBRETRO_CORES,
    SMALL_BUFFER_SIZE,
    BIOSFile,
)
from .errors import RomMError

LIBRETRO_SUFFIX = '_libretro'


class BIOSStatus(str, Enum):
    MISSING = 'missing'
    VALID = 'valid'
    INVALID_HASH = 'invalid_hash'
    NO_HASH = 'no_hash'


@dataclass
class BIOSFileStatus:
    file: BIOSFile
    status: BIOSStatus
    exists: bool = False
    size: int = 0
    actual_md5: str = ''
    expected_md5: str = ''
    path: Optional[Path] = None


class MatchStrategy(str, Enum):
    EXACT_FILENAME = 'exact_filename'
    RELATIVE_PATH = 'relative_path'
    BASENAME_FILENAME = 'basename_filename'
    BASENAME_RELATIVE_PATH = 'basename_relativepath'


@dataclass
class FirmwareMatch:
    file: BIOSFile
    firmware: object
    strategy: MatchStrategy


def normalize_core_name(core_name):
    if core_name.endswith(LIBRETRO_SUFFIX):
        return core_name[:-len(LIBRETRO_SUFFIX)]
    return core_name


def _basename(path):
    return os.path.basename((path or '').replace('\\', '/'))


def match_firmware(files, firmware_list):
    """Pair required BIOS files with RomM firmware entries.

    Strategies run in order and the first one that hits wins: exact file
    name, exact relative path, remote path basename == file name, remote path
    basename == relative path basename. Returns ``(matches, unmatched)``.
    """
    matches = []
    unmatched = []

    for bios_file in files:
        found = None
        for fw in firmware_list:
            if fw.file_name == bios_file.file_name:
                found = FirmwareMatch(bios_file, fw, MatchStrategy.EXACT_FILENAME)
                break
        if found is None:
            for fw in firmware_list:
                if fw.file_path and fw.file_path == bios_file.relative_path:
                    found = FirmwareMatch(bios_file, fw, MatchStrategy.RELATIVE_PATH)
                    break
        if found is None:
            for fw in firmware_list:
                if fw.file_path and _basename(fw.file_path) == bios_file.file_name:
                    found = FirmwareMatch(bios_file, fw, MatchStrategy.BASENAME_FILENAME)
                    break
        if found is None:
            for fw in firmware_list:
                if fw.file_path and _basename(fw.file_path) == _basename(bios_file.relative_path):
                    found = FirmwareMatch(bios_file, fw, MatchStrategy.BASENAME_RELATIVE_PATH)
                    break

        if found is None:
            logging.debug(f"No firmware on server for {bios_file.file_name}")
            unmatched.append(bios_file)
        else:
            logging.debug(f"Matched {bios_file.file_name} to {found.firmware.file_name} ({found.strategy.value})")
            matches.append(found)

    return matches, unmatched


class BiosManager:
    """Manages BIOS files for the device's emulator cores"""

    def __init__(self, layout, romm_client=None, log_callback=None, download_timeout=None,
                 platform_cores=None, core_bios=None, core_subdirectories=None):
        self.layout = layout
        self.romm_client = romm_client
        self.log = log_callback or logging.info
        self.download_timeout = download_timeout

        self.platform_cores = PLATFORM_TO_LIBRETRO_CORES if platform_cores is None else platform_cores
        self.core_bios = LIBRETRO_CORE_TO_BIOS if core_bios is None else core_bios
        self.core_subdirectories = CORE_BIOS_SUBDIRECTORIES if core_subdirectories is None else core_subdirectories

    def _cores_for_platform(self, platform_slug):
        return [normalize_core_name(c) for c in self.platform_cores.get(platform_slug, [])]

    def get_bios_files_for_platform(self, platform_slug) -> List[BIOSFile]:
        """All BIOS files any of the platform's cores want, first occurrence wins"""
        bios_files = []
        seen = set()
        for core_name in self._cores_for_platform(platform_slug):
            core_info = self.core_bios.get(core_name)
            if core_info is None:
                continue
            for bios_file in core_info.files:
                if bios_file.file_name not in seen:
                    seen.add(bios_file.file_name)
                    bios_files.append(bios_file)
        return bios_files

    def get_bios_file_paths(self, bios_file, platform_slug):
        """Every place the file may live on this device, in lookup order"""
        subdirectories = []
        for core_name in self._cores_for_platform(platform_slug):
            subdir = self.core_subdirectories.get(core_name)
            core_info = self.core_bios.get(core_name)
            if not subdir or core_info is None:
                continue
            if any(f.file_name == bios_file.file_name for f in core_info.files):
                subdirectories.append(subdir)

        paths = []
        for root in self.layout.bios_directories_for_slug(platform_slug):
            candidates = [root / bios_file.relative_path]
            candidates += [root / subdir / bios_file.file_name for subdir in subdirectories]
            for candidate in candidates:
                if candidate not in paths:
                    paths.append(candidate)
        return paths

    def calculate_md5(self, file_path):
        """Calculate MD5 hash of a file"""
        md5 = hashlib.md5()
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(SMALL_BUFFER_SIZE), b''):
                md5.update(chunk)
        return md5.hexdigest()

    def check_bios_file_status(self, bios_file, platform_slug):
        status = BIOSFileStatus(file=bios_file, status=BIOSStatus.MISSING, expected_md5=bios_file.md5_hash)

        for path in self.get_bios_file_paths(bios_file, platform_slug):
            if not path.is_file():
                continue
            try:
                status.size = path.stat().st_size
                status.actual_md5 = self.calculate_md5(path)
            except OSError as e:
                logging.warning(f"Could not read BIOS file {path}: {e}")
                return status

            status.exists = True
            status.path = path
            break

        if not status.exists:
            return status

        if not bios_file.md5_hash:
            status.status = BIOSStatus.NO_HASH
        elif status.actual_md5.lower() == bios_file.md5_hash.lower():
            status.status = BIOSStatus.VALID
        else:
            status.status = BIOSStatus.INVALID_HASH
        return status

    def check_platform_bios(self, platform_slug):
        """Status of every BIOS file the platform needs"""
        return [self.check_bios_file_status(f, platform_slug) for f in self.get_bios_files_for_platform(platform_slug)]

    def save_bios_file(self, bios_file, platform_slug, source_path):
        """Copy a downloaded file to every candidate location"""
        written = []
        for path in self.get_bios_file_paths(bios_file, platform_slug):
            path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, path)
            written.append(path)
        return written

    def download_bios(self, files, platform):
        """Download ``files`` for ``platform`` from RomM.

        Returns ``(downloaded, failed, unmatched)`` lists of BIOSFile. A hash
        mismatch is logged and the file is kept so the user can decide.
        """
        if not self.romm_client:
            raise RomMError("Not connected to RomM")

        firmware_list = self.romm_client.get_firmware(platform.id)
        matches, unmatched = match_firmware(files, firmware_list)
        for bios_file in unmatched:
            self.log(f"⚠️ {bios_file.file_name} is not available on the server")

        downloaded = []
        failed = []
        for match in matches:
            bios_file = match.file
            fd, tmp_name = tempfile.mkstemp(prefix='bios-', suffix='.tmp')
            os.close(fd)
            tmp_path = Path(tmp_name)
            try:
                self.romm_client.download_firmware(match.firmware, tmp_path, timeout=self.download_timeout)

                if bios_file.md5_hash:
                    actual = self.calculate_md5(tmp_path)
                    if actual.lower() != bios_file.md5_hash.lower():
                        logging.warning(f"MD5 hash mismatch for {bios_file.file_name}: "
                                        f"expected {bios_file.md5_hash}, got {actual}")

                self.save_bios_file(bios_file, platform.slug, tmp_path)
                downloaded.append(bios_file)
                self.log(f"✅ Downloaded BIOS {bios_file.file_name}")
            except (RomMError, OSError) as e:
                failed.append(bios_file)
                self.log(f"❌ Failed to download BIOS {bios_file.file_name}: {e}")
            finally:
                try:
                    tmp_path.unlink()
                except FileNotFoundError:
                    pass

        return downloaded, failed, unmatched

    def download_missing_bios(self, platform):
        """Download every required file that is not already valid on the device"""
        statuses = self.check_platform_bios(platform.slug)
        needed = [s.file for s in statuses if s.status in (BIOSStatus.MISSING, BIOSStatus.INVALID_HASH)]
        if not needed:
            self.log(f"✅ All BIOS files present for {platform.name or platform.slug}")
            return [], [], []
        return self.download_bios(needed, platform)
