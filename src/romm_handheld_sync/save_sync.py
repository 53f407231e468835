"""Decide and carry out save transfers between the device and RomM"""

import datetime
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import RomMError
from .scanner import LocalRomFile, LocalSave, set_mtime

_MIN_TIME = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)


class SyncAction(str, Enum):
    SKIP = 'SKIP'
    UPLOAD = 'UPLOAD'
    DOWNLOAD = 'DOWNLOAD'


def last_remote_save(remote_saves):
    """Newest remote save by ``updated_at``.

    Equal timestamps go to the highest id, then to whichever comes first in
    the list. The input list is left untouched.
    """
    if not remote_saves:
        return None

    best = None
    best_key = None
    for save in remote_saves:
        key = (save.updated_at or _MIN_TIME, save.id or 0)
        if best is None or key > best_key:
            best, best_key = save, key
    return best


def decide(local_save, remote_saves):
    if local_save is None and not remote_saves:
        return SyncAction.SKIP
    if local_save is not None and not remote_saves:
        return SyncAction.UPLOAD
    if local_save is None:
        return SyncAction.DOWNLOAD

    remote_time = last_remote_save(remote_saves).updated_at or _MIN_TIME
    local_time = local_save.last_modified

    if local_time < remote_time:
        return SyncAction.DOWNLOAD
    if local_time > remote_time:
        return SyncAction.UPLOAD
    return SyncAction.SKIP


@dataclass
class SyncResult:
    rom: LocalRomFile
    action: SyncAction
    success: bool = True
    error: str = ''


@dataclass
class UnmatchedSave:
    """A local save whose ROM is not known to RomM"""
    slug: str
    path: os.PathLike
    rom_file_name: str


def fetch_remote_saves(client, roms):
    """Attach the server's saves to every ROM with a known id"""
    for rom in roms:
        if not rom.rom_id:
            continue
        try:
            rom.remote_saves = client.get_saves(rom.rom_id)
        except RomMError as e:
            logging.warning(f"Failed to fetch saves for {rom.file_name}: {e}")
            rom.remote_saves = []
    return roms


class SaveSync:
    """Runs upload/download decisions for a batch of scanned ROMs"""

    def __init__(self, client, layout, download_timeout=None):
        self.client = client
        self.layout = layout
        self.download_timeout = download_timeout
        self.unmatched = []

    def sync(self, roms):
        results = []
        self.unmatched = []

        for rom in roms:
            if not rom.rom_id:
                if rom.save_file is not None:
                    self.unmatched.append(UnmatchedSave(rom.slug, rom.save_file.path, rom.file_name))
                continue

            action = rom.sync_action()
            if action == SyncAction.SKIP:
                results.append(SyncResult(rom, action))
                continue

            try:
                if action == SyncAction.UPLOAD:
                    self.upload(rom)
                else:
                    self.download(rom)
                results.append(SyncResult(rom, action))
            except (RomMError, OSError) as e:
                logging.error(f"❌ {action.value} failed for {rom.file_name}: {e}")
                results.append(SyncResult(rom, action, success=False, error=str(e)))

        if self.unmatched:
            logging.info(f"{len(self.unmatched)} local saves have no matching ROM in RomM")
        return results

    def upload(self, rom):
        save = rom.save_file
        emulator = save.path.parent.name
        remote = self.client.upload_save(rom.rom_id, save.path, emulator=emulator)
        # Match the server's receive time so the next decision is SKIP
        if remote is not None and remote.updated_at:
            set_mtime(save.path, remote.updated_at)
            save.last_modified = remote.updated_at
            rom.remote_saves = list(rom.remote_saves) + [remote]
        logging.info(f"⬆️ Uploaded {save.path.name}")
        return remote

    def download(self, rom) -> Optional[LocalSave]:
        remote = last_remote_save(rom.remote_saves)

        if rom.save_file is not None:
            rom.save_file.backup()
            destination = rom.save_file.path
        else:
            # Saves are named after the local ROM, not the uploader's file name
            save_dir = self.layout.save_directory_for_slug(rom.slug, remote.emulator)
            ext = os.path.splitext(remote.file_name)[1] or '.sav'
            destination = save_dir / f"{rom.base_name}{ext}"

        self.client.download_save(remote, destination, timeout=self.download_timeout)
        if remote.updated_at:
            set_mtime(destination, remote.updated_at)

        rom.save_file = LocalSave(rom.slug, destination, remote.updated_at or rom.last_modified)
        logging.info(f"⬇️ Downloaded save for {rom.file_name}")
        return rom.save_file
