"""Per-platform cache of local filename -> RomM ROM id/name.

Every platform gets its own file and its own lock, so writes on one platform
never wait on another. A store mutates the in-memory map, snapshots it while
the lock is held and writes the snapshot after releasing the lock.
"""

import datetime
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict


def strip_extension(filename):
    """Cache key for a filename: the name without its final extension"""
    base = os.path.basename(filename)
    stem, _ = os.path.splitext(base)
    return stem or base


@dataclass
class RomCacheEntry:
    rom_id: int
    rom_name: str
    cached_at: str = ''

    def to_dict(self):
        return {'rom_id': self.rom_id, 'rom_name': self.rom_name, 'cached_at': self.cached_at}

    @classmethod
    def from_dict(cls, data):
        return cls(
            rom_id=int(data.get('rom_id', 0)),
            rom_name=data.get('rom_name', ''),
            cached_at=data.get('cached_at', ''),
        )


class _Partition:
    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, RomCacheEntry] = {}
        self.loaded = False
        # Bumped on every store; older snapshots never overwrite newer ones
        self.version = 0
        self.written_version = 0
        self.persist_lock = threading.Lock()
        self.discarded = False


class RomCache:
    """Maps ROM filenames on the device to RomM ids, one JSON file per platform"""

    def __init__(self, cache_dir):
        self.cache_dir = Path(cache_dir) / 'roms'
        self._partitions: Dict[str, _Partition] = {}
        self._registry_lock = threading.Lock()

    def _path(self, fs_slug):
        return self.cache_dir / f"{fs_slug}.json"

    def _partition(self, fs_slug):
        """Get the partition for ``fs_slug``, loading it from disk the first time"""
        with self._registry_lock:
            partition = self._partitions.get(fs_slug)
            if partition is None:
                partition = _Partition()
                self._partitions[fs_slug] = partition

        with partition.lock:
            if not partition.loaded:
                partition.entries = self._load(fs_slug)
                partition.loaded = True
        return partition

    def _load(self, fs_slug):
        path = self._path(fs_slug)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            raw_entries = data.get('entries') or {}
            entries = {key: RomCacheEntry.from_dict(value) for key, value in raw_entries.items()}
            logging.debug(f"Loaded {len(entries)} cached ROM entries for {fs_slug}")
            return entries
        except FileNotFoundError:
            return {}
        except (OSError, ValueError, AttributeError, TypeError) as e:
            logging.debug(f"Ignoring unreadable ROM cache {path}: {e}")
            return {}

    def _persist(self, fs_slug, partition, version, snapshot):
        path = self._path(fs_slug)
        with partition.persist_lock:
            if partition.discarded or version <= partition.written_version:
                return
            tmp_path = path.with_suffix('.json.tmp')
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                payload = {'entries': {key: entry.to_dict() for key, entry in snapshot.items()}}
                with open(tmp_path, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, path)
                partition.written_version = version
            except (OSError, TypeError) as e:
                logging.warning(f"Failed to save ROM cache for {fs_slug}: {e}")

    def lookup(self, fs_slug, filename):
        """Return ``(rom_id, rom_name, found)`` for a ROM file on the device"""
        partition = self._partition(fs_slug)
        key = strip_extension(filename)
        with partition.lock:
            entry = partition.entries.get(key)
        if entry is None:
            return 0, '', False
        return entry.rom_id, entry.rom_name, True

    def store(self, fs_slug, filename, rom_id, rom_name):
        self.store_many(fs_slug, [(filename, rom_id, rom_name)])

    def store_many(self, fs_slug, entries):
        """Store ``(filename, rom_id, rom_name)`` tuples and persist once"""
        partition = self._partition(fs_slug)
        now = datetime.datetime.now(datetime.timezone.utc).isoformat()

        with partition.lock:
            for filename, rom_id, rom_name in entries:
                partition.entries[strip_extension(filename)] = RomCacheEntry(rom_id, rom_name, now)
            partition.version += 1
            version = partition.version
            snapshot = dict(partition.entries)

        self._persist(fs_slug, partition, version, snapshot)

    def has_cache(self):
        try:
            return any(self.cache_dir.glob('*.json'))
        except OSError:
            return False

    def clear(self):
        with self._registry_lock:
            partitions = list(self._partitions.values())
            self._partitions.clear()
        # Wait out in-flight writes and stop later ones from recreating files
        for partition in partitions:
            with partition.persist_lock:
                partition.discarded = True
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir, ignore_errors=True)
            logging.info(f"Cleared ROM cache at {self.cache_dir}")
