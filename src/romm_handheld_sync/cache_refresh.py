"""Background cache validation, BIOS availability and platform prefetch.

One ``CacheRefresh`` is built by the application at startup with the host,
settings and the platforms it discovered. ``start()`` fans out one BIOS probe
and one validate-and-prefetch task per platform. UI code then asks it whether
a platform's cached games are still fresh before hitting the network.

The module-level helpers at the bottom accept ``None`` so callers that run
before the coordinator exists fall back to their own network checks.
"""

import datetime
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from .constants import PREFETCH_PAGE_SIZE
from .errors import RomMError
from .models import Rom, format_timestamp, parse_timestamp
from .romm_client import get_romm_client


def get_platform_cache_key(platform_id):
    return f"platform_{platform_id}"


class GamesCache:
    """Full game lists per cache key, used to answer 'has anything changed?'"""

    def __init__(self, cache_dir):
        self.cache_dir = Path(cache_dir) / 'games'

    def _path(self, key):
        return self.cache_dir / f"{key}.json"

    def save(self, key, games):
        latest = max((g.updated_at for g in games if g.updated_at), default=None)
        payload = {
            'total': len(games),
            'latest_updated_at': format_timestamp(latest),
            'saved_at': datetime.datetime.now(datetime.timezone.utc).isoformat(),
            'games': [g.to_dict() for g in games],
        }
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with open(self._path(key), 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)

    def _read(self, key):
        try:
            with open(self._path(key), 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logging.debug(f"Ignoring unreadable games cache for {key}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def load(self, key):
        data = self._read(key)
        if data is None:
            return None
        return [Rom.from_dict(g) for g in data.get('games', [])]

    def load_metadata(self, key):
        """``(total, latest_updated_at)`` as recorded at save time, or None"""
        data = self._read(key)
        if data is None:
            return None
        return data.get('total', 0), data.get('latest_updated_at')


def check_cache_freshness(client, games_cache, key, platform_id):
    """Compare the newest remote ROM and the total count with the cached page"""
    cached = games_cache.load_metadata(key)
    if cached is None:
        return False

    newest, total = client.get_roms(platform_id, page=1, limit=1, order_by='updated_at', order_dir='desc')
    remote_latest = format_timestamp(newest[0].updated_at) if newest else None

    cached_total, cached_latest = cached
    cached_latest = format_timestamp(parse_timestamp(cached_latest))
    return cached_total == total and cached_latest == remote_latest


def fetch_platform_games(client, platform_id):
    """Every game of a platform, paging until the server's total is reached"""
    all_games = []
    page = 1
    while True:
        games, total = client.get_roms(platform_id, page=page, limit=PREFETCH_PAGE_SIZE)
        all_games.extend(games)
        if len(all_games) >= total or not games:
            break
        page += 1
    return all_games


class CacheRefresh:
    """Startup cache validation, BIOS availability and prefetch coordinator"""

    def __init__(self, host, settings, platforms, rom_cache=None, client_factory=get_romm_client, max_workers=8):
        self.host = host
        self.settings = settings
        self.platforms = list(platforms)
        self.rom_cache = rom_cache
        self.client_factory = client_factory
        self.max_workers = max_workers
        self.games_cache = GamesCache(settings.cache_dir)

        self._freshness = {}
        self._freshness_lock = threading.Lock()

        self._bios = {}
        self._bios_lock = threading.Lock()

        self._prefetch_in_progress = {}
        self._prefetch_lock = threading.Lock()

        self._thread = None
        self._started = False
        self._start_lock = threading.Lock()

    def _client(self):
        return self.client_factory(self.host, self.settings.api_timeout)

    def start(self):
        """Run validation and prefetch in the background; only allowed once"""
        with self._start_lock:
            if self._started:
                raise RuntimeError("CacheRefresh has already been started")
            self._started = True

        self._thread = threading.Thread(target=self._run, name='cache-refresh', daemon=True)
        self._thread.start()

    def wait(self, timeout=None):
        """Block until the background run finishes; True if it has"""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        logging.debug("CacheRefresh: Starting background cache validation and prefetch")

        workers = max(1, min(self.max_workers, len(self.platforms) * 2 or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='cache-refresh') as executor:
            # BIOS probes are cheap, queue them first
            futures = [executor.submit(self._fetch_bios_availability, p) for p in self.platforms]
            futures += [executor.submit(self._validate_and_prefetch, p) for p in self.platforms]
            for future in futures:
                try:
                    future.result()
                except Exception as e:
                    logging.error(f"CacheRefresh: Worker failed: {e}")

        logging.debug(f"CacheRefresh: Completed for {len(self.platforms)} platforms "
                      f"({len(self._freshness)} freshness, {len(self._bios)} BIOS entries)")

    def _fetch_bios_availability(self, platform):
        try:
            firmware = self._client().get_firmware(platform.id)
        except RomMError as e:
            logging.debug(f"CacheRefresh: Failed to fetch BIOS info for {platform.name}: {e}")
            has_bios = False
        else:
            has_bios = len(firmware) > 0
            logging.debug(f"CacheRefresh: {platform.name} has BIOS: {has_bios}")

        with self._bios_lock:
            self._bios[platform.id] = has_bios

    def _validate_and_prefetch(self, platform):
        key = get_platform_cache_key(platform.id)
        try:
            fresh = check_cache_freshness(self._client(), self.games_cache, key, platform.id)
        except RomMError as e:
            logging.debug(f"CacheRefresh: Failed to validate cache for {platform.name}: {e}")
            fresh = False

        with self._freshness_lock:
            self._freshness[key] = fresh

        if fresh:
            logging.debug(f"CacheRefresh: Cache is fresh for {platform.name}, skipping prefetch")
            return
        self.prefetch_platform(platform)

    def prefetch_platform(self, platform):
        """Fetch every game of ``platform`` into the caches.

        Only one prefetch per key runs at a time. A caller that finds one in
        flight waits for it and returns False instead of starting another.
        """
        key = get_platform_cache_key(platform.id)

        with self._prefetch_lock:
            existing = self._prefetch_in_progress.get(key)
            if existing is None:
                done = threading.Event()
                self._prefetch_in_progress[key] = done

        if existing is not None:
            existing.wait()
            return False

        try:
            logging.debug(f"CacheRefresh: Prefetching {platform.name}")
            games = self.fetch_platform_games(platform.id)
            self.games_cache.save(key, games)
            if self.rom_cache is not None:
                fs_slug = platform.fs_slug or platform.slug
                self.rom_cache.store_many(fs_slug, [(g.fs_name, g.id, g.name) for g in games if g.fs_name])
            self.mark_cache_fresh(key)
            logging.debug(f"CacheRefresh: Prefetched {len(games)} games for {platform.name}")
            return True
        except (RomMError, OSError) as e:
            logging.debug(f"CacheRefresh: Failed to prefetch {platform.name}: {e}")
            return False
        finally:
            done.set()
            with self._prefetch_lock:
                self._prefetch_in_progress.pop(key, None)

    def fetch_platform_games(self, platform_id):
        return fetch_platform_games(self._client(), platform_id)

    # Queries

    def is_cache_fresh(self, key):
        """``(is_fresh, was_validated)``; callers do their own check when not validated"""
        with self._freshness_lock:
            if key not in self._freshness:
                return False, False
            return self._freshness[key], True

    def has_bios(self, platform_id):
        with self._bios_lock:
            if platform_id not in self._bios:
                return False, False
            return self._bios[platform_id], True

    def mark_cache_stale(self, key):
        with self._freshness_lock:
            self._freshness[key] = False

    def mark_cache_fresh(self, key):
        with self._freshness_lock:
            self._freshness[key] = True

    def wait_for_prefetch(self, key, timeout=None):
        """Wait for an in-flight prefetch; True if there was one"""
        with self._prefetch_lock:
            done = self._prefetch_in_progress.get(key)
        if done is None:
            return False
        done.wait(timeout)
        return True

    def is_prefetch_in_progress(self, key):
        with self._prefetch_lock:
            return key in self._prefetch_in_progress


def is_cache_fresh(refresh, key):
    if refresh is None:
        return False, False
    return refresh.is_cache_fresh(key)


def has_bios(refresh, platform_id):
    if refresh is None:
        return False, False
    return refresh.has_bios(platform_id)


def mark_cache_stale(refresh, key):
    if refresh is not None:
        refresh.mark_cache_stale(key)


def mark_cache_fresh(refresh, key):
    if refresh is not None:
        refresh.mark_cache_fresh(key)


def wait_for_prefetch(refresh, key):
    if refresh is None:
        return False
    return refresh.wait_for_prefetch(key)


def is_prefetch_in_progress(refresh, key):
    if refresh is None:
        return False
    return refresh.is_prefetch_in_progress(key)
