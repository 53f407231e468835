"""Command line entry point tying settings, caches and sync together"""

import logging
import os
import shutil
import sys
import threading
from pathlib import Path

from .bios_manager import BIOSStatus, BiosManager
from .cache_refresh import (
    CacheRefresh,
    GamesCache,
    fetch_platform_games,
    get_platform_cache_key,
    is_cache_fresh,
    mark_cache_fresh,
    wait_for_prefetch,
)
from .cfw import DeviceLayout
from .connection import attempt_login, classify_connection_error
from .constants import APP_VERSION
from .errors import DownloadError, RomMError
from .rom_cache import RomCache, strip_extension
from .romm_client import get_romm_client
from .save_sync import SaveSync, SyncAction, fetch_remote_saves
from .scanner import mtime_of, scan_all_roms, set_mtime
from .settings import SettingsManager
from .watcher import SaveWatcher

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(settings, level=None):
    """Configure the root logger from the [Logging] section"""
    level_name = (level or settings.get('Logging', 'level') or 'ERROR').upper()
    log_file = settings.get('Logging', 'file').strip()

    kwargs = {}
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        kwargs['filename'] = log_file

    logging.basicConfig(
        level=getattr(logging, level_name, logging.ERROR),
        format=LOG_FORMAT,
        force=True,
        **kwargs,
    )


class SyncApp:
    """Owns the long-lived pieces: settings, device layout, caches, client"""

    def __init__(self, settings=None, layout=None):
        self.settings = settings or SettingsManager()
        self.layout = layout or DeviceLayout.from_settings(self.settings)
        self.host = self.settings.get_host()
        self.rom_cache = RomCache(self.settings.cache_dir)
        self.games_cache = GamesCache(self.settings.cache_dir)
        self.client = None
        self.platforms = []
        self.cache_refresh = None
        self._stamped = {}

    def connect(self):
        """Check the server, log in and kick off background cache refresh"""
        logging.debug(f"Connecting to {self.host.to_loggable()}")
        result = attempt_login(self.host)
        if not result.success:
            logging.error(f"Login failed: {result.error_type} ({result.error_msg})")
            return result

        self.client = get_romm_client(self.host, self.settings.api_timeout)
        self.platforms = self.client.get_platforms()
        logging.info(f"Found {len(self.platforms)} platforms on RomM")

        if self.cache_refresh is None:
            self.cache_refresh = CacheRefresh(self.host, self.settings, self.platforms, rom_cache=self.rom_cache)
            self.cache_refresh.start()
        return result

    def scan(self):
        # ROM ids come from the prefetch, so let it finish first
        if self.cache_refresh is not None:
            self.cache_refresh.wait()
        return scan_all_roms(self.layout, self.rom_cache, self.platforms or None)

    def sync_saves(self):
        scanned = self.scan()
        roms = [rom for slug_roms in scanned.values() for rom in slug_roms]
        fetch_remote_saves(self.client, roms)

        save_sync = SaveSync(self.client, self.layout, download_timeout=self.settings.download_timeout)
        results = save_sync.sync(roms)

        for action in (SyncAction.UPLOAD, SyncAction.DOWNLOAD):
            done = [r for r in results if r.action == action and r.success]
            logging.info(f"{action.value}: {len(done)}")
        failed = [r for r in results if not r.success]
        for result in failed:
            logging.error(f"{result.rom.file_name}: {result.error}")
        return results, save_sync.unmatched

    def bios(self, slug, download=True):
        manager = BiosManager(self.layout, self.client, download_timeout=self.settings.download_timeout)
        statuses = manager.check_platform_bios(slug)
        for status in statuses:
            print(f"{status.status.value:>12}  {status.file.file_name}")

        platform = next((p for p in self.platforms if p.slug == slug), None)
        needs_download = any(s.status in (BIOSStatus.MISSING, BIOSStatus.INVALID_HASH) for s in statuses)
        if download and needs_download and platform is not None:
            manager.download_missing_bios(platform)
            statuses = manager.check_platform_bios(slug)
        return statuses

    def _platform(self, slug):
        platform = next((p for p in self.platforms if p.slug == slug), None)
        if platform is None:
            raise RomMError(f"Platform {slug} is not on the server")
        return platform

    def platform_games(self, platform):
        """Games of ``platform``, from the page cache when it is known fresh"""
        key = get_platform_cache_key(platform.id)
        if wait_for_prefetch(self.cache_refresh, key):
            logging.debug(f"Waited for prefetch of {platform.name}")

        fresh, validated = is_cache_fresh(self.cache_refresh, key)
        if fresh:
            games = self.games_cache.load(key)
            if games is not None:
                logging.debug(f"Using {len(games)} cached games for {platform.name}")
                return games
        elif validated:
            logging.debug(f"Cached games for {platform.name} are stale")

        games = fetch_platform_games(self.client, platform.id)
        try:
            self.games_cache.save(key, games)
            mark_cache_fresh(self.cache_refresh, key)
        except OSError as e:
            logging.warning(f"Failed to cache games for {platform.name}: {e}")
        return games

    def download_roms(self, slug, names, progress_callback=None):
        """Download the named games of ``slug`` into its ROM folder.

        Names match a game's title or its file name, with or without the
        extension, ignoring case. Returns ``(downloaded paths, names not
        downloaded)``; a name is not downloaded when nothing matches it or its
        transfer failed.
        """
        platform = self._platform(slug)
        games = self.platform_games(platform)

        by_name = {}
        for game in games:
            for name in (game.name, game.fs_name, strip_extension(game.fs_name)):
                if name:
                    by_name.setdefault(name.lower(), game)

        destination = self.layout.platform_rom_directory(slug)
        fs_slug = platform.fs_slug or platform.slug
        downloaded = []
        missing = []
        for name in names:
            game = by_name.get(name.lower())
            if game is None:
                logging.warning(f"⚠️ {name} not found on RomM for {slug}")
                missing.append(name)
                continue

            try:
                path = self.client.download_rom(game, destination, timeout=self.settings.download_timeout,
                                                progress_callback=progress_callback)
            except DownloadError as e:
                logging.error(f"❌ Failed to download {game.name}: {e}")
                missing.append(name)
                continue
            self.rom_cache.store(fs_slug, path.name, game.id, game.name)
            downloaded.append(path)
            logging.info(f"⬇️ Downloaded {game.name} to {path}")

        return downloaded, missing

    def on_save_settled(self, slug, path):
        """Upload a save the watcher saw change, when its ROM is known"""
        save_path = Path(path)
        try:
            modified = mtime_of(save_path.stat())
        except OSError as e:
            logging.debug(f"Save {path} is gone: {e}")
            return
        # The mtime written after an upload fires the watcher too
        if self._stamped.get(path) == modified:
            return

        fs_slug = next((p.fs_slug for p in self.platforms if p.slug == slug), slug)
        rom_id, rom_name, found = self.rom_cache.lookup(fs_slug, save_path.name)
        if not found:
            # game.gba.sav
            rom_id, rom_name, found = self.rom_cache.lookup(fs_slug, strip_extension(save_path.name))
        if not found:
            logging.debug(f"No ROM known for {path}, not uploading")
            return

        try:
            remote = self.client.upload_save(rom_id, path, emulator=save_path.parent.name)
            logging.info(f"⬆️ Uploaded {save_path.name} for {rom_name}")
            if remote is not None and remote.updated_at:
                set_mtime(save_path, remote.updated_at)
                self._stamped[path] = remote.updated_at
        except (RomMError, OSError) as e:
            logging.error(f"❌ Upload failed for {path}: {e}")

    def watch(self, stop_event=None):
        slugs = [p.slug for p in self.platforms]
        watcher = SaveWatcher(self.layout, slugs, self.on_save_settled)
        watcher.start()
        stop_event = stop_event or threading.Event()
        try:
            stop_event.wait()
        except KeyboardInterrupt:
            pass
        finally:
            watcher.stop()

    def clear_cache(self):
        self.rom_cache.clear()
        games_dir = Path(self.settings.cache_dir) / 'games'
        if games_dir.exists():
            shutil.rmtree(games_dir, ignore_errors=True)
        logging.info("Cache cleared")


def print_progress(downloaded, total):
    if total:
        print(f"\r  {downloaded * 100 // total:3d}% ({downloaded}/{total} bytes)", end='', flush=True)


def main(argv=None):
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description='RomM handheld sync')
    parser.add_argument('--sync', action='store_true', help='Scan ROMs and sync saves')
    parser.add_argument('--download', nargs='+', metavar=('SLUG', 'NAME'),
                        help='Download games of a platform by title or file name')
    parser.add_argument('--bios', metavar='SLUG', help='Check and download BIOS files for a platform')
    parser.add_argument('--watch', action='store_true', help='Upload saves as they change')
    parser.add_argument('--clear-cache', action='store_true', help='Remove cached catalog data')
    parser.add_argument('--config-dir', help='Settings directory')
    parser.add_argument('--log-level', help='Override the configured log level')
    parser.add_argument('--version', action='version', version=f'%(prog)s {APP_VERSION}')
    args = parser.parse_args(argv)

    if args.download and len(args.download) < 2:
        parser.error('--download needs a platform slug and at least one game name')

    settings = SettingsManager(args.config_dir)
    setup_logging(settings, args.log_level)

    try:
        app = SyncApp(settings)
    except RomMError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2

    if args.clear_cache:
        app.clear_cache()
        if not (args.sync or args.download or args.bios or args.watch):
            return 0

    try:
        result = app.connect()
        if not result.success:
            print(f"❌ Could not connect to RomM: {result.error_msg}", file=sys.stderr)
            return 1

        if args.sync:
            results, unmatched = app.sync_saves()
            failed = sum(1 for r in results if not r.success)
            print(f"✅ Synced {len(results) - failed} ROMs, {failed} failed, {len(unmatched)} unmatched saves")
        if args.download:
            slug, names = args.download[0], args.download[1:]
            downloaded, missing = app.download_roms(slug, names, progress_callback=print_progress)
            print(f"\n✅ Downloaded {len(downloaded)} games, {len(missing)} not downloaded")
        if args.bios:
            app.bios(args.bios)
        if args.watch:
            print("👀 Watching for save changes (Ctrl+C to stop)")
            app.watch()
    except RomMError as e:
        logging.error(f"RomM request failed: {e}")
        print(f"❌ {classify_connection_error(e)}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
