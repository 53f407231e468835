import logging
from unittest import mock

import pytest

from conftest import utc
from romm_handheld_sync import app
from romm_handheld_sync.app import SyncApp, main, setup_logging
from romm_handheld_sync.cache_refresh import CacheRefresh, get_platform_cache_key
from romm_handheld_sync.errors import ConnectionErrorKind, DownloadError, RomMConnectionError, RomMError
from romm_handheld_sync.models import Platform, RemoteSave, Rom
from romm_handheld_sync.save_sync import SyncAction
from romm_handheld_sync.scanner import mtime_of


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_uses_settings(settings, tmp_path):
    log_file = tmp_path / 'logs' / 'sync.log'
    settings.set('Logging', 'level', 'debug')
    settings.set('Logging', 'file', str(log_file))

    setup_logging(settings)
    logging.debug("hello from the test")

    assert logging.getLogger().level == logging.DEBUG
    assert 'DEBUG - hello from the test' in log_file.read_text()


def test_sync_saves_end_to_end(settings, knulli_layout):
    rom_dir = knulli_layout.rom_directory / 'gba'
    rom_dir.mkdir(parents=True)
    (rom_dir / 'Zelda.gba').write_bytes(b'rom')
    (rom_dir / 'Homebrew.gba').write_bytes(b'rom')

    sync_app = SyncApp(settings, knulli_layout)
    sync_app.platforms = [Platform(id=1, slug='gba', fs_slug='gba')]
    sync_app.rom_cache.store('gba', 'Zelda.zip', 10, 'Zelda')

    client = mock.Mock()
    client.get_saves.return_value = [RemoteSave(id=2, rom_id=10, file_name='Zelda.srm', updated_at=utc(2024, 1, 1))]
    client.download_save.side_effect = lambda save, dest, timeout=None: dest.write_bytes(b'save')
    sync_app.client = client

    results, unmatched = sync_app.sync_saves()

    assert [(r.rom.file_name, r.action, r.success) for r in results] == [('Zelda.gba', SyncAction.DOWNLOAD, True)]
    assert unmatched == []
    assert (knulli_layout.save_directory / 'gba' / 'Zelda.srm').read_bytes() == b'save'
    client.get_saves.assert_called_once_with(10)


def test_watch_callback_uploads_known_rom(settings, knulli_layout, tmp_path):
    sync_app = SyncApp(settings, knulli_layout)
    sync_app.platforms = [Platform(id=1, slug='gba', fs_slug='gba')]
    sync_app.rom_cache.store('gba', 'Zelda.gba', 10, 'Zelda')
    sync_app.client = mock.Mock()
    sync_app.client.upload_save.return_value = RemoteSave(id=3, rom_id=10, file_name='Zelda.srm',
                                                          updated_at=utc(2024, 5, 1, 10))

    save = tmp_path / 'mGBA' / 'Zelda.srm'
    save.parent.mkdir()
    save.write_bytes(b'save')
    unknown = tmp_path / 'mGBA' / 'Unknown.srm'
    unknown.write_bytes(b'save')

    sync_app.on_save_settled('gba', str(save))
    sync_app.on_save_settled('gba', str(unknown))
    sync_app.on_save_settled('gba', str(tmp_path / 'mGBA' / 'Deleted.srm'))

    sync_app.client.upload_save.assert_called_once_with(10, str(save), emulator='mGBA')
    assert mtime_of(save.stat()) == utc(2024, 5, 1, 10)

    # Stamping the mtime fires the watcher again; that must not upload twice
    sync_app.on_save_settled('gba', str(save))
    assert sync_app.client.upload_save.call_count == 1

    save.write_bytes(b'new progress')
    sync_app.on_save_settled('gba', str(save))
    assert sync_app.client.upload_save.call_count == 2


def test_watch_callback_matches_save_with_rom_extension(settings, knulli_layout, tmp_path):
    sync_app = SyncApp(settings, knulli_layout)
    sync_app.platforms = [Platform(id=1, slug='gba', fs_slug='gba')]
    sync_app.rom_cache.store('gba', 'Golden Sun.gba', 12, 'Golden Sun')
    sync_app.client = mock.Mock()
    sync_app.client.upload_save.return_value = RemoteSave(id=4, rom_id=12, file_name='Golden Sun.gba.sav')

    save = tmp_path / 'gba' / 'Golden Sun.gba.sav'
    save.parent.mkdir()
    save.write_bytes(b'save')
    sync_app.on_save_settled('gba', str(save))

    sync_app.client.upload_save.assert_called_once_with(12, str(save), emulator='gba')


def download_into(game, directory, timeout=None, progress_callback=None):
    path = directory / game.files[0]['file_name']
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'rom')
    if progress_callback:
        progress_callback(3, 3)
    return path


GAMES = [
    Rom(id=21, name='Metroid Fusion', fs_name='Metroid Fusion.gba', files=[{'file_name': 'Metroid Fusion.gba'}]),
    Rom(id=22, name='Advance Wars', fs_name='Advance Wars (USA).zip', files=[{'file_name': 'Advance Wars (USA).zip'}]),
]


def test_download_roms_fetches_catalog(settings, knulli_layout):
    sync_app = SyncApp(settings, knulli_layout)
    sync_app.platforms = [Platform(id=1, slug='gba', fs_slug='gba', name='Game Boy Advance')]
    client = mock.Mock()
    client.get_roms.return_value = (GAMES, 2)
    client.download_rom.side_effect = download_into
    sync_app.client = client
    progress = []

    downloaded, missing = sync_app.download_roms('gba', ['metroid fusion', 'Advance Wars (USA)', 'Golden Sun'],
                                                 progress_callback=lambda done, total: progress.append(done))

    rom_dir = knulli_layout.platform_rom_directory('gba')
    assert downloaded == [rom_dir / 'Metroid Fusion.gba', rom_dir / 'Advance Wars (USA).zip']
    assert missing == ['Golden Sun']
    assert progress == [3, 3]
    assert sync_app.rom_cache.lookup('gba', 'Advance Wars (USA).gba') == (22, 'Advance Wars', True)
    assert [g.id for g in sync_app.games_cache.load(get_platform_cache_key(1))] == [21, 22]


def test_download_roms_uses_fresh_cached_games(settings, knulli_layout, host):
    platform = Platform(id=1, slug='gba', fs_slug='gba', name='Game Boy Advance')
    sync_app = SyncApp(settings, knulli_layout)
    sync_app.platforms = [platform]
    sync_app.cache_refresh = CacheRefresh(host, settings, [platform])
    key = get_platform_cache_key(1)
    sync_app.games_cache.save(key, GAMES)
    sync_app.cache_refresh.mark_cache_fresh(key)

    client = mock.Mock()
    client.download_rom.side_effect = download_into
    sync_app.client = client

    downloaded, missing = sync_app.download_roms('gba', ['Metroid Fusion'])

    assert [p.name for p in downloaded] == ['Metroid Fusion.gba']
    client.get_roms.assert_not_called()


def test_download_roms_continues_after_failed_transfer(settings, knulli_layout):
    sync_app = SyncApp(settings, knulli_layout)
    sync_app.platforms = [Platform(id=1, slug='gba', fs_slug='gba')]
    client = mock.Mock()
    client.get_roms.return_value = (GAMES, 2)

    def flaky(game, directory, timeout=None, progress_callback=None):
        if game.id == 21:
            raise DownloadError("connection reset")
        return download_into(game, directory)

    client.download_rom.side_effect = flaky
    sync_app.client = client

    downloaded, missing = sync_app.download_roms('gba', ['Metroid Fusion', 'Advance Wars'])

    assert [p.name for p in downloaded] == ['Advance Wars (USA).zip']
    assert missing == ['Metroid Fusion']
    assert sync_app.rom_cache.lookup('gba', 'Metroid Fusion.gba')[2] is False


def test_download_roms_unknown_platform(settings, knulli_layout):
    sync_app = SyncApp(settings, knulli_layout)
    with pytest.raises(RomMError):
        sync_app.download_roms('snes', ['Zelda'])


def connected(monkeypatch, client):
    monkeypatch.setattr(app, 'attempt_login', lambda host: mock.Mock(success=True))
    monkeypatch.setattr(app, 'get_romm_client', lambda host, timeout: client)
    refresh = mock.Mock()
    refresh.return_value.is_cache_fresh.return_value = (False, False)
    refresh.return_value.wait_for_prefetch.return_value = False
    monkeypatch.setattr(app, 'CacheRefresh', refresh)


def test_main_reports_server_error_after_login(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv('CFW', 'KNULLI')
    monkeypatch.setenv('KNULLI_BASE_PATH', str(tmp_path / 'userdata'))
    client = mock.Mock()
    client.get_platforms.side_effect = RomMConnectionError("read timed out", ConnectionErrorKind.TIMEOUT)
    connected(monkeypatch, client)

    assert main(['--sync', '--config-dir', str(tmp_path / 'cfg')]) == 1
    assert 'startup_error_timeout' in capsys.readouterr().err


def test_main_reports_firmware_failure(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv('CFW', 'KNULLI')
    monkeypatch.setenv('KNULLI_BASE_PATH', str(tmp_path / 'userdata'))
    client = mock.Mock()
    client.get_platforms.return_value = [Platform(id=7, slug='psx', fs_slug='psx')]
    client.get_firmware.side_effect = RomMConnectionError("bad gateway", ConnectionErrorKind.SERVER_ERROR, 502)
    connected(monkeypatch, client)

    assert main(['--bios', 'psx', '--config-dir', str(tmp_path / 'cfg')]) == 1
    assert 'startup_error_server' in capsys.readouterr().err


def test_main_download(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv('CFW', 'KNULLI')
    monkeypatch.setenv('KNULLI_BASE_PATH', str(tmp_path / 'userdata'))
    client = mock.Mock()
    client.get_platforms.return_value = [Platform(id=1, slug='gba', fs_slug='gba')]
    client.get_roms.return_value = (GAMES, 2)
    client.download_rom.side_effect = download_into
    connected(monkeypatch, client)

    assert main(['--download', 'gba', 'Metroid Fusion', '--config-dir', str(tmp_path / 'cfg')]) == 0
    assert 'Downloaded 1 games, 0 not downloaded' in capsys.readouterr().out
    assert client.download_rom.call_count == 1


def test_main_download_needs_a_name(tmp_path):
    with pytest.raises(SystemExit):
        main(['--download', 'gba', '--config-dir', str(tmp_path / 'cfg')])



def test_main_clear_cache(tmp_path, monkeypatch):
    monkeypatch.setenv('CFW', 'KNULLI')
    monkeypatch.setenv('KNULLI_BASE_PATH', str(tmp_path / 'userdata'))
    cache_roms = tmp_path / 'cfg' / 'cache' / 'roms'
    cache_roms.mkdir(parents=True)
    (cache_roms / 'gba.json').write_text('{"entries": {}}')

    assert main(['--clear-cache', '--config-dir', str(tmp_path / 'cfg')]) == 0
    assert not cache_roms.exists()


def test_main_reports_failed_login(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv('CFW', 'KNULLI')
    monkeypatch.setenv('KNULLI_BASE_PATH', str(tmp_path / 'userdata'))
    failed = mock.Mock(success=False, error_type='dns', error_msg='login_error_invalid_hostname')
    monkeypatch.setattr(app, 'attempt_login', lambda host: failed)

    assert main(['--sync', '--config-dir', str(tmp_path / 'cfg')]) == 1
    assert 'login_error_invalid_hostname' in capsys.readouterr().err


def test_main_unsupported_cfw(tmp_path, monkeypatch):
    monkeypatch.delenv('CFW', raising=False)
    assert main(['--sync', '--config-dir', str(tmp_path / 'cfg')]) == 2
