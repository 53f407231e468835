import time
from unittest import mock

from romm_handheld_sync.watcher import SaveFileHandler, SaveWatcher


def event(path, is_directory=False, dest_path=None):
    return mock.Mock(src_path=path, is_directory=is_directory, dest_path=dest_path)


def test_handler_filters_events():
    callback = mock.Mock()
    handler = SaveFileHandler(callback, 'gba')

    handler.on_modified(event('/saves/gba/game.sav'))
    handler.on_modified(event('/saves/gba/.hidden'))
    handler.on_modified(event('/saves/gba/.backup/game [x].sav'))
    handler.on_modified(event('/saves/gba/game.sav.tmp'))
    handler.on_modified(event('/saves/gba/sub', is_directory=True))
    handler.on_moved(event('/saves/gba/tmp123', dest_path='/saves/gba/game.srm'))

    assert callback.call_args_list == [
        mock.call('gba', '/saves/gba/game.sav'),
        mock.call('gba', '/saves/gba/game.srm'),
    ]


def test_watcher_debounces_changes(knulli_layout):
    callback = mock.Mock()
    watcher = SaveWatcher(knulli_layout, ['gba'], callback, debounce=5)

    watcher.on_change('gba', '/saves/gba/game.sav')
    watcher.on_change('gba', '/saves/gba/game.sav')
    assert watcher.flush() == 0
    callback.assert_not_called()

    assert watcher.flush(now=time.monotonic() + 10) == 1
    callback.assert_called_once_with('gba', '/saves/gba/game.sav')
    assert watcher.flush(now=time.monotonic() + 20) == 0


def test_watcher_callback_errors_are_contained(knulli_layout):
    callback = mock.Mock(side_effect=[RuntimeError("upload failed"), None])
    watcher = SaveWatcher(knulli_layout, ['gba'], callback, debounce=0)

    watcher.on_change('gba', '/a.sav')
    watcher.on_change('gba', '/b.sav')
    assert watcher.flush() == 2
    assert callback.call_count == 2


def test_watcher_start_stop(knulli_layout):
    callback = mock.Mock()
    watcher = SaveWatcher(knulli_layout, ['gba'], callback, debounce=0, poll_interval=0.05)
    watcher.start()
    try:
        assert (knulli_layout.save_directory / 'gba').is_dir()
        path = knulli_layout.save_directory / 'gba' / 'game.sav'
        path.write_bytes(b'save')

        deadline = time.monotonic() + 5
        while not callback.called and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        watcher.stop()

    assert callback.called
    assert callback.call_args.args == ('gba', str(path))
