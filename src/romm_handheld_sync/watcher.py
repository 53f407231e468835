"""Watch save folders and report saves that stopped changing"""

import logging
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer


class SaveFileHandler(FileSystemEventHandler):
    """File system event handler for save file changes"""

    def __init__(self, callback, slug):
        self.callback = callback
        self.slug = slug

    def on_modified(self, event):
        if not event.is_directory and self.is_save_file(event.src_path):
            self.callback(self.slug, event.src_path)

    def on_created(self, event):
        self.on_modified(event)

    def on_moved(self, event):
        # Emulators often write to a temp file and rename it into place
        if not event.is_directory and self.is_save_file(event.dest_path):
            self.callback(self.slug, event.dest_path)

    def is_save_file(self, file_path):
        path = Path(file_path)
        if path.name.startswith('.') or '.backup' in path.parts:
            return False
        return path.suffix not in ('.tmp', '.part')


class SaveWatcher:
    """Watch every save folder of ``slugs`` and call ``callback(slug, path)``.

    A path is reported once it has been quiet for ``debounce`` seconds, so a
    save written in several chunks produces a single callback.
    """

    def __init__(self, layout, slugs, callback, debounce=5.0, poll_interval=1.0):
        self.layout = layout
        self.slugs = list(slugs)
        self.callback = callback
        self.debounce = debounce
        self.poll_interval = poll_interval

        self.observer = None
        self.pending = {}  # path -> (slug, last change time)
        self.pending_lock = threading.Lock()
        self.should_stop = threading.Event()
        self.worker = None

    def on_change(self, slug, path):
        with self.pending_lock:
            self.pending[path] = (slug, time.monotonic())

    def flush(self, now=None):
        """Hand settled paths to the callback; returns how many were reported"""
        now = time.monotonic() if now is None else now
        ready = []
        with self.pending_lock:
            for path, (slug, changed_at) in list(self.pending.items()):
                if now - changed_at >= self.debounce:
                    ready.append((slug, path))
                    del self.pending[path]

        for slug, path in ready:
            try:
                self.callback(slug, path)
            except Exception as e:
                logging.error(f"Save watcher callback failed for {path}: {e}")
        return len(ready)

    def _worker(self):
        while not self.should_stop.wait(self.poll_interval):
            self.flush()

    def start(self):
        self.observer = Observer()
        watched = 0
        for slug in self.slugs:
            for folder in self.layout.save_folders_for_slug(slug):
                directory = self.layout.save_directory / folder
                try:
                    directory.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    logging.error(f"❌ Failed to create save directory {directory}: {e}")
                    continue
                self.observer.schedule(SaveFileHandler(self.on_change, slug), str(directory), recursive=False)
                logging.debug(f"📁 Monitoring {slug} saves: {directory}")
                watched += 1

        self.observer.start()
        self.should_stop.clear()
        self.worker = threading.Thread(target=self._worker, name='save-watcher', daemon=True)
        self.worker.start()
        logging.info(f"Watching {watched} save directories")

    def stop(self):
        self.should_stop.set()
        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None
        if self.worker and self.worker.is_alive():
            self.worker.join(timeout=2)
        self.flush(now=float('inf'))
