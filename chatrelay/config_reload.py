"""Reload configuration when the config file changes on disk."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOG = logging.getLogger(__name__)

ReloadCallback = Callable[[Path], Awaitable[None]]


def event_touches_file(event: FileSystemEvent, file_name: str) -> bool:
    """Return true when a non-directory event names `file_name` as source or destination."""
    if getattr(event, "is_directory", False):
        return False
    for attr in ("src_path", "dest_path"):
        path = getattr(event, attr, None)
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        if path and Path(path).name == file_name:
            return True
    return False


class _ChangeSignal(FileSystemEventHandler):
    """Bridge watchdog's observer thread to an asyncio event."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, file_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._file_name = file_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event_touches_file(event, self._file_name):
            self._loop.call_soon_threadsafe(self._changed.set)


class ConfigWatcher:
    """Watch one config file and await `on_reload` whenever its mtime changes."""

    def __init__(self, config_file: Path, on_reload: ReloadCallback) -> None:
        self.config_file = config_file
        self._on_reload = on_reload
        self._mtime = self._current_mtime()

    def _current_mtime(self) -> float | None:
        return self.config_file.stat().st_mtime if self.config_file.exists() else None

    async def check(self) -> bool:
        """Reload if the file exists and changed since the last successful load."""
        mtime = self._current_mtime()
        if mtime is None or mtime == self._mtime:
            return False
        LOG.info("Configuration change detected at %s, reloading...", self.config_file)
        try:
            await self._on_reload(self.config_file)
        except Exception as exc:
            LOG.warning("Configuration reload failed, keeping current config: %s", exc)
            return False
        self._mtime = mtime
        LOG.info("Configuration reloaded successfully")
        return True

    async def run_forever(self) -> None:
        """Observe the config directory until cancelled."""
        watch_dir = self.config_file.parent.resolve()
        if not watch_dir.is_dir():
            LOG.info("Config directory %s does not exist, hot reload disabled", watch_dir)
            return

        changed = asyncio.Event()
        observer = Observer()
        observer.schedule(
            _ChangeSignal(asyncio.get_running_loop(), changed, self.config_file.name),
            str(watch_dir),
            recursive=False,
        )
        observer.start()
        LOG.debug("Watching %s for configuration changes", self.config_file)
        try:
            while True:
                await changed.wait()
                changed.clear()
                await self.check()
        finally:
            observer.stop()
            # join() blocks, keep it off the event loop.
            with contextlib.suppress(RuntimeError):
                await asyncio.to_thread(observer.join, 2.0)
