from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from runtime_config import ConfigHolder, GatewayConfig


LOG = logging.getLogger(__name__)


class _ConfigFileHandler(FileSystemEventHandler):
    def __init__(self, watcher: ConfigWatcher) -> None:
        super().__init__()
        self.watcher = watcher

    def _matches(self, raw_path: str | bytes) -> bool:
        path = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path)
        return path.resolve() == self.watcher.config_path

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self.watcher.reload()

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self.watcher.reload()

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.dest_path):
            self.watcher.reload()


class ConfigWatcher:
    """Reloads a ConfigHolder whenever its YAML file changes on disk."""

    def __init__(
        self,
        holder: ConfigHolder,
        config_path: Path,
        on_reload: Callable[[GatewayConfig], None] | None = None,
    ) -> None:
        self.holder = holder
        self.config_path = config_path.resolve()
        self.on_reload = on_reload
        self._observer: PollingObserver | None = None

    def reload(self) -> GatewayConfig:
        config = self.holder.reload()
        if self.on_reload is not None:
            self.on_reload(config)
        return config

    def start(self) -> None:
        if self._observer is not None:
            return
        directory = self.config_path.parent
        if not directory.exists():
            LOG.warning("Config watcher disabled: %s does not exist", directory)
            return

        observer = PollingObserver()
        try:
            observer.schedule(_ConfigFileHandler(self), str(directory), recursive=False)
            observer.start()
        except OSError as exc:
            LOG.error("Config watcher disabled due to startup error: %s", exc)
            return
        self._observer = observer
        LOG.info("Watching %s for configuration changes", self.config_path)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None

    @property
    def running(self) -> bool:
        return self._observer is not None
