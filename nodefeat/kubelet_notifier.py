"""Notifications about changes of the kubelet state and periodic ticks."""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

_DEVICE_PLUGINS_DIR_NAME = "device-plugins"
_STATE_FILES = frozenset(
    {"cpu_manager_state", "memory_manager_state", "kubelet_internal_checkpoint"}
)
_POLL = 0.1


class EventType(str, enum.Enum):
    """What triggered a notification."""

    INTERVAL_BASED = "intervalBased"
    FS_UPDATE = "fsUpdate"


@dataclass(frozen=True)
class Info:
    """A notification."""

    event: EventType


def is_state_file(path: str) -> bool:
    """Tell whether path names one of the kubelet state files."""
    return os.path.basename(path) in _STATE_FILES


class _Handler(FileSystemEventHandler):
    def __init__(self, events: queue.Queue[str]):
        super().__init__()
        self._events = events

    def on_any_event(self, event: Any) -> None:
        for attr in ("src_path", "dest_path"):
            path = getattr(event, attr, "")
            if path:
                self._events.put(os.fsdecode(path))


class Notifier:
    """Sends Info objects to dest on every tick and on kubelet state changes.

    dest is anything with a put() method, such as a queue.Queue. A
    sleep_interval of zero or less disables the ticks.
    """

    def __init__(self, sleep_interval: float, dest: Any, kubelet_state_dir: str):
        self.sleep_interval = sleep_interval
        self.dest = dest
        self._fs_events: queue.Queue[str] = queue.Queue()
        self._stop = threading.Event()
        paths = [kubelet_state_dir, os.path.join(kubelet_state_dir, _DEVICE_PLUGINS_DIR_NAME)]
        for path in paths:
            if not os.path.isdir(path):
                raise FileNotFoundError(f"failed to watch: {path!r}; no such directory")
        self._observer = Observer()
        handler = _Handler(self._fs_events)
        for path in paths:
            self._observer.schedule(handler, path, recursive=False)
        self._observer.daemon = True
        self._observer.start()

    def run(self) -> None:
        """Deliver notifications until stop() is called."""
        interval = self.sleep_interval
        next_tick = time.monotonic() + interval if interval > 0 else None
        while not self._stop.is_set():
            timeout = _POLL
            if next_tick is not None:
                timeout = min(max(0.0, next_tick - time.monotonic()), _POLL)
            try:
                path: str | None = self._fs_events.get(timeout=timeout)
            except queue.Empty:
                path = None

            if next_tick is not None and time.monotonic() >= next_tick:
                log.debug("timer update received")
                self.dest.put(Info(EventType.INTERVAL_BASED))
                next_tick += interval

            if path is not None:
                log.debug("fs event received for %s", os.path.basename(path))
                if is_state_file(path):
                    self.dest.put(Info(EventType.FS_UPDATE))

    def stop(self) -> None:
        """Stop delivering notifications and stop watching the file system."""
        self._stop.set()
        self._observer.stop()
        self._observer.join()