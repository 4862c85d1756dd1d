"""
Persistent state store shared by every execution context

Provides a small async key-value interface with change notifications:

- ``MemoryStateStore``: process-local store, several sync managers sharing one
  instance behave like several contexts sharing one browser profile
- ``FileStateStore``: one JSON file per key in a directory, readable and
  writable by any process; change notifications come from a watcher task

Neither store offers compare-and-swap. Mutual exclusion is layered on top by
the sync manager's lease lock.
"""

import asyncio
import copy
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from filelock import FileLock, Timeout

from ..exceptions import StoreError
from .callbacks import ListenerRegistry, Unsubscribe

ChangeListener = Callable[[Any], None]


class StateStore(ABC):
    """Abstract base class for persistent state stores"""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._watchers: Dict[str, ListenerRegistry] = {}

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the stored value or None"""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any):
        pass

    async def set_many(self, items: Dict[str, Any]):
        """Write several keys as one logical write"""
        for key, value in items.items():
            await self.set(key, value)

    @abstractmethod
    async def remove(self, key: str):
        pass

    def on_change(self, key: str, listener: ChangeListener) -> Unsubscribe:
        """
        Watch a key for changes

        The listener receives the new value, or None when the key was removed.
        """
        registry = self._watchers.get(key)
        if registry is None:
            registry = ListenerRegistry(f"store[{key}]")
            self._watchers[key] = registry
        return registry.add(listener)

    def _notify(self, key: str, value: Any):
        registry = self._watchers.get(key)
        if registry:
            registry.notify(value)

    async def close(self):
        """Release background resources"""
        pass


class MemoryStateStore(StateStore):
    """In-process store, values are deep-copied in and out"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any):
        self._data[key] = copy.deepcopy(value)
        self._notify(key, copy.deepcopy(value))

    async def set_many(self, items: Dict[str, Any]):
        for key, value in items.items():
            self._data[key] = copy.deepcopy(value)
        for key, value in items.items():
            self._notify(key, copy.deepcopy(value))

    async def remove(self, key: str):
        if key in self._data:
            del self._data[key]
            self._notify(key, None)

    def keys(self):
        return list(self._data.keys())


FileStamp = Optional[Tuple[int, int, int]]


class FileStateStore(StateStore):
    """
    Directory-backed store: one ``<key>.json`` file per key

    Writes are guarded by a per-key FileLock and made atomic with a temp file
    and ``os.replace``. A watcher task polls file stamps (inode, mtime, size)
    and reports changes made by any process, this one included.
    """

    def __init__(self, state_dir: Union[str, Path], watch_interval: float = 0.25, lock_timeout: float = 5.0):
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.watch_interval = watch_interval
        self.lock_timeout = lock_timeout

        self._stamps: Dict[str, FileStamp] = {}
        self._watch_task: Optional[asyncio.Task] = None
        self._closed = False

    def _path(self, key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.@-]", "_", key)
        return self.state_dir / f"{safe_key}.json"

    def _lock(self, key: str) -> FileLock:
        return FileLock(str(self._path(key)) + ".lock", timeout=self.lock_timeout)

    def _stamp(self, key: str) -> FileStamp:
        try:
            st = self._path(key).stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    # ---- blocking helpers, run in a worker thread ----

    def _read(self, key: str) -> Any:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StoreError("read", key, str(e))

    def _write(self, key: str, value: Any):
        path = self._path(key)
        try:
            with self._lock(key):
                fd, tmp_name = tempfile.mkstemp(dir=str(self.state_dir), prefix=f".{path.stem}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(value, f, ensure_ascii=False)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_name, path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
        except Timeout as e:
            raise StoreError("write", key, f"file lock timeout: {e}")
        except (OSError, TypeError, ValueError) as e:
            raise StoreError("write", key, str(e))

    def _delete(self, key: str):
        try:
            with self._lock(key):
                self._path(key).unlink(missing_ok=True)
        except Timeout as e:
            raise StoreError("remove", key, f"file lock timeout: {e}")
        except OSError as e:
            raise StoreError("remove", key, str(e))

    # ---- async interface ----

    async def get(self, key: str) -> Any:
        self._ensure_watcher()
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any):
        self._ensure_watcher()
        await asyncio.to_thread(self._write, key, value)

    async def set_many(self, items: Dict[str, Any]):
        self._ensure_watcher()
        for key, value in items.items():
            await asyncio.to_thread(self._write, key, value)

    async def remove(self, key: str):
        self._ensure_watcher()
        await asyncio.to_thread(self._delete, key)

    def on_change(self, key: str, listener: ChangeListener) -> Unsubscribe:
        if key not in self._stamps:
            self._stamps[key] = self._stamp(key)
        unsubscribe = super().on_change(key, listener)
        self._ensure_watcher()
        return unsubscribe

    def _ensure_watcher(self):
        if self._closed or not self._watchers:
            return
        if self._watch_task is not None and not self._watch_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started by the next call made from inside an event loop
            return
        self._watch_task = loop.create_task(self._watch_loop())

    async def _watch_loop(self):
        self.logger.debug(f"Watching {self.state_dir} every {self.watch_interval}s")
        while not self._closed:
            await asyncio.sleep(self.watch_interval)
            await self.check_changes()

    async def check_changes(self) -> int:
        """Scan watched keys once and notify listeners, returns the number of changed keys"""
        changed = 0
        for key in list(self._watchers.keys()):
            stamp = self._stamp(key)
            if stamp == self._stamps.get(key):
                continue
            self._stamps[key] = stamp
            changed += 1
            try:
                value = None if stamp is None else await asyncio.to_thread(self._read, key)
            except StoreError as e:
                self.logger.warning(f"Change detected on '{key}' but read failed: {e}")
                continue
            self._notify(key, value)
        return changed

    async def close(self):
        self._closed = True
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
