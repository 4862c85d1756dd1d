"""
Cross-context state synchronization

Wraps a StateStore to provide:
- a lease-based advisory lock for read-modify-write critical sections
- broadcast of the workflow record to every context's sync listeners
- a periodic heartbeat that warns when the last sync is getting old

The lock is best effort. Without compare-and-swap two contexts can both
believe they won inside the settle window; last writer wins and the loser
notices on its next re-read. Callers must not treat it as strict mutual
exclusion.
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..exceptions import LockTimeoutError, StoreError
from .automation.registration_state_machine import STATE_STORAGE_KEY
from .callbacks import ListenerRegistry, Unsubscribe
from .state_store import StateStore

LOCK_KEY = "state_operation_lock"
SYNC_TIMESTAMP_KEY = "state_sync_timestamp"

SyncListener = Callable[[Optional[Dict[str, Any]]], None]


class StateSyncManager:
    """Lease lock, state broadcast and consistency heartbeat for one context"""

    def __init__(self, store: StateStore, context_id: str = "context",
                 clock: Callable[[], float] = time.time,
                 lock_timeout: float = 5.0,
                 stale_after: float = 10.0,
                 settle_delay: float = 0.05,
                 poll_interval: float = 0.1,
                 heartbeat_interval: float = 5.0,
                 sync_stale_after: float = 30.0):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.store = store
        self.context_id = context_id
        self.holder_id = f"{context_id}_{uuid.uuid4().hex}"
        self.clock = clock

        self.lock_timeout = lock_timeout
        self.stale_after = stale_after
        self.settle_delay = settle_delay
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.sync_stale_after = sync_stale_after

        self._listeners = ListenerRegistry("sync")
        self._store_unsubscribe: Optional[Unsubscribe] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # ---- lifecycle ----

    async def init(self):
        """Subscribe to store changes and start the heartbeat"""
        if self._store_unsubscribe is None:
            self._store_unsubscribe = self.store.on_change(STATE_STORAGE_KEY, self._on_store_change)
        self.start_heartbeat()
        self.logger.debug(f"Sync manager ready ({self.holder_id})")

    async def destroy(self):
        await self.stop_heartbeat()
        if self._store_unsubscribe is not None:
            self._store_unsubscribe()
            self._store_unsubscribe = None
        self._listeners.clear()

    # ---- lease lock ----

    def _is_stale(self, lock: Dict[str, Any]) -> bool:
        acquired_at = lock.get("acquired_at") or 0
        return self._now_ms() - acquired_at > self.stale_after * 1000

    async def acquire_lock(self, timeout: Optional[float] = None) -> bool:
        """
        Try to take the lease until ``timeout`` seconds have passed

        Returns:
            bool: True if this context holds the lock
        """
        timeout = self.lock_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                lock = await self.store.get(LOCK_KEY)
                if not lock or self._is_stale(lock):
                    if lock:
                        self.logger.info(f"Taking over stale lock held by {lock.get('holder_id')}")
                    await self.store.set(LOCK_KEY, {"holder_id": self.holder_id, "acquired_at": self._now_ms()})
                    await asyncio.sleep(self.settle_delay)

                    confirm = await self.store.get(LOCK_KEY)
                    if confirm and confirm.get("holder_id") == self.holder_id:
                        self.logger.debug(f"🔒 Lock acquired by {self.holder_id}")
                        return True
            except StoreError as e:
                # 单次读写失败 - retried on the next poll
                self.logger.warning(f"Lock attempt failed: {e}")

            if loop.time() + self.poll_interval > deadline:
                self.logger.warning(f"⏰ Lock acquisition timed out after {timeout}s ({self.holder_id})")
                return False
            await asyncio.sleep(self.poll_interval)

    async def release_lock(self) -> bool:
        """Delete the lock record, only if this context holds it"""
        try:
            lock = await self.store.get(LOCK_KEY)
            if lock and lock.get("holder_id") == self.holder_id:
                await self.store.remove(LOCK_KEY)
                self.logger.debug(f"🔓 Lock released by {self.holder_id}")
                return True
        except StoreError as e:
            self.logger.error(f"Lock release failed: {e}")
        return False

    async def execute_with_lock(self, operation: Callable[[], Union[Any, Awaitable[Any]]],
                                timeout: Optional[float] = None) -> Any:
        """
        Run ``operation`` while holding the lock

        Raises:
            LockTimeoutError: the lock could not be acquired in time
        """
        timeout = self.lock_timeout if timeout is None else timeout
        if not await self.acquire_lock(timeout):
            current = None
            try:
                lock = await self.store.get(LOCK_KEY)
                current = lock.get("holder_id") if lock else None
            except StoreError:
                pass
            raise LockTimeoutError(self.holder_id, timeout, current)

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            await self.release_lock()

    # ---- broadcast ----

    async def sync_state(self, record: Dict[str, Any]):
        """Write the workflow record and the sync timestamp together"""
        now = self._now_ms()
        await self.store.set_many({
            STATE_STORAGE_KEY: {**record, "sync_timestamp": now},
            SYNC_TIMESTAMP_KEY: now,
        })

    def add_sync_listener(self, listener: SyncListener) -> Unsubscribe:
        return self._listeners.add(listener)

    def remove_sync_listener(self, listener: SyncListener) -> bool:
        return self._listeners.remove(listener)

    def _on_store_change(self, value: Optional[Dict[str, Any]]):
        self.logger.debug(f"State changed in store: {value.get('current_state') if value else None}")
        self._listeners.notify(value)

    # ---- heartbeat ----

    def start_heartbeat(self):
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    async def stop_heartbeat(self):
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.check_state_consistency()
            except StoreError as e:
                self.logger.warning(f"Heartbeat check failed: {e}")

    async def check_state_consistency(self) -> bool:
        """
        Compare the last sync time against the staleness window

        Returns:
            bool: False if a record exists and its last sync is too old
        """
        record = await self.store.get(STATE_STORAGE_KEY)
        if not record:
            return True
        last_sync = await self.store.get(SYNC_TIMESTAMP_KEY)
        if not last_sync:
            return True
        age = (self._now_ms() - last_sync) / 1000.0
        if age > self.sync_stale_after:
            self.logger.warning(f"⚠️ State last synced {age:.0f}s ago, other contexts may be out of date")
            return False
        return True
