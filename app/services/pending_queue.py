"""Pending Action Queue: persisted, ordered retry buffer drained with exponential backoff.

A single timer task drives flushes. A failed flush doubles the delay up to
the cap; a fully drained queue resets it to the base delay. Only
network-classified failures keep an action queued, anything else drops it
with a warning.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import FailureKind
from app.schemas.pending import QUEUE_FORMAT_VERSION, PendingAction, dump_actions, pending_action_adapter
from app.services.fallback import classify_failure

logger = logging.getLogger(__name__)

Replay = Callable[[PendingAction], Awaitable[None]]


class QueueStorage(Protocol):
    async def load(self) -> list[PendingAction]: ...

    async def save(self, actions: list[PendingAction]) -> None: ...


class MemoryQueueStorage:
    """Process-local storage, for when nothing durable is available."""

    def __init__(self) -> None:
        self._actions: list[PendingAction] = []

    async def load(self) -> list[PendingAction]:
        return list(self._actions)

    async def save(self, actions: list[PendingAction]) -> None:
        self._actions = list(actions)


def parse_queue_document(data, source: str = "queue") -> list[PendingAction]:
    """Turn a decoded queue document into actions, skipping entries that don't validate."""
    if not isinstance(data, dict) or not isinstance(data.get("actions"), list):
        logger.warning(f"Ignoring malformed pending queue document in {source}")
        return []
    actions: list[PendingAction] = []
    for position, raw in enumerate(data["actions"]):
        try:
            actions.append(pending_action_adapter.validate_python(raw))
        except PydanticValidationError as e:
            logger.warning(f"Dropping unreadable pending action #{position} in {source}: {e}")
    return actions


class JsonFileQueueStorage:
    """Queue persisted as one versioned JSON document, written atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _backup(self, raw_text: str) -> None:
        # keep the unreadable document instead of overwriting it on the next save
        backup = self.path.with_name(
            f"{self.path.stem}.backup-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}{self.path.suffix}"
        )
        try:
            backup.write_text(raw_text, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not back up pending queue to {backup}: {e}")

    def _read(self) -> list[PendingAction]:
        if not self.path.exists():
            return []
        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read pending queue from {self.path}, starting empty: {e}")
            return []
        try:
            data = json.loads(raw_text)
        except ValueError as e:
            logger.warning(f"Corrupt pending queue in {self.path}, starting empty: {e}")
            self._backup(raw_text)
            return []
        version = data.get("version") if isinstance(data, dict) else None
        if version != QUEUE_FORMAT_VERSION:
            logger.warning(f"Unsupported pending queue version {version!r} in {self.path}, starting empty")
            self._backup(raw_text)
            return []
        return parse_queue_document(data, str(self.path))

    def _write(self, actions: list[PendingAction]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(dump_actions(actions), separators=(",", ":")), encoding="utf-8")
        os.replace(tmp, self.path)

    async def load(self) -> list[PendingAction]:
        return await asyncio.to_thread(self._read)

    async def save(self, actions: list[PendingAction]) -> None:
        await asyncio.to_thread(self._write, actions)


class PendingActionQueue:
    def __init__(
        self,
        storage: QueueStorage,
        replay: Replay,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        online_delay_s: float = 0.25,
    ):
        self.storage = storage
        self._replay = replay
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.online_delay_s = online_delay_s
        self._delay_s = base_delay_s
        self._timer: asyncio.Task | None = None  # sleeping until the next flush
        self._tick: asyncio.Task | None = None  # timer that woke up and is flushing
        self._flushing = False
        self._storage_lock = asyncio.Lock()
        self._closed = False

    @property
    def current_delay_s(self) -> float:
        """Delay the next backoff-driven flush will wait."""
        return self._delay_s

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    @property
    def has_scheduled_flush(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def load(self) -> list[PendingAction]:
        return await self.storage.load()

    async def save(self, actions: list[PendingAction]) -> None:
        await self.storage.save(actions)

    async def enqueue(self, action: PendingAction) -> None:
        async with self._storage_lock:
            actions = await self.storage.load()
            actions.append(action)
            await self.storage.save(actions)
        logger.info(f"Queued {action.type} for session {action.session_id} ({len(actions)} pending)")
        self.schedule_flush()

    async def pending_count(self) -> int:
        return len(await self.storage.load())

    # ---------- scheduling ----------

    def schedule_flush(self, delay_s: float | None = None) -> None:
        """Arm the flush timer unless one is already pending."""
        if self._closed or self.has_scheduled_flush:
            return
        delay = self._delay_s if delay_s is None else delay_s
        self._timer = asyncio.get_running_loop().create_task(self._wait_and_flush(delay))

    def notify_online(self) -> None:
        """Connectivity is back: flush soon, whatever the current backoff."""
        if self.has_scheduled_flush:
            self._timer.cancel()
            self._timer = None
        self.schedule_flush(self.online_delay_s)

    async def _wait_and_flush(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self._timer = None
        self._tick = asyncio.current_task()
        try:
            await self.run_once()
        finally:
            self._tick = None

    async def run_once(self) -> bool:
        """One timer tick: flush, then reset or grow the backoff and re-arm on failure."""
        if self._flushing:
            return False
        drained = await self.flush()
        if drained:
            self._delay_s = self.base_delay_s
        else:
            self._delay_s = min(self._delay_s * 2, self.max_delay_s)
            logger.info(f"Pending queue not drained, next flush in {self._delay_s:.2f}s")
            self.schedule_flush(self._delay_s)
        return drained

    # ---------- draining ----------

    async def flush(self) -> bool:
        """Replay queued actions in order; True when the queue ended up empty."""
        if self._flushing:
            return False
        self._flushing = True
        try:
            async with self._storage_lock:
                snapshot = await self.storage.load()
            if not snapshot:
                return True

            remaining: list[PendingAction] = []
            for action in snapshot:
                try:
                    await self._replay(action)
                except Exception as e:
                    if classify_failure(e) is FailureKind.NETWORK:
                        remaining.append(action)
                    else:
                        logger.warning(
                            f"Dropping pending {action.type} for session {action.session_id} after failure: {e!r}"
                        )

            settled = len(snapshot) - len(remaining)
            async with self._storage_lock:
                # anything enqueued while we were replaying sits after the snapshot
                current = await self.storage.load()
                remaining.extend(current[len(snapshot):])
                await self.storage.save(remaining)
            logger.info(f"Flushed pending queue: {settled} settled, {len(remaining)} left")
            return not remaining
        finally:
            self._flushing = False

    def start(self) -> None:
        """Drain whatever a previous process left behind."""
        self._closed = False
        self.schedule_flush(0)

    async def aclose(self) -> None:
        self._closed = True
        for task in (self._timer, self._tick):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer = None
        self._tick = None
