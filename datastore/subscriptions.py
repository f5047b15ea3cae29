"""
Realtime change delivery.

Sources hand a subscription the full matching set whenever they have one:
Firestore snapshot listeners push it from their own thread, the local
store is polled. The subscription diffs each set against the last one it
delivered and calls the consumer on the event loop, in order, only when
something changed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional

from datastore.errors import DataAccessError
from shared.constants import ID_FIELD, UID_FIELD

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.5


class ChangeKind(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class Change:
    kind: ChangeKind
    record: Any


@dataclass
class ChangeSet:
    """One delivery: the full current set plus what changed since the last one."""

    records: list
    changes: list[Change] = field(default_factory=list)
    initial: bool = False


OnChange = Callable[[ChangeSet], Optional[Awaitable[None]]]


def _record_key(record: dict) -> Optional[str]:
    return record.get(ID_FIELD) or record.get(UID_FIELD)


def diff_records(previous: dict[str, dict], current: list[dict]) -> list[tuple[ChangeKind, dict]]:
    changes: list[tuple[ChangeKind, dict]] = []
    seen: set[str] = set()
    for record in current:
        key = _record_key(record)
        seen.add(key)
        if key not in previous:
            changes.append((ChangeKind.ADDED, record))
        elif previous[key] != record:
            changes.append((ChangeKind.MODIFIED, record))
    for key, record in previous.items():
        if key not in seen:
            changes.append((ChangeKind.REMOVED, record))
    return changes


class Subscription:
    """
    Handle for one consumer. Calling it (or `unsubscribe()`) stops delivery;
    once that returns no further callback starts.
    """

    def __init__(
        self,
        collection: str,
        on_change: OnChange,
        *,
        decode: Callable[[dict], Any] = lambda record: record,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.collection = collection
        self._on_change = on_change
        self._decode = decode
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[ChangeSet] = asyncio.Queue()
        self._last: Optional[dict[str, dict]] = None
        self._detach: Optional[Callable[[], Any]] = None
        self._on_close: list[Callable[["Subscription"], None]] = []
        self.closed = False
        self._task = self._loop.create_task(self._deliver())

    def attach(self, detach: Callable[[], Any]) -> None:
        """Registers how to stop the underlying source."""
        if self.closed:
            detach()
            return
        self._detach = detach

    def offer(self, records: list[dict]) -> None:
        """
        Accepts a full matching set. Must run on the subscription's loop.

        Records the decoder rejects (returns None for) are left out of the set.
        """
        if self.closed:
            return
        kept: list[dict] = []
        decoded: list[Any] = []
        for record in records:
            value = self._decode(record)
            if value is None:
                continue
            kept.append(record)
            decoded.append(value)

        if self._last is None:
            self._last = {_record_key(record): record for record in kept}
            self._queue.put_nowait(ChangeSet(records=decoded, initial=True))
            return
        changes = diff_records(self._last, kept)
        if not changes:
            return
        change_set = ChangeSet(
            records=decoded,
            changes=[Change(kind, self._decode(record)) for kind, record in changes],
        )
        self._last = {_record_key(record): record for record in kept}
        self._queue.put_nowait(change_set)

    def offer_threadsafe(self, records: list[dict]) -> None:
        """Entry point for sources that run on another thread."""
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self.offer, records)
        except RuntimeError:
            # Event loop already closed; nothing left to deliver to.
            logger.debug("Dropped snapshot for %s after loop shutdown", self.collection)

    async def _deliver(self) -> None:
        while not self.closed:
            change_set = await self._queue.get()
            if self.closed:
                return
            try:
                result = self._on_change(change_set)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber callback for %s failed", self.collection)

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        detach, self._detach = self._detach, None
        if detach is not None:
            detach()
        if self._task is not asyncio.current_task(self._loop):
            self._task.cancel()
        for callback in self._on_close:
            callback(self)

    def add_close_callback(self, callback: Callable[["Subscription"], None]) -> None:
        self._on_close.append(callback)

    __call__ = unsubscribe


class SubscriptionRouter:
    """Creates subscriptions and keeps track of the live ones."""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.poll_interval = poll_interval
        self._active: set[Subscription] = set()

    @property
    def active(self) -> list[Subscription]:
        return list(self._active)

    def _open(self, collection: str, on_change: OnChange, decode) -> Subscription:
        subscription = Subscription(collection, on_change, decode=decode)
        self._active.add(subscription)
        subscription.add_close_callback(self._active.discard)
        return subscription

    async def stream(
        self,
        collection: str,
        on_change: OnChange,
        *,
        open_stream: Callable[[Callable[[list[dict]], None]], Awaitable[Callable[[], Any]]],
        decode: Callable[[dict], Any] = lambda record: record,
    ) -> Subscription:
        """Subscribes to a push source such as a Firestore snapshot listener."""
        subscription = self._open(collection, on_change, decode)
        try:
            detach = await open_stream(subscription.offer_threadsafe)
        except BaseException:
            subscription.unsubscribe()
            raise
        subscription.attach(detach)
        return subscription

    def poll(
        self,
        collection: str,
        on_change: OnChange,
        *,
        fetch: Callable[[], Awaitable[list[dict]]],
        decode: Callable[[dict], Any] = lambda record: record,
        interval: Optional[float] = None,
    ) -> Subscription:
        """Subscribes by sampling `fetch` every `interval` seconds."""
        subscription = self._open(collection, on_change, decode)
        task = asyncio.get_running_loop().create_task(
            self._poll_loop(subscription, fetch, interval or self.poll_interval)
        )
        subscription.attach(task.cancel)
        return subscription

    async def _poll_loop(
        self,
        subscription: Subscription,
        fetch: Callable[[], Awaitable[list[dict]]],
        interval: float,
    ) -> None:
        while not subscription.closed:
            try:
                records = await fetch()
            except DataAccessError as exc:
                logger.warning("Polling %s failed: %s", subscription.collection, exc)
            except Exception:
                logger.exception("Polling %s failed", subscription.collection)
            else:
                subscription.offer(records)
            await asyncio.sleep(interval)

    def close(self) -> None:
        for subscription in list(self._active):
            subscription.unsubscribe()
