"""
The data access layer facade.

Callers use `add`, `get`, `update`, `delete` and `subscribe` without knowing
which backend serves them. In remote-enabled mode Firestore is the read path
and every successful write is mirrored into the local store; in local-only
mode the local store does everything. Running out of Firestore quota on a
write drops the session to local-only and retries the write locally once.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

from dacite import DaciteError

from datastore.errors import QuotaExceededError, RecordNotFoundError
from datastore.filters import Predicate, compile_filters, sort_records
from datastore.local_store import LocalStore
from datastore.remote_store import RemoteStore
from datastore.selector import BackendSelector
from datastore.subscriptions import OnChange, Subscription, SubscriptionRouter
from shared.constants import ID_FIELD, RESERVED_COLLECTIONS, key_field_for
from shared.types import (
    RECORD_TYPES,
    Record,
    encode_patch,
    encode_record,
    needs_merge_check,
    record_from_dict,
    validate_merged,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DataAccessLayer:
    """Uniform async CRUD + subscribe surface over the remote and local stores."""

    def __init__(
        self,
        selector: BackendSelector,
        local: LocalStore,
        remote: Optional[RemoteStore] = None,
        *,
        router: Optional[SubscriptionRouter] = None,
        poll_interval: float = 1.5,
        on_fallback: Optional[Callable[[QuotaExceededError], None]] = None,
    ):
        if selector.remote_enabled and remote is None:
            raise ValueError("A remote store is required when use-remote is set")
        self.selector = selector
        self.local = local
        self.remote = remote
        self.router = router or SubscriptionRouter(poll_interval=poll_interval)
        # One worker per backend keeps commits in submission order.
        self._local_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="datastore-local"
        )
        self._remote_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="datastore-remote"
        )
        self._pending_mirrors: set[asyncio.Future] = set()
        self.on_fallback = on_fallback
        # The quota error that moved this session to local-only, if any.
        self.last_fallback: Optional[QuotaExceededError] = None

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection in RESERVED_COLLECTIONS or collection not in RECORD_TYPES:
            raise ValueError(f"Unknown collection: {collection}")

    async def _run_local(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._local_executor, functools.partial(fn, *args)
        )

    async def _run_remote(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._remote_executor, functools.partial(fn, *args)
        )

    def _mirror(self, operation: str, collection: str, record_id: str, fn, *args) -> None:
        """Queues a best-effort write to the local store without waiting for it."""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._local_executor, functools.partial(fn, *args)
        )
        self._pending_mirrors.add(future)

        def _done(fut: asyncio.Future) -> None:
            self._pending_mirrors.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.warning(
                    "Mirror %s of %s/%s to the local store failed: %s",
                    operation,
                    collection,
                    record_id,
                    exc,
                )

        future.add_done_callback(_done)

    async def flush(self) -> None:
        """Waits until every queued mirror write has finished."""
        while self._pending_mirrors:
            await asyncio.gather(*list(self._pending_mirrors), return_exceptions=True)

    def _fall_back(self, exc: QuotaExceededError) -> None:
        if not self.selector.fall_back_to_local(exc.message):
            return
        self.last_fallback = exc
        if self.on_fallback is not None:
            self.on_fallback(exc)

    def _decode(self, collection: str, record: dict) -> Optional[Record]:
        try:
            return record_from_dict(collection, record)
        except DaciteError as exc:
            logger.warning(
                "Skipping malformed %s record %s: %s",
                collection,
                record.get(ID_FIELD) or record.get(key_field_for(collection)),
                exc,
            )
            return None

    def _decode_all(self, collection: str, records: list[dict]) -> list[Record]:
        decoded = (self._decode(collection, record) for record in records)
        return [record for record in decoded if record is not None]

    # --------------------------------------------------------------- operations

    async def add(self, collection: str, record: Record | Mapping[str, Any]) -> str:
        """Stores a new record and returns its id."""
        self._check_collection(collection)
        data = encode_record(collection, record)

        if self.selector.remote_enabled:
            try:
                record_id = await self._run_remote(self.remote.add, collection, data)
            except QuotaExceededError as exc:
                self._fall_back(exc)
                return await self._add_local(collection, data)
            mirrored = self._with_key(collection, data, record_id)
            self._mirror("add", collection, record_id, self.local.add, collection, mirrored)
            return record_id

        return await self._add_local(collection, data)

    @staticmethod
    def _with_key(collection: str, data: dict, record_id: str) -> dict:
        record = dict(data)
        record[ID_FIELD] = record_id
        record.setdefault(key_field_for(collection), record_id)
        return record

    async def _add_local(self, collection: str, data: dict) -> str:
        key_field = key_field_for(collection)
        record = dict(data)
        if not record.get(key_field):
            record[key_field] = str(uuid.uuid4())
        record.setdefault(ID_FIELD, record[key_field])
        return await self._run_local(self.local.add, collection, record)

    async def get(
        self,
        collection: str,
        filters: Optional[Iterable[Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Record]:
        """
        Returns the typed records of `collection` matching every filter.

        Filters are `Predicate`s, `{"field", "operator", "value"}` mappings or
        `(field, operator, value)` tuples.
        """
        self._check_collection(collection)
        predicates = compile_filters(filters)
        records = await self._fetch(collection, predicates)
        if order_by:
            records = sort_records(records, order_by, descending)
        decoded = self._decode_all(collection, records)
        if limit is not None:
            decoded = decoded[:limit]
        return decoded

    async def get_by_id(self, collection: str, record_id: str) -> Optional[Record]:
        """Returns one typed record, or None when the id is unknown."""
        self._check_collection(collection)
        if self.selector.remote_enabled:
            record = await self._run_remote(self.remote.get_by_id, collection, record_id)
        else:
            record = await self._run_local(self.local.get_by_id, collection, record_id)
        return self._decode(collection, record) if record is not None else None

    async def _fetch(self, collection: str, predicates: tuple[Predicate, ...]) -> list[dict]:
        if self.selector.remote_enabled:
            return await self._run_remote(self.remote.get, collection, predicates)
        return await self._run_local(self.local.get, collection, predicates)

    async def update(self, collection: str, record_id: str, patch: Mapping[str, Any]) -> None:
        """Merges `patch` into an existing record."""
        self._check_collection(collection)
        changes = encode_patch(collection, patch)

        if self.selector.remote_enabled:
            try:
                if needs_merge_check(changes):
                    await self._check_remote_merge(collection, record_id, changes)
                await self._run_remote(self.remote.update, collection, record_id, changes)
            except QuotaExceededError as exc:
                self._fall_back(exc)
            else:
                self._mirror(
                    "update", collection, record_id,
                    self.local.update, collection, record_id, changes,
                )
                return

        await self._run_local(self.local.update, collection, record_id, changes)

    async def _check_remote_merge(self, collection: str, record_id: str, changes: dict) -> None:
        # Read-then-write: a concurrent writer can still slip in between.
        current = await self._run_remote(self.remote.get_by_id, collection, record_id)
        if current is None:
            raise RecordNotFoundError(collection, record_id)
        validate_merged(collection, {**current, **changes})

    async def delete(self, collection: str, record_id: str) -> None:
        """Removes a record; deleting a missing id is not an error."""
        self._check_collection(collection)

        if self.selector.remote_enabled:
            try:
                await self._run_remote(self.remote.delete, collection, record_id)
            except QuotaExceededError as exc:
                self._fall_back(exc)
            else:
                self._mirror(
                    "delete", collection, record_id,
                    self.local.delete, collection, record_id,
                )
                return

        await self._run_local(self.local.delete, collection, record_id)

    async def subscribe(
        self,
        collection: str,
        filters: Optional[Iterable[Any]],
        on_change: OnChange,
    ) -> Subscription:
        """
        Calls `on_change` with the current matching set, then again whenever it
        changes. Returns the handle that stops delivery.
        """
        self._check_collection(collection)
        predicates = compile_filters(filters)
        decode = functools.partial(self._decode, collection)

        if self.selector.remote_enabled:
            async def _open_stream(push):
                return await self._run_remote(
                    self.remote.watch, collection, predicates, push
                )

            return await self.router.stream(
                collection, on_change, open_stream=_open_stream, decode=decode
            )

        async def _fetch():
            return await self._run_local(self.local.get, collection, predicates)

        return self.router.poll(collection, on_change, fetch=_fetch, decode=decode)

    def close(self) -> None:
        """Stops every subscription and the backend workers."""
        self.router.close()
        self._remote_executor.shutdown(wait=True)
        self._local_executor.shutdown(wait=True)
