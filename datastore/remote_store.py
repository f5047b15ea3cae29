"""
Remote document store: Cloud Firestore and an in-memory test implementation.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Protocol

from google.api_core import exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from datastore.errors import (
    InvalidFilterError,
    PermissionDeniedError,
    QuotaExceededError,
    RecordNotFoundError,
    TransientError,
)
from datastore.filters import (
    RANGE_OPERATORS,
    Operator,
    Predicate,
    apply_filters,
    matches_all,
)
from shared.constants import ID_FIELD, UID_FIELD, key_field_for
from shared.json_utils import to_json_safe

logger = logging.getLogger(__name__)

# Firestore caps the number of values in a single 'in' clause.
MAX_IN_VALUES = 30

RecordsCallback = Callable[[list[dict]], None]


class RemoteStore(Protocol):
    """Operations the data access layer needs from the remote backend."""

    def add(self, collection: str, record: dict) -> str:
        ...

    def get(self, collection: str, predicates: tuple[Predicate, ...] = ()) -> list[dict]:
        ...

    def get_by_id(self, collection: str, record_id: str) -> Optional[dict]:
        ...

    def update(self, collection: str, record_id: str, patch: dict) -> None:
        ...

    def delete(self, collection: str, record_id: str) -> None:
        ...

    def watch(
        self,
        collection: str,
        predicates: tuple[Predicate, ...],
        on_records: RecordsCallback,
    ) -> Callable[[], None]:
        ...


def split_pushdown(
    predicates: tuple[Predicate, ...],
) -> tuple[list[Predicate], list[Predicate]]:
    """
    Splits predicates into the part Firestore can evaluate and the remainder.

    Firestore accepts one array-contains, one 'in' (up to 30 values), one
    '!=' and range filters on a single field per query. Anything beyond that
    is evaluated client-side, as are predicates on the document id.
    """
    pushed: list[Predicate] = []
    residual: list[Predicate] = []
    seen_contains = False
    seen_in = False
    seen_not_equal = False
    inequality_field: Optional[str] = None

    for predicate in predicates:
        # The document id is not a stored field.
        if predicate.field == ID_FIELD:
            residual.append(predicate)
            continue
        operator = predicate.operator
        if operator is Operator.CONTAINS:
            if seen_contains:
                residual.append(predicate)
                continue
            seen_contains = True
        elif operator is Operator.IN:
            if seen_in or len(predicate.value) > MAX_IN_VALUES:
                residual.append(predicate)
                continue
            seen_in = True
        elif operator is Operator.NE or operator in RANGE_OPERATORS:
            if inequality_field not in (None, predicate.field):
                residual.append(predicate)
                continue
            if operator is Operator.NE:
                if seen_not_equal:
                    residual.append(predicate)
                    continue
                seen_not_equal = True
            inequality_field = predicate.field
        pushed.append(predicate)
    return pushed, residual


def _firestore_operator(operator: Operator) -> str:
    if operator is Operator.CONTAINS:
        return "array-contains"
    return operator.value


@contextmanager
def _translate_errors(collection: str) -> Iterator[None]:
    """Normalises google-api-core failures into data access errors."""
    try:
        yield
    except (exceptions.ResourceExhausted, exceptions.TooManyRequests) as exc:
        raise QuotaExceededError(
            f"Firestore quota exceeded on {collection}: {exc}",
            details={"collection": collection},
        ) from exc
    except (
        exceptions.PermissionDenied,
        exceptions.Unauthenticated,
        exceptions.Forbidden,
    ) as exc:
        raise PermissionDeniedError(
            f"Firestore refused access to {collection}: {exc}",
            details={"collection": collection},
        ) from exc
    except (
        exceptions.ServiceUnavailable,
        exceptions.DeadlineExceeded,
        exceptions.InternalServerError,
        exceptions.Aborted,
        exceptions.GatewayTimeout,
        exceptions.RetryError,
        ConnectionError,
    ) as exc:
        raise TransientError(
            f"Transient Firestore failure on {collection}: {exc}",
            details={"collection": collection},
        ) from exc
    except (exceptions.InvalidArgument, exceptions.FailedPrecondition) as exc:
        raise InvalidFilterError(
            f"Firestore rejected the query on {collection}: {exc}",
            details={"collection": collection},
        ) from exc


def _default_client(project_id: Optional[str], credentials_path: Optional[str]):
    import firebase_admin
    from firebase_admin import credentials, firestore

    try:
        app = firebase_admin.get_app()
    except ValueError:
        cred = credentials.Certificate(credentials_path) if credentials_path else None
        options = {"projectId": project_id} if project_id else None
        app = firebase_admin.initialize_app(cred, options)
    return firestore.client(app)


class FirestoreRemoteStore:
    """Firestore-backed remote store."""

    def __init__(
        self,
        client=None,
        *,
        project_id: Optional[str] = None,
        credentials_path: Optional[str] = None,
        verify_results: bool = False,
    ):
        self._client = client or _default_client(project_id, credentials_path)
        self.verify_results = verify_results

    def _to_record(self, snapshot) -> dict:
        data = to_json_safe(snapshot.to_dict() or {})
        data[ID_FIELD] = snapshot.id
        return data

    def _build_query(self, collection: str, predicates: tuple[Predicate, ...]):
        pushed, residual = split_pushdown(predicates)
        return self._query(collection, pushed), pushed, residual

    def _query(self, collection: str, pushed: list[Predicate]):
        query = self._client.collection(collection)
        for predicate in pushed:
            query = query.where(
                filter=FieldFilter(
                    predicate.field,
                    _firestore_operator(predicate.operator),
                    predicate.value,
                )
            )
        return query

    def _index_free_query(self, collection: str, predicates: tuple[Predicate, ...]):
        """
        Pushes down only equality predicates, which Firestore serves by merging
        single-field indexes. Everything else is filtered client-side.
        """
        pushed, _ = split_pushdown(
            tuple(p for p in predicates if p.operator is Operator.EQ)
        )
        residual = [p for p in predicates if p not in pushed]
        return self._query(collection, pushed), pushed, residual

    def add(self, collection: str, record: dict) -> str:
        data = {key: value for key, value in record.items() if key != ID_FIELD}
        with _translate_errors(collection):
            if key_field_for(collection) == UID_FIELD and data.get(UID_FIELD):
                doc_ref = self._client.collection(collection).document(data[UID_FIELD])
                doc_ref.set(data)
            else:
                _, doc_ref = self._client.collection(collection).add(data)
        logger.debug("Firestore id generated for %s: %s", collection, doc_ref.id)
        return doc_ref.id

    def get(self, collection: str, predicates: tuple[Predicate, ...] = ()) -> list[dict]:
        query, pushed, residual = self._build_query(collection, predicates)
        with _translate_errors(collection):
            try:
                records = [self._to_record(snapshot) for snapshot in query.stream()]
            except exceptions.FailedPrecondition as exc:
                # Usually a missing composite index.
                logger.warning(
                    "Firestore cannot serve the filter on %s (%s); filtering client-side",
                    collection,
                    exc,
                )
                query, pushed, residual = self._index_free_query(collection, predicates)
                records = [self._to_record(snapshot) for snapshot in query.stream()]
        if self.verify_results and pushed:
            drifted = [record for record in records if not matches_all(record, pushed)]
            if drifted:
                logger.warning(
                    "Firestore returned %d record(s) from %s that fail the local evaluator",
                    len(drifted),
                    collection,
                )
                records = apply_filters(records, pushed)
        return apply_filters(records, residual)

    def get_by_id(self, collection: str, record_id: str) -> Optional[dict]:
        with _translate_errors(collection):
            snapshot = self._client.collection(collection).document(record_id).get()
        if not snapshot.exists:
            return None
        return self._to_record(snapshot)

    def update(self, collection: str, record_id: str, patch: dict) -> None:
        doc_ref = self._client.collection(collection).document(record_id)
        try:
            with _translate_errors(collection):
                doc_ref.update(patch)
        except exceptions.NotFound as exc:
            raise RecordNotFoundError(collection, record_id) from exc

    def delete(self, collection: str, record_id: str) -> None:
        with _translate_errors(collection):
            self._client.collection(collection).document(record_id).delete()

    def watch(
        self,
        collection: str,
        predicates: tuple[Predicate, ...],
        on_records: RecordsCallback,
    ) -> Callable[[], None]:
        """
        Streams the matching set. `on_records` receives the full current set
        on every snapshot, on a Firestore background thread.

        Listener errors arrive after registration, so a listener never relies
        on a composite index: only equalities are pushed down.
        """
        query, _, residual = self._index_free_query(collection, predicates)

        def _on_snapshot(snapshots, changes, read_time) -> None:
            records = [self._to_record(snapshot) for snapshot in snapshots]
            on_records(apply_filters(records, residual))

        with _translate_errors(collection):
            watch = query.on_snapshot(_on_snapshot)
        return watch.unsubscribe


@dataclass
class InMemoryRemoteStore:
    """Thread-safe stand-in for Firestore used in development and tests."""

    collections: dict = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.RLock()
        self._watchers: list[tuple[str, tuple[Predicate, ...], RecordsCallback]] = []

    def _current(self, collection: str, predicates: tuple[Predicate, ...]) -> list[dict]:
        docs = self.collections.get(collection, {})
        records = [
            {**copy.deepcopy(data), ID_FIELD: doc_id} for doc_id, data in docs.items()
        ]
        return apply_filters(records, predicates)

    def _notify(self, collection: str) -> None:
        for watched, predicates, callback in list(self._watchers):
            if watched == collection:
                callback(self._current(collection, predicates))

    def add(self, collection: str, record: dict) -> str:
        data = {key: value for key, value in record.items() if key != ID_FIELD}
        if key_field_for(collection) == UID_FIELD and data.get(UID_FIELD):
            doc_id = data[UID_FIELD]
        else:
            doc_id = uuid.uuid4().hex
        with self._lock:
            self.collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
            self._notify(collection)
        return doc_id

    def get(self, collection: str, predicates: tuple[Predicate, ...] = ()) -> list[dict]:
        with self._lock:
            return self._current(collection, predicates)

    def get_by_id(self, collection: str, record_id: str) -> Optional[dict]:
        with self._lock:
            data = self.collections.get(collection, {}).get(record_id)
            if data is None:
                return None
            return {**copy.deepcopy(data), ID_FIELD: record_id}

    def update(self, collection: str, record_id: str, patch: dict) -> None:
        with self._lock:
            docs = self.collections.get(collection, {})
            if record_id not in docs:
                raise RecordNotFoundError(collection, record_id)
            docs[record_id].update(copy.deepcopy(patch))
            self._notify(collection)

    def delete(self, collection: str, record_id: str) -> None:
        with self._lock:
            removed = self.collections.get(collection, {}).pop(record_id, None)
            if removed is not None:
                self._notify(collection)

    def watch(
        self,
        collection: str,
        predicates: tuple[Predicate, ...],
        on_records: RecordsCallback,
    ) -> Callable[[], None]:
        entry = (collection, predicates, on_records)
        with self._lock:
            self._watchers.append(entry)
            on_records(self._current(collection, predicates))

        def _detach() -> None:
            with self._lock:
                if entry in self._watchers:
                    self._watchers.remove(entry)

        return _detach

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.collections.clear()
            self._watchers.clear()
