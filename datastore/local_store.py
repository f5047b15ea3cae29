"""
Local embedded store on SQLite (through SQLAlchemy).

Each collection is a table keyed by the collection's primary-key field with
the full record kept as JSON. The schema is versioned and only ever grows:
opening an older database creates the missing tables and leaves existing
ones untouched.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    insert,
    inspect,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from datastore.errors import (
    CollectionMissingError,
    DataAccessError,
    DuplicateIdError,
    RecordNotFoundError,
    SchemaVersionError,
    TransientError,
)
from datastore.filters import Predicate, apply_filters
from shared.constants import (
    CONVERSATIONS_COLLECTION,
    ID_FIELD,
    MESSAGES_COLLECTION,
    OFFERS_COLLECTION,
    PRODUCTS_COLLECTION,
    PURCHASED_ITEMS_COLLECTION,
    SAVED_ITEMS_COLLECTION,
    USERS_COLLECTION,
    key_field_for,
)
from shared.types import validate_merged

logger = logging.getLogger(__name__)

LOCAL_DATABASE_NAME = "campus_marketplace"

# Collections introduced at each schema version.
SCHEMA_HISTORY: dict[int, tuple[str, ...]] = {
    1: (PRODUCTS_COLLECTION, SAVED_ITEMS_COLLECTION, PURCHASED_ITEMS_COLLECTION),
    2: (OFFERS_COLLECTION,),
    3: (USERS_COLLECTION, CONVERSATIONS_COLLECTION, MESSAGES_COLLECTION),
}
SCHEMA_VERSION = max(SCHEMA_HISTORY)

_VERSION_TABLE = "schema_version"


def required_collections(version: int) -> tuple[str, ...]:
    """All collections that must exist at the given schema version."""
    collections: list[str] = []
    for step in sorted(SCHEMA_HISTORY):
        if step <= version:
            collections.extend(SCHEMA_HISTORY[step])
    return tuple(collections)


def default_database_url(data_dir: str) -> str:
    return f"sqlite:///{os.path.join(data_dir, LOCAL_DATABASE_NAME)}.sqlite3"


def _is_memory_url(database_url: str) -> bool:
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


@contextmanager
def _translate_errors(collection: str) -> Iterator[None]:
    """
    Normalises SQLAlchemy failures into data access errors. IntegrityError
    passes through so `add` can report the duplicate key.
    """
    try:
        yield
    except IntegrityError:
        raise
    except DBAPIError as exc:
        raise TransientError(
            f"Local store failure on {collection}: {exc.orig}",
            details={"collection": collection},
        ) from exc
    except SQLAlchemyError as exc:
        raise DataAccessError(
            f"Local store failure on {collection}: {exc}",
            details={"collection": collection},
        ) from exc


class LocalStore:
    """
    SQLAlchemy-backed embedded store. Accepts any SQLite URL, including
    in-memory ones for tests.
    """

    def __init__(
        self,
        database_url: str,
        *,
        schema_version: int = SCHEMA_VERSION,
        strict: bool = False,
    ):
        if not database_url:
            raise ValueError("database_url is required for LocalStore")
        if schema_version not in SCHEMA_HISTORY:
            raise ValueError(f"Unknown schema version: {schema_version}")
        self.database_url = database_url
        self.schema_version = schema_version
        self.strict = strict
        self.engine = None
        self.Session: Optional[sessionmaker] = None
        self._metadata = MetaData()
        self._version_table = Table(
            _VERSION_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True),
            Column("version", Integer, nullable=False),
        )
        self._tables: dict[str, Table] = {}
        self._existing: set[str] = set()
        self._open_lock = threading.Lock()

    def _build_engine(self):
        if _is_memory_url(self.database_url):
            return create_engine(
                self.database_url,
                future=True,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        database = make_url(self.database_url).database
        if database:
            directory = os.path.dirname(os.path.abspath(database))
            os.makedirs(directory, exist_ok=True)
        return create_engine(self.database_url, future=True)

    def _table(self, collection: str) -> Table:
        table = self._tables.get(collection)
        if table is None:
            table = Table(
                collection,
                self._metadata,
                Column("key", String, primary_key=True),
                Column("inserted_at", BigInteger, nullable=False, index=True),
                Column("data", JSON, nullable=False),
            )
            self._tables[collection] = table
        return table

    def open(self) -> "LocalStore":
        """
        Opens the database and upgrades its schema when needed.

        Safe to call repeatedly and from several threads; only the first call
        does any work.
        """
        if self.Session is not None:
            return self
        with self._open_lock:
            if self.Session is not None:
                return self
            with _translate_errors(LOCAL_DATABASE_NAME):
                engine = self._build_engine()
                try:
                    self._upgrade(engine)
                except Exception:
                    engine.dispose()
                    raise
            self.engine = engine
            self.Session = sessionmaker(
                bind=engine, class_=Session, expire_on_commit=False, future=True
            )
        return self

    def _upgrade(self, engine) -> None:
        with engine.begin() as conn:
            self._version_table.create(conn, checkfirst=True)
            row = conn.execute(select(self._version_table.c.version)).first()
            stored_version = row.version if row else 0
            if stored_version > self.schema_version:
                raise SchemaVersionError(
                    f"Local store is at version {stored_version}, "
                    f"newer than supported version {self.schema_version}",
                    details={"stored": stored_version, "supported": self.schema_version},
                )
            existing = set(inspect(conn).get_table_names())
            if stored_version < self.schema_version:
                logger.info(
                    "Upgrading local store from version %s to %s",
                    stored_version,
                    self.schema_version,
                )
                for collection in required_collections(self.schema_version):
                    if collection not in existing:
                        self._table(collection).create(conn)
                        existing.add(collection)
                        logger.info("Created local collection %s", collection)
                if row:
                    conn.execute(
                        update(self._version_table).values(version=self.schema_version)
                    )
                else:
                    conn.execute(
                        insert(self._version_table).values(
                            id=1, version=self.schema_version
                        )
                    )
            self._existing = existing - {_VERSION_TABLE}

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
        self.engine = None
        self.Session = None

    def collections(self) -> list[str]:
        self.open()
        return sorted(self._existing)

    def stored_version(self) -> int:
        self.open()
        with _translate_errors(_VERSION_TABLE), self.Session() as session:
            row = session.execute(select(self._version_table.c.version)).first()
            return row.version if row else 0

    @contextmanager
    def _transaction(self, collection: str) -> Iterator[tuple[Session, Table]]:
        """Read-write transaction on one collection: commit on exit, rollback on error."""
        self.open()
        if collection not in self._existing:
            raise CollectionMissingError(collection)
        table = self._table(collection)
        with _translate_errors(collection), self.Session.begin() as session:
            yield session, table

    @contextmanager
    def _read(self, collection: str) -> Iterator[tuple[Session, Table]]:
        self.open()
        table = self._table(collection)
        with _translate_errors(collection), self.Session() as session:
            yield session, table

    def add(self, collection: str, record: dict) -> str:
        key_field = key_field_for(collection)
        key = record.get(key_field)
        if not key or not isinstance(key, str):
            raise ValueError(f"{collection} records need a non-empty '{key_field}'")
        try:
            with self._transaction(collection) as (session, table):
                session.execute(
                    insert(table).values(
                        key=key, inserted_at=time.time_ns(), data=dict(record)
                    )
                )
        except IntegrityError as exc:
            raise DuplicateIdError(collection, key) from exc
        return key

    def get(
        self, collection: str, predicates: tuple[Predicate, ...] = ()
    ) -> list[dict]:
        self.open()
        if collection not in self._existing:
            if self.strict:
                raise CollectionMissingError(collection)
            logger.warning("Local collection %s does not exist", collection)
            return []
        with self._read(collection) as (session, table):
            rows = session.execute(
                select(table.c.data).order_by(table.c.inserted_at, table.c.key)
            ).all()
            records = [dict(row.data) for row in rows]
        return apply_filters(records, predicates)

    def get_by_id(self, collection: str, record_id: str) -> Optional[dict]:
        self.open()
        if collection not in self._existing:
            return None
        with self._read(collection) as (session, table):
            row = session.execute(
                select(table.c.data).where(table.c.key == record_id)
            ).first()
            return dict(row.data) if row else None

    def update(self, collection: str, record_id: str, patch: dict) -> None:
        key_field = key_field_for(collection)
        with self._transaction(collection) as (session, table):
            row = session.execute(
                select(table.c.data).where(table.c.key == record_id)
            ).first()
            if not row:
                raise RecordNotFoundError(collection, record_id)
            merged = {**row.data, **patch}
            # Identity is fixed at creation.
            merged[key_field] = row.data.get(key_field, record_id)
            if ID_FIELD in row.data:
                merged[ID_FIELD] = row.data[ID_FIELD]
            validate_merged(collection, merged)
            session.execute(
                update(table).where(table.c.key == record_id).values(data=merged)
            )

    def delete(self, collection: str, record_id: str) -> None:
        self.open()
        if collection not in self._existing:
            if self.strict:
                raise CollectionMissingError(collection)
            return
        with self._transaction(collection) as (session, table):
            session.execute(delete(table).where(table.c.key == record_id))

    def reset(self) -> None:
        """Clear all stored records (useful in tests)."""
        self.open()
        with _translate_errors(LOCAL_DATABASE_NAME), self.Session.begin() as session:
            for collection in self._existing:
                session.execute(delete(self._table(collection)))
