"""
Dependency wiring for the data access layer.

Everything here is a process-wide singleton created on first use.
`reset_dependencies()` drops them so tests start from a clean slate.
"""

from __future__ import annotations

import logging
from typing import Optional

from datastore.blobs import BlobStore, InMemoryBlobStore, S3BlobStore
from datastore.config import Settings, get_settings
from datastore.dal import DataAccessLayer
from datastore.identity import FirebasePrincipalSource, InMemoryPrincipalSource, PrincipalSource
from datastore.local_store import LocalStore, default_database_url
from datastore.remote_store import FirestoreRemoteStore, InMemoryRemoteStore, RemoteStore
from datastore.selector import BackendSelector

_settings: Optional[Settings] = None
_selector: Optional[BackendSelector] = None
_local_store: Optional[LocalStore] = None
_remote_store: Optional[RemoteStore] = None
_blob_store: Optional[BlobStore] = None
_identity: Optional[PrincipalSource] = None
_data_access: Optional[DataAccessLayer] = None


def _current_settings() -> Settings:
    return _settings or get_settings()


def get_selector() -> BackendSelector:
    global _selector
    if _selector:
        return _selector
    _selector = BackendSelector.from_settings(_current_settings())
    return _selector


def get_local_store() -> LocalStore:
    """
    Return the single local store handle. It is opened lazily by the first
    operation and stays open for the life of the process.
    """
    global _local_store
    if _local_store:
        return _local_store

    settings = _current_settings()
    if settings.local_database_url:
        database_url = settings.local_database_url
    elif settings.use_in_memory_backends:
        database_url = "sqlite+pysqlite:///:memory:"
    else:
        database_url = default_database_url(settings.local_data_dir)
    _local_store = LocalStore(database_url, strict=settings.strict_collections)
    return _local_store


def get_remote_store() -> Optional[RemoteStore]:
    global _remote_store
    if _remote_store:
        return _remote_store

    settings = _current_settings()
    if not settings.use_remote:
        return None
    if settings.use_in_memory_backends:
        _remote_store = InMemoryRemoteStore()
    else:
        _remote_store = FirestoreRemoteStore(
            project_id=settings.firebase_project_id,
            credentials_path=settings.google_application_credentials,
            verify_results=settings.verify_remote_filters,
        )
    return _remote_store


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store:
        return _blob_store

    settings = _current_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _blob_store = InMemoryBlobStore()
    else:
        _blob_store = S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.s3_public_base_url,
        )
    return _blob_store


def get_identity() -> PrincipalSource:
    global _identity
    if _identity:
        return _identity

    settings = _current_settings()
    if settings.use_remote and not settings.use_in_memory_backends:
        _identity = FirebasePrincipalSource()
    else:
        _identity = InMemoryPrincipalSource()
    return _identity


def init_data_access(settings: Optional[Settings] = None) -> DataAccessLayer:
    """
    Builds the process-wide data access layer. Pass `settings` to override
    the environment (tests do); otherwise they are read once from it.
    """
    global _settings, _data_access
    if _data_access:
        return _data_access
    _settings = settings
    current = _current_settings()
    logging.basicConfig(level=current.log_level)
    _data_access = DataAccessLayer(
        get_selector(),
        get_local_store(),
        get_remote_store(),
        poll_interval=current.poll_interval_seconds,
    )
    return _data_access


def get_data_access() -> DataAccessLayer:
    return _data_access or init_data_access()


def reset_dependencies() -> None:
    """Drop every singleton (useful in tests)."""
    global _settings, _selector, _local_store, _remote_store
    global _blob_store, _identity, _data_access
    if _data_access:
        _data_access.close()
    if _local_store:
        _local_store.dispose()
    _settings = None
    _selector = None
    _local_store = None
    _remote_store = None
    _blob_store = None
    _identity = None
    _data_access = None
