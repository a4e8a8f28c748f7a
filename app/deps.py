"""Process-wide services for the API, exposed as FastAPI dependencies.

Tests swap any of these out through ``app.dependency_overrides``.
"""
import logging
import threading
from typing import Optional

from app.runs import RunRegistry
from app.sessions import SessionCache
from tablecrm.enrichment import EnrichmentPipeline
from tablecrm.gateway import GenerativeGateway
from tablecrm.notifications.gmail import InMemoryCredentialStore
from tablecrm.record_store import InMemoryRecordStore, RecordStore
from tablecrm.settings import POSTGRES_DSN, load_gateway_config

log = logging.getLogger("api.deps")

_lock = threading.Lock()
_store: Optional[RecordStore] = None
_gateway: Optional[GenerativeGateway] = None
_pipeline: Optional[EnrichmentPipeline] = None
_credentials = InMemoryCredentialStore()
_registry = RunRegistry()
_sessions = SessionCache()


def get_store() -> RecordStore:
    global _store
    with _lock:
        if _store is None:
            if POSTGRES_DSN:
                from tablecrm.pg_store import PostgresRecordStore

                pg = PostgresRecordStore()
                pg.ensure_schema()
                _store = pg
                log.info("record store: postgres")
            else:
                _store = InMemoryRecordStore()
                log.info("record store: in-memory (POSTGRES_DSN not set)")
        return _store


def get_gateway() -> GenerativeGateway:
    """Raises ConfigurationError (503) until an OpenAI key is configured."""
    global _gateway
    with _lock:
        if _gateway is None:
            _gateway = GenerativeGateway(load_gateway_config())
        return _gateway


def get_pipeline() -> EnrichmentPipeline:
    global _pipeline
    gateway = get_gateway()
    with _lock:
        if _pipeline is None or _pipeline.gateway is not gateway:
            _pipeline = EnrichmentPipeline(gateway)
        return _pipeline


def get_credentials() -> InMemoryCredentialStore:
    return _credentials


def get_registry() -> RunRegistry:
    return _registry


def get_sessions() -> SessionCache:
    return _sessions
