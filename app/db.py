from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Generator
from typing import Any

from fastapi import Request
from sqlalchemy import JSON, create_engine, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.errors import ConnectivityError, ValidationFailed
from app.settings import Settings, get_settings

logger = logging.getLogger("app.tenant_db")

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")

DB_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


class MasterBase(DeclarativeBase):
    pass


class TenantBase(DeclarativeBase):
    pass


EngineFactory = Callable[[str], Engine]


def validate_db_name(db_name: str) -> str:
    normalized = (db_name or "").strip()
    if not DB_NAME_PATTERN.match(normalized):
        raise ValidationFailed(f"Invalid database name: {db_name!r}", code="INVALID_DB_NAME")
    return normalized


class ConnectionManager:
    """Owns the master engine and one lazily created engine per tenant database.

    The registry is the only process-wide mutable state. First access for a
    tenant key is single-flight: a per-key lock is taken while the engine is
    built so concurrent callers end up sharing the same pool.
    """

    def __init__(
        self,
        master_url: str,
        tenant_url_template: str,
        *,
        master_pool_size: int = 5,
        master_max_overflow: int = 10,
        tenant_pool_size: int = 5,
        tenant_max_overflow: int = 5,
        pool_recycle_seconds: int = 3600,
        verify_on_create: bool = True,
        engine_factory: EngineFactory | None = None,
    ):
        if "{db_name}" not in tenant_url_template:
            raise ValueError("tenant_url_template must contain a {db_name} placeholder")
        self._master_url = master_url
        self._tenant_url_template = tenant_url_template
        self._master_pool_size = master_pool_size
        self._master_max_overflow = master_max_overflow
        self._tenant_pool_size = tenant_pool_size
        self._tenant_max_overflow = tenant_max_overflow
        self._pool_recycle_seconds = pool_recycle_seconds
        self._verify_on_create = verify_on_create
        self._engine_factory = engine_factory

        # Reentrant so shutdown can run from a signal handler that interrupted a registry update.
        self._registry_lock = threading.RLock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._master_engine: Engine | None = None
        self._master_sessionmaker: sessionmaker[Session] | None = None
        self._tenant_engines: dict[str, Engine] = {}
        self._tenant_sessionmakers: dict[str, sessionmaker[Session]] = {}
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "ConnectionManager":
        settings = settings or get_settings()
        return cls(
            settings.master_database_url,
            settings.tenant_database_url_template,
            master_pool_size=settings.master_pool_size,
            master_max_overflow=settings.master_pool_max_overflow,
            tenant_pool_size=settings.tenant_pool_size,
            tenant_max_overflow=settings.tenant_pool_max_overflow,
            pool_recycle_seconds=settings.pool_recycle_seconds,
            verify_on_create=settings.tenant_pool_verify_on_create,
            **kwargs,
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _build_engine(self, url: str, *, pool_size: int, max_overflow: int) -> Engine:
        if self._engine_factory is not None:
            return self._engine_factory(url)
        return create_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=self._pool_recycle_seconds,
        )

    def _create_verified_engine(self, url: str, *, label: str, pool_size: int, max_overflow: int) -> Engine:
        try:
            engine = self._build_engine(url, pool_size=pool_size, max_overflow=max_overflow)
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("db_engine_create_failed", extra={"database": label, "error": str(exc)})
            raise ConnectivityError(f"Could not create connection pool for {label}") from exc

        if self._verify_on_create:
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except SQLAlchemyError as exc:
                engine.dispose()
                logger.error("db_engine_connect_failed", extra={"database": label, "error": str(exc)})
                raise ConnectivityError(f"Database unavailable: {label}") from exc
        return engine

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectivityError("Connection manager has been shut down", code="POOL_CLOSED")

    def get_master(self) -> Engine:
        self._ensure_open()
        engine = self._master_engine
        if engine is not None:
            return engine
        with self._registry_lock:
            self._ensure_open()
            if self._master_engine is None:
                self._master_engine = self._create_verified_engine(
                    self._master_url,
                    label="master",
                    pool_size=self._master_pool_size,
                    max_overflow=self._master_max_overflow,
                )
                self._master_sessionmaker = sessionmaker(
                    bind=self._master_engine,
                    autoflush=False,
                    expire_on_commit=False,
                )
                logger.info("master_pool_created")
            return self._master_engine

    def _key_lock(self, db_name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(db_name)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[db_name] = lock
            return lock

    def get_tenant(self, db_name: str) -> Engine:
        self._ensure_open()
        db_name = validate_db_name(db_name)
        engine = self._tenant_engines.get(db_name)
        if engine is not None:
            return engine

        with self._key_lock(db_name):
            self._ensure_open()
            engine = self._tenant_engines.get(db_name)
            if engine is not None:
                return engine
            engine = self._create_verified_engine(
                self._tenant_url_template.format(db_name=db_name),
                label=db_name,
                pool_size=self._tenant_pool_size,
                max_overflow=self._tenant_max_overflow,
            )
            with self._registry_lock:
                if self._closed:
                    engine.dispose()
                    raise ConnectivityError("Connection manager has been shut down", code="POOL_CLOSED")
                self._tenant_engines[db_name] = engine
                self._tenant_sessionmakers[db_name] = sessionmaker(
                    bind=engine,
                    autoflush=False,
                    expire_on_commit=False,
                )
            logger.info("tenant_pool_created", extra={"db_name": db_name})
            return engine

    def master_session(self) -> Session:
        self.get_master()
        factory = self._master_sessionmaker
        if factory is None:
            raise ConnectivityError("Connection manager has been shut down", code="POOL_CLOSED")
        return factory()

    def tenant_session(self, db_name: str) -> Session:
        self.get_tenant(db_name)
        factory = self._tenant_sessionmakers.get(validate_db_name(db_name))
        if factory is None:
            # Evicted between the two lookups.
            raise ConnectivityError(f"Database unavailable: {db_name}")
        return factory()

    def tenant_keys(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._tenant_engines)

    def close_tenant(self, db_name: str) -> bool:
        with self._registry_lock:
            engine = self._tenant_engines.pop(db_name, None)
            self._tenant_sessionmakers.pop(db_name, None)
        if engine is None:
            return False
        engine.dispose()
        logger.info("tenant_pool_closed", extra={"db_name": db_name})
        return True

    def destroy_all(self) -> None:
        with self._registry_lock:
            if self._closed:
                return
            self._closed = True
            engines = list(self._tenant_engines.items())
            self._tenant_engines.clear()
            self._tenant_sessionmakers.clear()
            master = self._master_engine
            self._master_engine = None
            self._master_sessionmaker = None

        # Checked-out connections are closed when their sessions return them.
        for db_name, engine in engines:
            try:
                engine.dispose()
            except SQLAlchemyError:
                logger.exception("tenant_pool_dispose_failed", extra={"db_name": db_name})
        if master is not None:
            try:
                master.dispose()
            except SQLAlchemyError:
                logger.exception("master_pool_dispose_failed")
        logger.info("connection_manager_destroyed", extra={"tenant_pools": len(engines)})

    def _quote(self, engine: Engine, db_name: str) -> str:
        return engine.dialect.identifier_preparer.quote_identifier(validate_db_name(db_name))

    def create_database(self, db_name: str) -> None:
        engine = self.get_master()
        statement = f"CREATE DATABASE {self._quote(engine, db_name)}"
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text(statement))
        logger.info("tenant_database_created", extra={"db_name": db_name})

    def drop_database(self, db_name: str) -> None:
        self.close_tenant(db_name)
        self.terminate_connections(db_name)
        engine = self.get_master()
        statement = f"DROP DATABASE IF EXISTS {self._quote(engine, db_name)}"
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text(statement))
        logger.info("tenant_database_dropped", extra={"db_name": db_name})

    def terminate_connections(self, db_name: str) -> int:
        engine = self.get_master()
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            result = conn.execute(
                text(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = :db_name AND pid <> pg_backend_pid()"
                ),
                {"db_name": validate_db_name(db_name)},
            )
            terminated = len(result.fetchall())
        logger.info("tenant_connections_terminated", extra={"db_name": db_name, "terminated": terminated})
        return terminated


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager


def get_master_db(request: Request) -> Generator[Session, None, None]:
    manager = get_connection_manager(request)
    db = manager.master_session()
    try:
        yield db
    finally:
        db.close()
