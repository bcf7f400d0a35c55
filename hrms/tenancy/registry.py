"""
Tenant registry: hands out storage handles bound to one company's namespace.

Two physical layouts, chosen by the URL template:
  - template contains "{company_code}": one database per company, tables named
    after the entity ("feedback");
  - otherwise: one shared database, tables prefixed per company ("acme__feedback").

Bindings are created once per (company, entity) and cached for the life of the
process. One registry is built by the app factory and shared by every request.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from hrms.errors import InvalidRequest, MissingTenant, StorageUnavailable

log = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^[A-Z0-9_-]{1,64}$")
_PLACEHOLDER = "{company_code}"


def normalize_company_code(value: Any) -> str:
    """Strip + upper-case. Empty -> MissingTenant; unsafe characters -> InvalidRequest."""
    code = "" if value is None else str(value).strip().upper()
    if not code:
        raise MissingTenant()
    if not _CODE_RE.match(code):
        raise InvalidRequest("Invalid company code", errors={"companyCode": "Use letters, digits, '-' or '_' (max 64)."})
    return code


def _snake(name: str) -> str:
    s = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name.strip())
    return re.sub(r"[^a-zA-Z0-9_]", "_", s).lower()


@dataclass(frozen=True)
class EntitySchema:
    """Logical entity + table builder: define(metadata, physical_name) -> Table."""

    name: str
    define: Callable[[sa.MetaData, str], sa.Table]


@dataclass(frozen=True)
class TenantHandle:
    company_code: str
    entity_name: str
    engine: Engine
    table: sa.Table

    def begin(self):
        return self.engine.begin()

    def connect(self):
        return self.engine.connect()

    def __repr__(self) -> str:
        return f"<TenantHandle company={self.company_code!r} entity={self.entity_name!r} table={self.table.name!r}>"


class TenantRegistry:
    def __init__(
        self,
        url_template: str,
        *,
        timeout_seconds: float = 10.0,
        engine_factory: Callable[..., Engine] = sa.create_engine,
    ):
        if not url_template:
            raise ValueError("url_template is required")
        self.url_template = url_template
        self.per_database = _PLACEHOLDER in url_template
        self.timeout_seconds = float(timeout_seconds)
        self._engine_factory = engine_factory

        self._lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._handles: Dict[Tuple[str, str], TenantHandle] = {}
        self._engines: Dict[str, Engine] = {}

        # Incremented once per successful (company, entity) setup
        self.bindings_created = 0

    # ---- public API ----

    def resolve(self, company_code: Any, entity_name: str, schema: EntitySchema) -> TenantHandle:
        code = normalize_company_code(company_code)
        key = (code, entity_name)

        handle = self._handles.get(key)
        if handle is not None:
            return handle

        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            # Another thread may have finished the setup while we waited
            handle = self._handles.get(key)
            if handle is not None:
                return handle
            handle = self._bind(code, entity_name, schema)
            with self._lock:
                self._handles[key] = handle
                self.bindings_created += 1
            return handle

    def is_cached(self, company_code: Any, entity_name: str) -> bool:
        return (normalize_company_code(company_code), entity_name) in self._handles

    def cached_keys(self) -> list:
        with self._lock:
            return sorted(self._handles)

    def dispose(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
            self._handles.clear()
            self._key_locks.clear()
        for engine in engines:
            engine.dispose()

    # ---- internals ----

    def physical_name(self, company_code: str, entity_name: str) -> str:
        entity = _snake(entity_name)
        if self.per_database:
            return entity
        return f"{company_code.lower()}__{entity}"

    def _engine_key(self, company_code: str) -> str:
        return company_code if self.per_database else "*"

    def _url_for(self, company_code: str) -> str:
        if self.per_database:
            return self.url_template.replace(_PLACEHOLDER, company_code.lower())
        return self.url_template

    def _engine_for(self, company_code: str) -> Engine:
        ekey = self._engine_key(company_code)
        with self._lock:
            engine = self._engines.get(ekey)
            if engine is None:
                engine = self._create_engine(self._url_for(company_code))
                self._engines[ekey] = engine
            return engine

    def _create_engine(self, url: str) -> Engine:
        parsed = make_url(url)
        options: Dict[str, Any] = {}
        if parsed.get_backend_name() == "sqlite":
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
            connect_args = {"check_same_thread": False, "timeout": self.timeout_seconds}
            options["connect_args"] = connect_args
            if parsed.database in (None, "", ":memory:"):
                # one shared connection, otherwise every checkout gets a fresh empty db
                options["poolclass"] = StaticPool
        else:
            options["pool_pre_ping"] = True
            options["pool_timeout"] = self.timeout_seconds
        return self._engine_factory(url, **options)

    def _bind(self, company_code: str, entity_name: str, schema: EntitySchema) -> TenantHandle:
        engine = self._engine_for(company_code)
        metadata = sa.MetaData()
        table = schema.define(metadata, self.physical_name(company_code, entity_name))
        try:
            metadata.create_all(engine, checkfirst=True)
        except (DBAPIError, SQLAlchemyError) as exc:
            log.warning(json.dumps({
                "event": "tenant_binding_failed",
                "company": company_code,
                "entity": entity_name,
                "error": exc.__class__.__name__,
            }))
            raise StorageUnavailable(f"Storage unavailable for company {company_code}") from exc

        log.info(json.dumps({
            "event": "tenant_binding_created",
            "company": company_code,
            "entity": entity_name,
            "table": table.name,
        }))
        return TenantHandle(company_code=company_code, entity_name=entity_name, engine=engine, table=table)


def registry_from_config(config) -> TenantRegistry:
    return TenantRegistry(
        config["TENANT_DATABASE_URL"],
        timeout_seconds=float(config.get("STORAGE_TIMEOUT_SECONDS", 10)),
    )


def get_registry(app=None) -> TenantRegistry:
    from flask import current_app

    app = app or current_app
    registry: Optional[TenantRegistry] = app.extensions.get("tenant_registry")
    if registry is None:
        raise RuntimeError("Tenant registry not initialised; use create_app()")
    return registry
