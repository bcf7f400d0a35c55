from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc

from hrms.errors import StorageUnavailable
from hrms.tenancy import TenantHandle
from hrms.utils.validators import is_record_id
from .filters import FilterCriteria

Record = Dict[str, Any]
Mutator = Callable[[Record], Tuple[Dict[str, Any], Iterable[dict]]]


def utcnow() -> datetime:
    """Naive UTC; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def storage_errors(company_code: str = ""):
    """Connection-level failures and driver/pool timeouts -> StorageUnavailable."""
    try:
        yield
    except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as exc:
        raise StorageUnavailable(f"Storage unavailable{' for ' + company_code if company_code else ''}") from exc


class FeedbackStore:
    """
    Thin repository over one tenant's Feedback table.
    Every method accepts an optional `conn` so callers can group calls in one
    transaction (see transaction()); without it each call commits on its own.
    """

    def __init__(self, handle: TenantHandle, *, clock: Callable[[], datetime] = utcnow):
        self.handle = handle
        self.table = handle.table
        self.clock = clock

    @property
    def company_code(self) -> str:
        return self.handle.company_code

    @contextmanager
    def transaction(self):
        with storage_errors(self.company_code):
            with self.handle.begin() as conn:
                yield conn

    @contextmanager
    def _conn(self, conn=None):
        if conn is not None:
            yield conn
        else:
            with self.transaction() as c:
                yield c

    # ---- reads ----

    def find_by_id(self, record_id: int, conn=None, *, for_update: bool = False) -> Optional[Record]:
        # ids no backend can hold simply do not exist
        if not is_record_id(record_id):
            return None
        stmt = sa.select(self.table).where(self.table.c.id == record_id)
        if for_update:
            stmt = stmt.with_for_update()
        with self._conn(conn) as c:
            row = c.execute(stmt).mappings().first()
        return dict(row) if row else None

    def find_one(self, criteria: FilterCriteria, conn=None) -> Optional[Record]:
        rows = self.find_many(criteria, sort=[("id", "asc")], limit=1, conn=conn)
        return rows[0] if rows else None

    def find_many(
        self,
        criteria: Optional[FilterCriteria] = None,
        *,
        sort: Optional[Sequence[Tuple[str, str]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
        conn=None,
    ) -> List[Record]:
        stmt = sa.select(self.table)
        if criteria is not None and not criteria.is_empty():
            stmt = stmt.where(criteria.compile(self.table))

        order = []
        for col_name, direction in (sort or []):
            col = self.table.c[col_name]
            order.append(col.asc() if direction == "asc" else col.desc())
        if not any(name == "id" for name, _ in (sort or [])):
            order.append(self.table.c.id.asc())
        stmt = stmt.order_by(*order)

        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._conn(conn) as c:
            return [dict(r) for r in c.execute(stmt).mappings().all()]

    def count_matching(self, criteria: Optional[FilterCriteria] = None, conn=None) -> int:
        stmt = sa.select(sa.func.count()).select_from(self.table)
        if criteria is not None and not criteria.is_empty():
            stmt = stmt.where(criteria.compile(self.table))
        with self._conn(conn) as c:
            return int(c.execute(stmt).scalar() or 0)

    # ---- writes ----

    def insert(self, values: Dict[str, Any], conn=None) -> Record:
        now = self.clock()
        row = dict(values)
        row.setdefault("history", [])
        row["created_at"] = now
        row["updated_at"] = now
        with self._conn(conn) as c:
            result = c.execute(self.table.insert().values(**row))
            new_id = result.inserted_primary_key[0]
            return self.find_by_id(new_id, conn=c)

    def modify(self, record_id: int, mutator: Mutator, conn=None) -> Optional[Record]:
        """
        Single-document read-modify-write inside one transaction.
        mutator(current) -> (patch, history_entries); entries are appended, never replace.
        Returns the updated record, or None when the id does not resolve.
        """
        with self._conn(conn) as c:
            current = self.find_by_id(record_id, conn=c, for_update=True)
            if current is None:
                return None
            patch, entries = mutator(dict(current))
            values = dict(patch)
            values.pop("id", None)
            values.pop("history", None)
            entries = list(entries or [])
            if entries:
                values["history"] = list(current.get("history") or []) + entries
            values["updated_at"] = self.clock()
            c.execute(self.table.update().where(self.table.c.id == record_id).values(**values))
            return self.find_by_id(record_id, conn=c)

    def update_by_id(self, record_id: int, patch: Dict[str, Any], conn=None) -> Optional[Record]:
        return self.modify(record_id, lambda _cur: (patch, ()), conn=conn)

    def append_history(self, record_id: int, entries: Iterable[dict], conn=None) -> Optional[Record]:
        entries = list(entries)
        return self.modify(record_id, lambda _cur: ({}, entries), conn=conn)

    def delete_by_id(self, record_id: int, conn=None) -> bool:
        if not is_record_id(record_id):
            return False
        with self._conn(conn) as c:
            result = c.execute(self.table.delete().where(self.table.c.id == record_id))
            return (result.rowcount or 0) > 0

    def delete_many(self, criteria: FilterCriteria, conn=None) -> int:
        if criteria.is_empty():
            # refuse to wipe a whole tenant table through a predicate-less call
            raise ValueError("delete_many requires at least one condition")
        with self._conn(conn) as c:
            result = c.execute(self.table.delete().where(criteria.compile(self.table)))
            return int(result.rowcount or 0)
