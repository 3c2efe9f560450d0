"""
Document Store — keyed documents over async SQLAlchemy.

Collections map onto ORM tables. Documents are plain dicts keyed by attribute
name (snake_case, with ``metadata`` for the JSON payload column). Filters are
``{field: value}`` for equality or ``{field: (op, value)}`` with op one of
``== != < <= > >= in not-in``. Order keys prefixed with ``-`` sort descending.

Writes that must land together go through a WriteBatch, committed in one
transaction. Conditional updates (``expect=``) are the compare-and-set
primitive used for task claims and vendor transitions.
"""

import abc
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vendorflow.errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationError
from vendorflow.models import OutreachTask, Vendor, VendorActivity, VendorMessage

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "vendors": Vendor,
    "outreach_queue": OutreachTask,
    "vendor_activities": VendorActivity,
    "vendor_messages": VendorMessage,
}

# Document key → ORM attribute ("metadata" is reserved on declarative classes)
_ATTR_NAMES = {"metadata": "extra_data"}
_DOC_KEYS = {v: k for k, v in _ATTR_NAMES.items()}

_OPS = {
    "==": lambda col, v: col == v,
    "!=": lambda col, v: col != v,
    "<": lambda col, v: col < v,
    "<=": lambda col, v: col <= v,
    ">": lambda col, v: col > v,
    ">=": lambda col, v: col >= v,
    "in": lambda col, v: col.in_(list(v)),
    "not-in": lambda col, v: col.not_in(list(v)),
}


# ─── Write Batch ──────────────────────────────────────────────────────

@dataclass
class BatchOp:
    kind: str  # "add", "update", "delete", "delete_where"
    collection: str
    doc_id: Optional[str]
    fields: dict = field(default_factory=dict)
    expect: Optional[dict] = None  # update guard, or the delete_where filters
    affected: Optional[int] = None  # rows touched, set on commit


class WriteBatch:
    """Ordered list of writes applied atomically by DocumentStore.commit()."""

    def __init__(self):
        self._ops: list[BatchOp] = []

    def add(self, collection: str, fields: dict) -> str:
        """Queue an insert. The id is generated here so callers can reference it."""
        doc_id = fields.get("id") or str(uuid.uuid4())
        self._ops.append(BatchOp("add", collection, doc_id, {**fields, "id": doc_id}))
        return doc_id

    def update(self, collection: str, doc_id: str, fields: dict, expect: Optional[dict] = None) -> None:
        """Queue a partial update. A failed ``expect`` aborts the whole batch."""
        self._ops.append(BatchOp("update", collection, doc_id, dict(fields), expect))

    def delete(self, collection: str, doc_id: str) -> None:
        self._ops.append(BatchOp("delete", collection, doc_id))

    def delete_where(self, collection: str, filters: dict) -> BatchOp:
        """Queue a delete of every matching document, evaluated at commit time.

        The returned op carries the deleted row count once the batch commits.
        """
        if not filters:
            raise ValidationError("delete_where needs at least one filter")
        op = BatchOp("delete_where", collection, None, expect=dict(filters))
        self._ops.append(op)
        return op

    @property
    def ops(self) -> list[BatchOp]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)


# ─── Store Interface ──────────────────────────────────────────────────

class DocumentStore(abc.ABC):
    """Storage primitives consumed by the queue, lifecycle and dispatcher."""

    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    @abc.abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[dict] = None,
        order_by: Iterable[str] | str | None = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        ...

    @abc.abstractmethod
    async def count(self, collection: str, filters: Optional[dict] = None) -> int:
        ...

    @abc.abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict, expect: Optional[dict] = None) -> bool:
        """Apply ``fields``. Returns False when ``expect`` does not match.

        Raises NotFoundError if the document does not exist.
        """

    @abc.abstractmethod
    async def add(self, collection: str, fields: dict) -> str:
        ...

    @abc.abstractmethod
    async def batch_delete(self, collection: str, ids: Iterable[str]) -> int:
        ...

    @abc.abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """Apply every op in ``batch`` or none of them."""

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[WriteBatch]:
        """``async with store.batch() as b:`` — commits on clean exit."""
        batch = WriteBatch()
        yield batch
        if batch:
            await self.commit(batch)


# ─── SQLAlchemy Implementation ────────────────────────────────────────

def _model(collection: str):
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValidationError(f"Unknown collection: {collection}") from None


def _attr(model, name: str) -> str:
    attr = _ATTR_NAMES.get(name, name)
    if attr not in model.__mapper__.column_attrs:
        raise ValidationError(f"Unknown field {name!r} for {model.__tablename__}")
    return attr


def _to_doc(row) -> dict:
    return {
        _DOC_KEYS.get(prop.key, prop.key): getattr(row, prop.key)
        for prop in row.__mapper__.column_attrs
    }


def _conditions(model, filters: Optional[dict]) -> list:
    conds = []
    for name, value in (filters or {}).items():
        col = getattr(model, _attr(model, name))
        if isinstance(value, tuple) and len(value) == 2 and value[0] in _OPS:
            op, operand = value
            conds.append(_OPS[op](col, operand))
        else:
            conds.append(col == value)
    return conds


def _values(model, fields: dict) -> dict:
    """Update values keyed by mapped attribute (column names may differ)."""
    return {getattr(model, _attr(model, k)): v for k, v in fields.items()}


def _init_kwargs(model, fields: dict) -> dict:
    return {_attr(model, k): v for k, v in fields.items()}


class SqlDocumentStore(DocumentStore):
    """DocumentStore backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except (OperationalError, InterfaceError, ConnectionError) as e:
            logger.error("Store unavailable: %s", e)
            raise StoreUnavailableError(str(e)) from e

    async def get(self, collection, doc_id):
        model = _model(collection)
        async with self._session() as db:
            row = await db.get(model, doc_id)
            return _to_doc(row) if row is not None else None

    async def query(self, collection, filters=None, order_by=None, limit=None):
        model = _model(collection)
        stmt = select(model).where(*_conditions(model, filters))
        if isinstance(order_by, str):
            order_by = (order_by,)
        for key in order_by or ():
            col = getattr(model, _attr(model, key.lstrip("-")))
            stmt = stmt.order_by(col.desc() if key.startswith("-") else col.asc())
        if limit:
            stmt = stmt.limit(limit)

        async with self._session() as db:
            result = await db.execute(stmt)
            return [_to_doc(row) for row in result.scalars().all()]

    async def count(self, collection, filters=None):
        model = _model(collection)
        stmt = select(func.count(model.id)).where(*_conditions(model, filters))
        async with self._session() as db:
            return (await db.scalar(stmt)) or 0

    async def update(self, collection, doc_id, fields, expect=None):
        model = _model(collection)
        async with self._session() as db:
            stmt = (
                update(model)
                .where(model.id == doc_id, *_conditions(model, expect))
                .values(_values(model, fields))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                await db.rollback()
                if await db.get(model, doc_id) is None:
                    raise NotFoundError(f"{collection}/{doc_id} not found")
                return False
            await db.commit()
            return True

    async def add(self, collection, fields):
        model = _model(collection)
        async with self._session() as db:
            row = model(**_init_kwargs(model, fields))
            db.add(row)
            await db.commit()
            return row.id

    async def batch_delete(self, collection, ids):
        model = _model(collection)
        ids = list(ids)
        if not ids:
            return 0
        async with self._session() as db:
            result = await db.execute(
                delete(model)
                .where(model.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount

    async def commit(self, batch):
        if not batch:
            return
        async with self._session() as db:
            async with db.begin():
                for op in batch.ops:
                    model = _model(op.collection)
                    if op.kind == "add":
                        db.add(model(**_init_kwargs(model, op.fields)))
                        await db.flush()
                    elif op.kind == "update":
                        result = await db.execute(
                            update(model)
                            .where(model.id == op.doc_id, *_conditions(model, op.expect))
                            .values(_values(model, op.fields))
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount == 0:
                            if await db.get(model, op.doc_id) is None:
                                raise NotFoundError(f"{op.collection}/{op.doc_id} not found")
                            raise ConflictError(
                                f"{op.collection}/{op.doc_id} changed concurrently (expected {op.expect})"
                            )
                    elif op.kind == "delete":
                        await db.execute(
                            delete(model)
                            .where(model.id == op.doc_id)
                            .execution_options(synchronize_session=False)
                        )
                    elif op.kind == "delete_where":
                        result = await db.execute(
                            delete(model)
                            .where(*_conditions(model, op.expect))
                            .execution_options(synchronize_session=False)
                        )
                        op.affected = result.rowcount
                    else:
                        raise ValidationError(f"Unknown batch op: {op.kind}")
        logger.debug("Committed batch of %d ops", len(batch))
