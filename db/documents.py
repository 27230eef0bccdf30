"""Collection/document facade over the ORM tables.

Services address records as ``(collection, id)`` pairs and get plain dicts
back, so they never hold ORM instances across awaits. ``batch_write`` runs all
of its operations in one transaction and is capped at ``MAX_BATCH_SIZE``.
"""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Literal, Sequence, TypeVar

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import BatchTooLarge, DataIntegrityError, PreconditionFailed
from db.db import (
    AnalyticsReport, Appointment, Backup, Base, Merchant, Notification,
    Reminder, Subscription, TimeSlot, new_id, session_scope,
)

_LOGGER = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500

COLLECTIONS: dict[str, type[Base]] = {
    model.__tablename__: model
    for model in (
        Merchant, Subscription, Appointment, Reminder, TimeSlot,
        Notification, AnalyticsReport, Backup,
    )
}

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

Condition = tuple[str, str, Any]
T = TypeVar("T")


def chunked(items: Sequence[T], size: int = MAX_BATCH_SIZE) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class WriteOp:
    kind: Literal["create", "update", "delete"]
    collection: str
    doc_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    # update only: every field must currently hold this value or the batch fails
    expect: dict[str, Any] | None = None

    @classmethod
    def create(cls, collection: str, data: dict[str, Any], doc_id: str | None = None) -> "WriteOp":
        return cls("create", collection, doc_id or new_id(), data)

    @classmethod
    def update(cls, collection: str, doc_id: str, data: dict[str, Any],
               expect: dict[str, Any] | None = None) -> "WriteOp":
        return cls("update", collection, doc_id, data, expect)

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "WriteOp":
        return cls("delete", collection, doc_id)


def _model(collection: str) -> type[Base]:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"unknown collection '{collection}'") from None


def _pk(model: type[Base]):
    return inspect(model).primary_key[0]


def _pk_key(model: type[Base]) -> str:
    return inspect(model).get_property_by_column(_pk(model)).key


def _where(model: type[Base], conditions: Iterable[Condition]) -> list:
    clauses = []
    for name, op, value in conditions:
        column = getattr(model, name)
        if op == "in":
            clauses.append(column.in_(list(value)))
        elif op in _OPERATORS:
            clauses.append(_OPERATORS[op](column, value))
        else:
            raise ValueError(f"unsupported operator '{op}'")
    return clauses


class DocumentStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # -- reads ----------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        model = _model(collection)
        async with session_scope(self._session_maker) as s:
            obj = await s.get(model, doc_id)
            return obj.to_dict() if obj else None

    async def query(
        self,
        collection: str,
        conditions: Iterable[Condition] = (),
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """``order_by`` takes a field name, prefixed with ``-`` for descending."""
        model = _model(collection)
        stmt = select(model).where(*_where(model, conditions))
        if order_by:
            desc = order_by.startswith("-")
            column = getattr(model, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if desc else column)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with session_scope(self._session_maker) as s:
            res = await s.execute(stmt)
            return [obj.to_dict() for obj in res.scalars()]

    async def count(self, collection: str, conditions: Iterable[Condition] = ()) -> int:
        model = _model(collection)
        stmt = select(func.count()).select_from(model).where(*_where(model, conditions))
        async with session_scope(self._session_maker) as s:
            return (await s.execute(stmt)).scalar_one()

    # -- single writes --------------------------------------------------
    async def create(self, collection: str, doc_id: str | None, data: dict[str, Any]) -> str:
        op = WriteOp.create(collection, data, doc_id)
        await self.batch_write([op])
        return op.doc_id

    async def update(self, collection: str, doc_id: str, data: dict[str, Any],
                     expect: dict[str, Any] | None = None) -> None:
        await self.batch_write([WriteOp.update(collection, doc_id, data, expect)])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.batch_write([WriteOp.delete(collection, doc_id)])

    # -- batches --------------------------------------------------------
    async def batch_write(self, ops: Sequence[WriteOp]) -> None:
        if len(ops) > MAX_BATCH_SIZE:
            raise BatchTooLarge(f"{len(ops)} operations exceed the batch limit of {MAX_BATCH_SIZE}")
        if not ops:
            return
        async with session_scope(self._session_maker) as s:
            async with s.begin():
                for op in ops:
                    await self._apply(s, op)
        _LOGGER.debug("Committed batch of %d writes", len(ops))

    async def _apply(self, s: AsyncSession, op: WriteOp) -> None:
        model = _model(op.collection)
        pk = _pk(model)
        if op.kind == "create":
            s.add(model(**{_pk_key(model): op.doc_id, **op.data}))
            return
        if op.kind == "delete":
            await s.execute(delete(model).where(pk == op.doc_id))
            return

        expect = op.expect or {}
        stmt = (
            update(model)
            .where(pk == op.doc_id, *[getattr(model, k) == v for k, v in expect.items()])
            .values(**op.data)
            .execution_options(synchronize_session=False)
        )
        res = await s.execute(stmt)
        if res.rowcount == 0:
            if op.expect is not None:
                raise PreconditionFailed(op.collection, op.doc_id, expect)
            raise DataIntegrityError(f"{op.collection}/{op.doc_id} not found")
