from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, NoReturn

from opentelemetry import trace
from sqlalchemy import JSON, ColumnElement, DateTime, Index, Integer, String, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, Session, mapped_column

from sales_os.core.database import Base
from sales_os.errors import NotFoundError, StorageUnavailableError
from sales_os.metrics import observe_row_store_failure
from sales_os.storage.base import AllOf, FieldEquals, Row, RowFilter, SortSpec


logger = logging.getLogger("sales_os.storage")
tracer = trace.get_tracer("sales_os.storage.sql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RowRecord(Base):
    __tablename__ = "row_store_record"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4()))
    table_name: Mapped[str] = mapped_column(String(120), nullable=False)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_row_store_record_table_name", "table_name"),)


class SqlRowStore:
    """Row store over a single JSON-column table, one logical table per ``table_name``.

    Each call commits on its own, mirroring a hosted row service where every
    create/update is independently durable.
    """

    backend_name = "sql"

    def __init__(self, session: Session) -> None:
        self.session = session

    def select(self, table: str, *, row_filter: RowFilter | None = None, sort: SortSpec | None = None) -> list[Row]:
        with tracer.start_as_current_span("row_store.select") as span:
            span.set_attribute("row_store.table", table)
            stmt = select(RowRecord).where(RowRecord.table_name == table)
            if row_filter is not None:
                stmt = stmt.where(self._compile_filter(row_filter))
            if sort is not None:
                sort_expr = RowRecord.fields[sort.column].as_string()
                if sort.descending:
                    stmt = stmt.order_by(sort_expr.desc(), RowRecord.seq.desc())
                else:
                    stmt = stmt.order_by(sort_expr.asc(), RowRecord.seq.asc())
            else:
                stmt = stmt.order_by(RowRecord.seq.asc())

            try:
                records = self.session.scalars(stmt).all()
            except SQLAlchemyError as exc:
                self._fail("select", table, exc)
            span.set_attribute("row_store.count", len(records))
            return [self._to_row(record) for record in records]

    def find(self, table: str, row_id: str) -> Row | None:
        with tracer.start_as_current_span("row_store.find") as span:
            span.set_attribute("row_store.table", table)
            span.set_attribute("row_store.record_id", row_id)
            try:
                record = self._load(table, row_id)
            except SQLAlchemyError as exc:
                self._fail("find", table, exc)
            return self._to_row(record) if record is not None else None

    def create(self, table: str, fields: dict[str, Any]) -> Row:
        with tracer.start_as_current_span("row_store.create") as span:
            span.set_attribute("row_store.table", table)
            record = RowRecord(id=str(uuid.uuid4()), table_name=table, fields=dict(fields))
            try:
                self.session.add(record)
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                self._fail("create", table, exc)
            span.set_attribute("row_store.record_id", record.id)
            return self._to_row(record)

    def update(self, table: str, row_id: str, fields: dict[str, Any]) -> Row:
        with tracer.start_as_current_span("row_store.update") as span:
            span.set_attribute("row_store.table", table)
            span.set_attribute("row_store.record_id", row_id)
            try:
                record = self._load(table, row_id)
                if record is None:
                    raise NotFoundError(table, row_id)
                # reassign so the JSON column is flagged dirty
                record.fields = {**record.fields, **fields}
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                self._fail("update", table, exc)
            return self._to_row(record)

    def _load(self, table: str, row_id: str) -> RowRecord | None:
        return self.session.scalar(
            select(RowRecord).where(and_(RowRecord.table_name == table, RowRecord.id == row_id))
        )

    def _compile_filter(self, row_filter: RowFilter) -> ColumnElement[bool]:
        if isinstance(row_filter, FieldEquals):
            return RowRecord.fields[row_filter.column].as_string() == str(row_filter.value)
        if isinstance(row_filter, AllOf):
            return and_(*(self._compile_filter(clause) for clause in row_filter.clauses))
        raise TypeError(f"unsupported row filter: {row_filter!r}")

    def _fail(self, operation: str, table: str, exc: Exception) -> NoReturn:
        observe_row_store_failure(self.backend_name, operation)
        logger.exception("row_store.failed", extra={"table": table, "operation": operation, "error": str(exc)})
        raise StorageUnavailableError(operation, table) from exc

    @staticmethod
    def _to_row(record: RowRecord) -> Row:
        created = record.created_at.isoformat() if record.created_at is not None else None
        return Row(id=record.id, fields=dict(record.fields or {}), created_time=created)
