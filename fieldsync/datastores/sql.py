from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy import JSON, Column, DateTime, Engine, String, Table, Text, create_engine, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .base import DatastoreError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_type() -> JSON:
    # Keep PostgreSQL JSONB in production while remaining portable for SQLite-based tests.
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    airtel_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    safaricom_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CustomerRegistration(Base):
    __tablename__ = "customer_registrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    airtel_number: Mapped[str] = mapped_column(String(32), nullable=False)
    alternate_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    preferred_package: Mapped[str | None] = mapped_column(String(32), nullable=True)
    installation_town: Mapped[str | None] = mapped_column(String(128), nullable=True)
    delivery_landmark: Mapped[str | None] = mapped_column(String(256), nullable=True)
    installation_location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    visit_date: Mapped[str | None] = mapped_column(String(16), nullable=True)
    visit_time: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # Domain lifecycle: pending / approved / installed.
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")

    # Written together in one update; both null until the forms submission succeeds.
    ms_forms_response_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ms_forms_submitted_at: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", json_type(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


def _row_to_dict(table: Table, row: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for column in table.columns:
        value = row._mapping[column]
        out[column.name] = value.isoformat() if isinstance(value, datetime) else value
    return out


class SqlDatastore:
    """Datastore over a direct SQL connection (Postgres in deployment, SQLite locally)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> SqlDatastore:
        return cls(create_engine(database_url, pool_pre_ping=True))

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def _table(self, name: str) -> Table:
        table = Base.metadata.tables.get(name)
        if table is None:
            raise DatastoreError(f"unknown table: {name}")
        return table

    @staticmethod
    def _column(table: Table, name: str) -> Column[Any]:
        for column in table.columns:
            if column.name == name:
                return column
        raise DatastoreError(f"unknown column: {table.name}.{name}")

    def _where(self, table: Table, filters: Mapping[str, Any]) -> list[Any]:
        clauses: list[Any] = []
        for column_name, value in filters.items():
            column = self._column(table, column_name)
            clauses.append(column.is_(None) if value is None else column == value)
        return clauses

    def _values(self, table: Table, record: Mapping[str, Any]) -> dict[Column[Any], Any]:
        # Keyed by Column: attribute keys and column names differ for `metadata`.
        return {self._column(table, name): value for name, value in record.items()}

    def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        t = self._table(table)
        values = dict(record)
        if not values.get("id"):
            values["id"] = _new_id()
        try:
            with self.engine.begin() as conn:
                conn.execute(t.insert().values(self._values(t, values)))
                row = conn.execute(select(t).where(t.c.id == values["id"])).one()
        except SQLAlchemyError as exc:
            raise DatastoreError(str(exc.__cause__ or exc)) from exc
        return _row_to_dict(t, row)

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> int:
        t = self._table(table)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(t.update().where(t.c.id == row_id).values(self._values(t, patch)))
        except SQLAlchemyError as exc:
            raise DatastoreError(str(exc.__cause__ or exc)) from exc
        return int(result.rowcount or 0)

    def select(
        self,
        table: str,
        filters: Mapping[str, Any],
        *,
        columns: Sequence[str] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        t = self._table(table)
        stmt = select(t).where(*self._where(t, filters))
        if order_by:
            col = self._column(t, order_by)
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        if limit is not None:
            stmt = stmt.limit(int(limit))
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise DatastoreError(str(exc.__cause__ or exc)) from exc

        out = [_row_to_dict(t, row) for row in rows]
        if columns:
            wanted = set(columns)
            out = [{k: v for k, v in row.items() if k in wanted} for row in out]
        return out

    def count(self, table: str, filters: Mapping[str, Any]) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t).where(*self._where(t, filters))
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise DatastoreError(str(exc.__cause__ or exc)) from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(Agent.id).limit(1))
        except SQLAlchemyError:
            return False
        return True
