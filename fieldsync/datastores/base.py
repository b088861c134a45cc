from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence


REGISTRATIONS_TABLE = "customer_registrations"
AGENTS_TABLE = "agents"
NOTIFICATIONS_TABLE = "notifications"

RESPONSE_ID_COLUMN = "ms_forms_response_id"
SUBMITTED_AT_COLUMN = "ms_forms_submitted_at"


class DatastoreError(RuntimeError):
    """Any failure talking to the remote datastore; the message is kept verbatim."""


class Datastore(Protocol):
    """Minimal CRUD surface of the hosted relational backend.

    Filters are equality matches; a `None` value means "IS NULL".
    """

    def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> int: ...

    def select(
        self,
        table: str,
        filters: Mapping[str, Any],
        *,
        columns: Sequence[str] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def count(self, table: str, filters: Mapping[str, Any]) -> int: ...

    def ping(self) -> bool: ...


def fetch_one(datastore: Datastore, table: str, row_id: str) -> dict[str, Any] | None:
    rows = datastore.select(table, {"id": row_id}, limit=1)
    return rows[0] if rows else None
