from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import requests

from .base import AGENTS_TABLE, DatastoreError


logger = logging.getLogger("fieldsync.datastore.rest")


def _filter_params(filters: Mapping[str, Any]) -> dict[str, str]:
    params: dict[str, str] = {}
    for column, value in filters.items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


def _parse_content_range_total(raw: str | None) -> int | None:
    """`Content-Range: 0-24/3573` -> 3573 (`*/0` for empty results)."""

    if not raw or "/" not in raw:
        return None
    total = raw.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        return None
    return int(total)


class RestDatastore:
    """Datastore over the hosted backend's PostgREST endpoint (`/rest/v1`)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: str | None = None,
        timeout_s: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _headers(self, *, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:500]}"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {response.status_code}: {str(body)[:500]}"

    def _request(self, method: str, table: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, self._url(table), timeout=self.timeout_s, **kwargs)
        except requests.RequestException as exc:
            raise DatastoreError(str(exc)) from exc
        if response.status_code >= 300:
            raise DatastoreError(self._error_message(response))
        return response

    def _json_rows(self, response: requests.Response) -> list[dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as exc:
            raise DatastoreError("backend returned a non-JSON response") from exc
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list):
            raise DatastoreError("backend returned an unexpected response shape")
        return [row for row in data if isinstance(row, dict)]

    def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        response = self._request(
            "POST",
            table,
            headers=self._headers(prefer="return=representation"),
            json=dict(record),
        )
        rows = self._json_rows(response)
        if not rows:
            raise DatastoreError(f"insert into {table} returned no row")
        return rows[0]

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> int:
        # return=representation is the only way to learn how many rows a
        # row-level security policy actually let through.
        response = self._request(
            "PATCH",
            table,
            headers=self._headers(prefer="return=representation"),
            params={"id": f"eq.{row_id}"},
            json=dict(patch),
        )
        return len(self._json_rows(response))

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
        params = _filter_params(filters)
        params["select"] = ",".join(columns) if columns else "*"
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(int(limit))
        response = self._request("GET", table, headers=self._headers(), params=params)
        return self._json_rows(response)

    def count(self, table: str, filters: Mapping[str, Any]) -> int:
        params = _filter_params(filters)
        params["select"] = "id"
        response = self._request(
            "HEAD",
            table,
            headers=self._headers(prefer="count=exact"),
            params=params,
        )
        total = _parse_content_range_total(response.headers.get("Content-Range"))
        if total is None:
            raise DatastoreError("backend did not report an exact count")
        return total

    def ping(self) -> bool:
        try:
            self.select(AGENTS_TABLE, {}, columns=["id"], limit=1)
        except DatastoreError as exc:
            logger.debug("backend ping failed: %s", exc)
            return False
        return True
