from __future__ import annotations

import logging
from typing import Any, NoReturn
from urllib.parse import quote

import requests
from opentelemetry import trace

from sales_os.errors import NotFoundError, StorageUnavailableError
from sales_os.metrics import observe_row_store_failure
from sales_os.storage.base import AllOf, FieldEquals, Row, RowFilter, SortSpec


logger = logging.getLogger("sales_os.storage")
tracer = trace.get_tracer("sales_os.storage.airtable")


def _quote_formula_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def render_formula(row_filter: RowFilter) -> str:
    """Render a row filter in Airtable's ``filterByFormula`` dialect."""

    if isinstance(row_filter, FieldEquals):
        return f"{{{row_filter.column}}} = {_quote_formula_value(str(row_filter.value))}"
    if isinstance(row_filter, AllOf):
        return f"AND({', '.join(render_formula(clause) for clause in row_filter.clauses)})"
    raise TypeError(f"unsupported row filter: {row_filter!r}")


class AirtableRowStore:
    backend_name = "airtable"

    def __init__(
        self,
        *,
        api_key: str,
        base_id: str,
        api_url: str = "https://api.airtable.com/v0",
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = f"{api_url.rstrip('/')}/{base_id}"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"})

    def select(self, table: str, *, row_filter: RowFilter | None = None, sort: SortSpec | None = None) -> list[Row]:
        params: dict[str, str] = {}
        if row_filter is not None:
            params["filterByFormula"] = render_formula(row_filter)
        if sort is not None:
            params["sort[0][field]"] = sort.column
            params["sort[0][direction]"] = "desc" if sort.descending else "asc"

        rows: list[Row] = []
        with tracer.start_as_current_span("row_store.select") as span:
            span.set_attribute("row_store.table", table)
            while True:
                payload = self._request("GET", table, "select", params=params)
                rows.extend(self._to_row(item) for item in payload.get("records", []))
                offset = payload.get("offset")
                if not offset:
                    break
                params = {**params, "offset": str(offset)}
            span.set_attribute("row_store.count", len(rows))
        return rows

    def find(self, table: str, row_id: str) -> Row | None:
        with tracer.start_as_current_span("row_store.find") as span:
            span.set_attribute("row_store.table", table)
            span.set_attribute("row_store.record_id", row_id)
            payload = self._request("GET", table, "find", row_id=row_id, missing_ok=True)
            if payload is None:
                return None
            return self._to_row(payload)

    def create(self, table: str, fields: dict[str, Any]) -> Row:
        with tracer.start_as_current_span("row_store.create") as span:
            span.set_attribute("row_store.table", table)
            payload = self._request("POST", table, "create", json={"fields": fields})
            return self._to_row(payload)

    def update(self, table: str, row_id: str, fields: dict[str, Any]) -> Row:
        with tracer.start_as_current_span("row_store.update") as span:
            span.set_attribute("row_store.table", table)
            span.set_attribute("row_store.record_id", row_id)
            payload = self._request("PATCH", table, "update", row_id=row_id, json={"fields": fields})
            if payload is None:
                raise NotFoundError(table, row_id)
            return self._to_row(payload)

    def _request(
        self,
        method: str,
        table: str,
        operation: str,
        *,
        row_id: str | None = None,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        missing_ok: bool = False,
    ) -> Any:
        url = f"{self._base_url}/{quote(table, safe='')}"
        if row_id is not None:
            url = f"{url}/{quote(row_id, safe='')}"

        try:
            response = self._session.request(method, url, params=params, json=json, timeout=self._timeout)
        except requests.RequestException as exc:
            self._fail(operation, table, str(exc), exc)

        if response.status_code == 404 and row_id is not None:
            if missing_ok or method == "PATCH":
                return None
        if response.status_code >= 400:
            self._fail(operation, table, f"HTTP {response.status_code}", None)
        try:
            return response.json()
        except ValueError as exc:
            self._fail(operation, table, "invalid JSON response", exc)

    def _fail(self, operation: str, table: str, error: str, exc: Exception | None) -> NoReturn:
        observe_row_store_failure(self.backend_name, operation)
        logger.error("row_store.failed", exc_info=exc, extra={"table": table, "operation": operation, "error": error})
        raise StorageUnavailableError(operation, table) from exc

    @staticmethod
    def _to_row(payload: dict[str, Any]) -> Row:
        return Row(
            id=str(payload.get("id", "")),
            fields=dict(payload.get("fields") or {}),
            created_time=payload.get("createdTime"),
        )
