from __future__ import annotations

import logging
from datetime import datetime
from itertools import count
from typing import Any

import httpx

from app.settings import Settings, get_settings, is_erp_configured
from app.timeutils import format_erp_datetime, parse_erp_datetime

logger = logging.getLogger("app.erp_sync")

_request_ids = count(1)


class ErpError(Exception):
    """The ERP could not be reached or answered with an RPC error."""


class ErpNotConfiguredError(ErpError):
    pass


class ErpClient:
    """Thin JSON-RPC client for the ERP's ``object.execute_kw`` endpoint."""

    def __init__(
        self,
        base_url: str,
        database: str,
        user_id: int,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        base_url = base_url.strip().rstrip("/")
        if not base_url.startswith(("http://", "https://")):
            base_url = f"https://{base_url}"
        self.database = database
        self.user_id = user_id
        self._api_key = api_key
        self._http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ErpClient:
        settings = settings or get_settings()
        if not is_erp_configured(settings):
            raise ErpNotConfiguredError("ERP connection is not configured")
        return cls(
            settings.erp_base_url,
            settings.erp_database,
            settings.erp_user_id,
            settings.erp_api_key,
            timeout=settings.erp_timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> ErpClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def execute_kw(
        self,
        model: str,
        method: str,
        args: list[Any] | None = None,
        kwargs: dict[str, Any] | None = None,
    ) -> Any:
        body = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {
                "service": "object",
                "method": "execute_kw",
                "args": [
                    self.database,
                    self.user_id,
                    self._api_key,
                    model,
                    method,
                    args or [],
                    kwargs or {},
                ],
            },
            "id": next(_request_ids),
        }
        try:
            response = self._http.post("/jsonrpc", json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("erp_rpc_transport_failed", extra={"model": model, "method": method, "error": str(exc)})
            raise ErpError(f"ERP request failed: {exc}") from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            detail = error.get("data") or {}
            message = detail.get("message") if isinstance(detail, dict) else None
            raise ErpError(f"ERP RPC error on {model}.{method}: {message or error.get('message')}")
        return data.get("result") if isinstance(data, dict) else None

    def get_employee_by_website_key(self, website_key: str, company_id: int) -> dict[str, Any] | None:
        rows = self.execute_kw(
            "hr.employee",
            "search_read",
            [],
            {
                "domain": [["x_website_key", "=", website_key], ["company_id", "=", company_id]],
                "fields": ["id", "name", "x_website_key", "company_id", "resource_id"],
                "limit": 1,
            },
        )
        if not rows:
            return None
        return rows[0]

    def get_resource_id_by_website_key(self, website_key: str, company_id: int) -> int | None:
        employee = self.get_employee_by_website_key(website_key, company_id)
        if employee is None:
            return None
        resource = employee.get("resource_id")
        # many2one fields come back as [id, display_name]
        if isinstance(resource, list) and resource:
            return int(resource[0])
        if isinstance(resource, int) and not isinstance(resource, bool):
            return resource
        return None

    def _write(self, model: str, record_id: int, values: dict[str, Any]) -> bool:
        result = self.execute_kw(model, "write", [[record_id], values])
        logger.info("erp_record_written", extra={"model": model, "record_id": record_id, "fields": sorted(values)})
        return result is True

    def update_attendance_check_in(self, attendance_id: int, value: datetime | str) -> bool:
        return self._write("hr.attendance", attendance_id, {"check_in": format_erp_datetime(parse_erp_datetime(value))})

    def update_attendance_check_out(self, attendance_id: int, value: datetime | str) -> bool:
        return self._write("hr.attendance", attendance_id, {"check_out": format_erp_datetime(parse_erp_datetime(value))})

    def search_work_entries_by_attendance_id(self, attendance_id: int) -> list[dict[str, Any]]:
        rows = self.execute_kw(
            "hr.work.entry",
            "search_read",
            [],
            {
                "domain": [["attendance_id", "=", attendance_id]],
                "fields": ["id", "employee_id", "attendance_id", "date_start", "date_stop", "state"],
                "limit": 5,
            },
        )
        return list(rows or [])

    def update_work_entry_date_start(self, work_entry_id: int, value: datetime | str) -> bool:
        return self._write("hr.work.entry", work_entry_id, {"date_start": format_erp_datetime(parse_erp_datetime(value))})

    def update_work_entry_date_stop(self, work_entry_id: int, value: datetime | str) -> bool:
        return self._write("hr.work.entry", work_entry_id, {"date_stop": format_erp_datetime(parse_erp_datetime(value))})

    def update_planning_slot_resource(self, slot_id: int, resource_id: int | None) -> bool:
        return self._write("planning.slot", slot_id, {"resource_id": resource_id or False})

    def update_planning_slot_state(self, slot_id: int, state: str) -> bool:
        return self._write("planning.slot", slot_id, {"state": state})
