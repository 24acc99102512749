from __future__ import annotations

import json
import unittest
from datetime import datetime, timezone

import httpx

from app.services.erp_client import ErpClient, ErpError, ErpNotConfiguredError
from tests.sqlite_support import settings_env


class _RecordingTransport:
    def __init__(self, *results):  # type: ignore[no-untyped-def]
        self.requests: list[dict] = []
        self._results = list(results)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        result = self._results.pop(0)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)


def _client(transport: _RecordingTransport) -> ErpClient:
    return ErpClient("erp.example.com", "erp_prod", 2, "secret", transport=httpx.MockTransport(transport))


class ErpClientTests(unittest.TestCase):
    def test_execute_kw_sends_credentials_and_returns_result(self) -> None:
        transport = _RecordingTransport({"jsonrpc": "2.0", "id": 1, "result": True})

        with _client(transport) as client:
            self.assertTrue(client.update_planning_slot_state(9001, "draft"))

        params = transport.requests[0]["params"]
        self.assertEqual(params["service"], "object")
        self.assertEqual(params["method"], "execute_kw")
        self.assertEqual(params["args"], ["erp_prod", 2, "secret", "planning.slot", "write", [[9001], {"state": "draft"}], {}])

    def test_attendance_datetimes_are_written_in_erp_format(self) -> None:
        transport = _RecordingTransport({"result": True})

        with _client(transport) as client:
            client.update_attendance_check_in(777, datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc))

        values = transport.requests[0]["params"]["args"][5][1]
        self.assertEqual(values, {"check_in": "2026-05-04 08:00:00"})

    def test_resource_id_is_read_from_a_many2one_pair(self) -> None:
        transport = _RecordingTransport(
            {"result": [{"id": 5, "name": "Tom", "resource_id": [501, "Tom"]}]},
            {"result": []},
        )

        with _client(transport) as client:
            self.assertEqual(client.get_resource_id_by_website_key("EMP-T", 7), 501)
            self.assertIsNone(client.get_resource_id_by_website_key("EMP-X", 7))

        domain = transport.requests[0]["params"]["args"][6]["domain"]
        self.assertEqual(domain, [["x_website_key", "=", "EMP-T"], ["company_id", "=", 7]])

    def test_rpc_error_is_raised_with_the_server_message(self) -> None:
        transport = _RecordingTransport(
            {"error": {"code": 200, "message": "Odoo Server Error", "data": {"message": "Record does not exist"}}}
        )

        with _client(transport) as client:
            with self.assertRaises(ErpError) as ctx:
                client.update_attendance_check_out(777, "2026-05-04 16:00:00")

        self.assertIn("Record does not exist", str(ctx.exception))

    def test_http_failure_is_raised_as_erp_error(self) -> None:
        transport = _RecordingTransport(httpx.Response(502, text="Bad Gateway"))

        with _client(transport) as client:
            with self.assertRaises(ErpError):
                client.search_work_entries_by_attendance_id(777)

    def test_from_settings_requires_full_configuration(self) -> None:
        with settings_env(erp_base_url="https://erp.example.com", erp_database="", erp_api_key="secret"):
            with self.assertRaises(ErpNotConfiguredError):
                ErpClient.from_settings()

        with settings_env(erp_base_url="https://erp.example.com", erp_database="erp", erp_user_id=2, erp_api_key="k"):
            client = ErpClient.from_settings()
        self.addCleanup(client.close)
        self.assertEqual(client.database, "erp")


if __name__ == "__main__":
    unittest.main()
