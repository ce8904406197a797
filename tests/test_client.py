"""
Tests for the scanner-side HTTP client.
"""
import asyncio
import json

import httpx
import pytest

from scanshare.client import ScanShareClient
from scanshare.config import Settings
from scanshare.exceptions import RemoteSessionNotFoundError, SyncTransportError
from scanshare.models import ScanDelta, ScanItem, SessionFlags
from scanshare.storage import TrackedScan


def _client(handler) -> ScanShareClient:
    settings = Settings(server_url="http://scanshare.test/", http_timeout=5.0)
    return ScanShareClient(settings, transport=httpx.MockTransport(handler))


class TestRequests:
    """Tests for request payloads sent by the client."""

    def test_create_session_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={
                "shortCode": "a1b2c3",
                "accessCode": "4821",
                "name": "Warehouse A",
                "type": "stock",
                "totalScans": 1,
                "askInternalCode": False,
                "askProductName": False,
                "askPrice": True,
            })

        scans = [TrackedScan(code="111", quantity=2, syncedQuantity=0)]
        created = asyncio.run(
            _client(handler).create_session("Warehouse A", "stock", scans, SessionFlags(askPrice=True))
        )

        assert created.shortCode == "a1b2c3"
        assert created.askPrice is True
        assert seen["method"] == "POST"
        assert seen["url"] == "http://scanshare.test/sessions"
        assert seen["body"]["askPrice"] is True
        # Local bookkeeping fields never go over the wire
        assert seen["body"]["scans"] == [{
            "code": "111",
            "quantity": 2,
            "internalCode": None,
            "productName": None,
            "price": None,
        }]

    def test_delete_scans_sends_codes_in_body(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"shortCode": "a1b2c3", "totalScans": 0})

        response = asyncio.run(_client(handler).delete_scans("a1b2c3", ["111", "222"]))

        assert response.totalScans == 0
        assert seen == {
            "method": "DELETE",
            "path": "/sessions/a1b2c3/scans",
            "body": {"codes": ["111", "222"]},
        }

    def test_add_scans_sends_deltas(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"shortCode": "a1b2c3", "totalScans": 4})

        response = asyncio.run(
            _client(handler).add_scans("a1b2c3", [ScanDelta(code="111", quantity=-1)])
        )

        assert response.totalScans == 4
        assert seen["body"]["scans"][0]["quantity"] == -1

    def test_export_url(self):
        client = _client(lambda request: httpx.Response(200))
        assert client.export_url("a1b2c3") == "http://scanshare.test/sessions/a1b2c3/export"
        assert client.export_url("a1b2c3", ["code", "quantity"]).endswith("/export?fields=code,quantity")


class TestErrorMapping:
    """Tests for how HTTP failures surface."""

    def test_404_is_remote_not_found(self):
        client = _client(lambda request: httpx.Response(404, json={"detail": "Session not found"}))

        with pytest.raises(RemoteSessionNotFoundError) as exc_info:
            asyncio.run(client.add_scans("gone00", [ScanDelta(code="1")]))
        assert exc_info.value.short_code == "gone00"

    def test_server_error_is_transport_failure(self):
        client = _client(lambda request: httpx.Response(500))

        with pytest.raises(SyncTransportError) as exc_info:
            asyncio.run(client.create_session("A", "stock", [ScanItem(code="1")]))
        assert exc_info.value.status_code == 500

    def test_network_error_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SyncTransportError):
            asyncio.run(_client(handler).delete_scans("a1b2c3", ["1"]))

    def test_timeout_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(SyncTransportError):
            asyncio.run(_client(handler).get_session("a1b2c3"))


class TestViewerAccess:
    """Tests for verify_access against the real app."""

    def test_verify_access(self, api_client: ScanShareClient, sample_session):
        detail = asyncio.run(api_client.verify_access("a1b2c3", "4821"))
        assert detail is not None
        assert detail.name == "Warehouse A"

    def test_wrong_access_code_is_none(self, api_client: ScanShareClient, sample_session):
        assert asyncio.run(api_client.verify_access("a1b2c3", "0000")) is None

    def test_unknown_session_is_not_found(self, api_client: ScanShareClient, sample_session):
        with pytest.raises(RemoteSessionNotFoundError):
            asyncio.run(api_client.verify_access("nope00", "4821"))
