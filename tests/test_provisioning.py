"""
Unit tests for settlement_engine/services/provisioning.py against httpx.MockTransport.
"""
import json
import httpx
import pytest
from unittest.mock import patch

from settlement_engine.errors import ProvisioningFailed
from settlement_engine.services.provisioning import ProvisioningClient

PANEL_URL = "https://panel.test/provisioning"


def patched_client(handler):
    real = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real(*args, **kwargs)

    return patch("settlement_engine.services.provisioning.httpx.AsyncClient", side_effect=factory)


class TestProvisioningClient:
    async def test_create_sends_command_and_returns_server_id(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"success": True, "serverId": "srv-123"})

        with patched_client(handler):
            ack = await ProvisioningClient(PANEL_URL, token="panel-token").create("ord-1", {"plan_id": "mc-basic"})

        assert seen["body"] == {"action": "create", "orderId": "ord-1", "serverDetails": {"plan_id": "mc-basic"}}
        assert seen["auth"] == "Bearer panel-token"
        assert ack.action == "create"
        assert ack.server_id == "srv-123"

    async def test_renew_and_suspend_carry_server_id(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        client = ProvisioningClient(PANEL_URL)
        with patched_client(handler):
            renewed = await client.renew("ord-1", {}, "srv-7")
            await client.suspend("ord-1", {}, "srv-7")

        assert [b["action"] for b in bodies] == ["renew", "suspend"]
        assert all(b["serverId"] == "srv-7" for b in bodies)
        assert renewed.server_id == "srv-7"

    async def test_panel_rejection(self):
        with patched_client(lambda r: httpx.Response(200, json={"success": False, "error": "node full"})):
            with pytest.raises(ProvisioningFailed, match="node full"):
                await ProvisioningClient(PANEL_URL).create("ord-1", {})

    async def test_http_error(self):
        with patched_client(lambda r: httpx.Response(500)):
            with pytest.raises(ProvisioningFailed, match="HTTP 500"):
                await ProvisioningClient(PANEL_URL).create("ord-1", {})

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with patched_client(handler):
            with pytest.raises(ProvisioningFailed, match="ReadTimeout"):
                await ProvisioningClient(PANEL_URL, timeout=0.1).create("ord-1", {})

    async def test_unknown_action(self):
        with pytest.raises(ValueError):
            await ProvisioningClient(PANEL_URL).send("delete", "ord-1")
