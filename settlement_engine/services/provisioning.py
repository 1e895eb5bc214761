"""
Client for the external game-server panel.

Commands are fire-and-acknowledge: {action, orderId, serverDetails}. Each call
has its own timeout; failures raise ProvisioningFailed and are never retried
here. The retry path is settlement.retry_provisioning().
"""
import logging
from typing import Any, Dict, Optional

import httpx

from settlement_engine.errors import ProvisioningFailed

logger = logging.getLogger(__name__)

ACTIONS = ("create", "renew", "suspend")


class ProvisioningAck:
    def __init__(self, action: str, order_id: str, server_id: Optional[str] = None,
                 raw: Optional[Dict[str, Any]] = None):
        self.action = action
        self.order_id = order_id
        self.server_id = server_id
        self.raw = raw or {}


class ProvisioningClient:
    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 20.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    async def send(self, action: str, order_id: str,
                   server_details: Optional[Dict[str, Any]] = None,
                   server_id: Optional[str] = None) -> ProvisioningAck:
        if action not in ACTIONS:
            raise ValueError(f"Unknown provisioning action: {action}")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = {
            "action": action,
            "orderId": order_id,
            "serverDetails": server_details or {},
        }
        if server_id:
            body["serverId"] = server_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=body, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProvisioningFailed(f"{action} for order {order_id}: HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise ProvisioningFailed(f"{action} for order {order_id}: {e.__class__.__name__}")
        except ValueError:
            raise ProvisioningFailed(f"{action} for order {order_id}: non-JSON response")

        if not isinstance(data, dict) or data.get("success") is False:
            error = data.get("error") if isinstance(data, dict) else None
            raise ProvisioningFailed(f"{action} for order {order_id}: {error or 'rejected'}")

        logger.info("Provisioning %s acknowledged for order %s", action, order_id)
        return ProvisioningAck(
            action=action,
            order_id=order_id,
            server_id=data.get("serverId") or data.get("server_id") or server_id,
            raw=data,
        )

    async def create(self, order_id: str, server_details: Dict[str, Any]) -> ProvisioningAck:
        return await self.send("create", order_id, server_details)

    async def renew(self, order_id: str, server_details: Dict[str, Any],
                    server_id: Optional[str] = None) -> ProvisioningAck:
        return await self.send("renew", order_id, server_details, server_id)

    async def suspend(self, order_id: str, server_details: Dict[str, Any],
                      server_id: Optional[str] = None) -> ProvisioningAck:
        return await self.send("suspend", order_id, server_details, server_id)
