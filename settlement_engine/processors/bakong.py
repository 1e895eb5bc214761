import logging
from typing import Optional

import httpx

from settlement_engine.errors import GatewayError
from settlement_engine.processors.base import BaseGateway, GatewayStatus

logger = logging.getLogger(__name__)

# responseCode 0 means a transaction with this md5 has been found and settled
SETTLED_RESPONSE_CODE = 0


class BakongGateway(BaseGateway):
    """
    Bakong open API.
    Endpoint: POST /v1/check_transaction_by_md5  {"md5": <fingerprint>}
    Auth: Bearer token
    Settled when responseCode == 0
    """

    def __init__(self, api_url: str, token: Optional[str], timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    @property
    def gateway_name(self) -> str:
        return "bakong"

    async def check_transaction(self, fingerprint: str) -> GatewayStatus:
        if not self.token:
            raise GatewayError("Bakong: BAKONG_TOKEN not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.api_url}/v1/check_transaction_by_md5",
                    json={"md5": fingerprint},
                    headers={
                        "Authorization": f"Bearer {self.token}",
                        "Content-Type": "application/json",
                    },
                )
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPStatusError as e:
            raise GatewayError(f"Bakong: HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise GatewayError(f"Bakong: {e.__class__.__name__}: {e}")
        except ValueError:
            raise GatewayError("Bakong: non-JSON response")

        if not isinstance(body, dict):
            raise GatewayError("Bakong: unexpected response shape")

        settled = body.get("responseCode") == SETTLED_RESPONSE_CODE
        logger.debug("Bakong status for %s: responseCode=%s", fingerprint, body.get("responseCode"))
        return GatewayStatus(settled=settled, evidence=body)
