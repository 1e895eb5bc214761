from fastapi import Depends

from settlement_engine.config import Settings, get_settings
from settlement_engine.processors.bakong import BakongGateway
from settlement_engine.services.provisioning import ProvisioningClient


def get_gateway(settings: Settings = Depends(get_settings)) -> BakongGateway:
    return BakongGateway(
        api_url=settings.BAKONG_API_URL,
        token=settings.BAKONG_TOKEN,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )


def get_provisioner(settings: Settings = Depends(get_settings)) -> ProvisioningClient:
    return ProvisioningClient(
        url=settings.PROVISIONING_URL,
        token=settings.PROVISIONING_TOKEN,
        timeout=settings.PROVISIONING_TIMEOUT_SECONDS,
    )
