from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement_engine.config import Settings, get_settings
from settlement_engine.database import get_db
from settlement_engine.dependencies import get_gateway, get_provisioner
from settlement_engine.errors import (
    ExpiredFingerprint,
    GatewayError,
    InvalidMerchantConfig,
    InvalidPayloadField,
    InvoiceAlreadyPaid,
    PaymentNotReceived,
    RecordNotFound,
)
from settlement_engine.processors.base import BaseGateway
from settlement_engine.schemas.requests import IssueKHQRRequest
from settlement_engine.schemas.responses import (
    ExpireResponse,
    KHQRResponse,
    PollResponse,
    RetryResponse,
    SettlementResultResponse,
)
from settlement_engine.services.poller import poll_settlement
from settlement_engine.services.provisioning import ProvisioningClient
from settlement_engine.services.settlement import (
    expire_stale_settlements,
    issue_settlement,
    retry_provisioning,
)

router = APIRouter()


@router.post("/khqr", response_model=KHQRResponse)
def issue_khqr(
    request: IssueKHQRRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Generate a KHQR payment payload for an unpaid invoice.

    - Converts the amount when the merchant settles in another currency
    - Persists a pending settlement record valid for PAYMENT_VALIDITY_SECONDS
    - Returns both the original and the encoded amount for display
    """
    try:
        record, khqr = issue_settlement(
            db,
            invoice_id=request.invoice_id,
            merchant=settings.merchant_config(),
            amount=request.amount,
            currency=request.currency,
            gateway=request.gateway,
            validity_seconds=settings.PAYMENT_VALIDITY_SECONDS,
            image_base_url=settings.QR_IMAGE_BASE_URL,
        )
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvoiceAlreadyPaid as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidMerchantConfig as e:
        raise HTTPException(status_code=500, detail=f"Payment is misconfigured: {e}")
    except InvalidPayloadField as e:
        raise HTTPException(status_code=400, detail=str(e))

    return KHQRResponse(
        settlement_id=record.id,
        fingerprint=record.fingerprint,
        status=record.status,
        qr_string=record.payload,
        qr_image_url=khqr.image_url,
        crc=record.payload[-4:],
        bill_reference=record.bill_reference,
        amount=khqr.amount,
        currency=khqr.currency,
        original_amount=khqr.original_amount,
        original_currency=khqr.original_currency,
        exchange_rate=str(khqr.exchange_rate) if khqr.exchange_rate is not None else None,
        expires_at=record.expires_at,
    )


@router.post("/expire", response_model=ExpireResponse)
def expire_payments(db: Session = Depends(get_db)):
    """Mark every pending payment request past its validity window as expired."""
    return ExpireResponse(expired=expire_stale_settlements(db))


@router.post("/retry-provisioning", response_model=RetryResponse)
async def retry_fulfilment(
    db: Session = Depends(get_db),
    provisioner: ProvisioningClient = Depends(get_provisioner),
):
    """Re-run provisioning / renewal for paid orders whose fulfilment failed."""
    results = await retry_provisioning(db, provisioner)
    return RetryResponse(
        retried=len(results),
        results=[SettlementResultResponse(**vars(r)) for r in results],
    )


@router.post("/{fingerprint}/check", response_model=PollResponse)
async def check_payment(
    fingerprint: str,
    mode: Literal["silent", "manual"] = "silent",
    db: Session = Depends(get_db),
    gateway: BaseGateway = Depends(get_gateway),
    provisioner: ProvisioningClient = Depends(get_provisioner),
):
    """
    Ask the gateway whether a payment request has been paid.

    silent: background polling, "not yet paid" is a normal 200 answer
    manual: the payer pressed "I've paid", so not-yet-paid is reported (402)
    """
    try:
        result = await poll_settlement(db, fingerprint, gateway, provisioner, mode=mode)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExpiredFingerprint as e:
        raise HTTPException(status_code=410, detail=str(e))
    except PaymentNotReceived as e:
        raise HTTPException(status_code=402, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=f"Gateway error: {str(e)}")

    return PollResponse(**vars(result))
