"""
Inbound gateway notifications.

Authentication runs on the raw bytes before the body is parsed. Responses:
200 processed / already processed / ignored, 401 authentication failure,
400 malformed body, 500 missing secret or internal error.
"""
import json
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from settlement_engine.config import Settings, get_settings
from settlement_engine.database import get_db
from settlement_engine.dependencies import get_provisioner
from settlement_engine.errors import InvalidPayloadField, RecordNotFound, ReplayDetected, SignatureInvalid
from settlement_engine.schemas.responses import WebhookResponse
from settlement_engine.services.normalizer import normalize
from settlement_engine.services.provisioning import ProvisioningClient
from settlement_engine.services.settlement import SettlementOutcome, apply_settlement
from settlement_engine.services.signature import check_bearer_token, check_signature, check_timestamp

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_secret(gateway: str, secret: Optional[str]) -> str:
    if not secret:
        logger.error("%s webhook secret is not configured; rejecting notification", gateway)
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    return secret


def _parse_body(raw: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


async def _process(
    gateway: str,
    body: Dict[str, Any],
    db: Session,
    settings: Settings,
    provisioner: ProvisioningClient,
) -> WebhookResponse:
    try:
        event = normalize(gateway, body)
    except InvalidPayloadField as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        check_timestamp(event.timestamp, window=timedelta(seconds=settings.WEBHOOK_TOLERANCE_SECONDS))
    except ReplayDetected as e:
        logger.warning("Rejected %s webhook: %s", gateway, e)
        raise HTTPException(status_code=401, detail="Stale or replayed notification")

    try:
        result = await apply_settlement(db, event, provisioner)
    except RecordNotFound as e:
        logger.info("Discarding %s webhook: %s", gateway, e)
        return WebhookResponse(status="ignored", message="No matching payment request")
    except Exception:
        logger.exception("Internal error while processing %s webhook %r", gateway, event)
        raise HTTPException(status_code=500, detail="Internal error during payment processing")

    if result.outcome == SettlementOutcome.ALREADY_SETTLED:
        message = "Payment already recorded"
    elif result.outcome == SettlementOutcome.EXPIRED:
        message = "Payment request expired; notification discarded"
    elif result.outcome == SettlementOutcome.NOT_SETTLED:
        message = f"Gateway status {event.status}; nothing to do"
    elif result.outcome == SettlementOutcome.AMOUNT_MISMATCH:
        message = "Reported amount differs from the payment request; held for review"
    else:
        message = "Payment recorded"
    ignored = (SettlementOutcome.EXPIRED, SettlementOutcome.NOT_SETTLED, SettlementOutcome.AMOUNT_MISMATCH)
    status = "ignored" if result.outcome in ignored else "success"
    return WebhookResponse(status=status, message=message, outcome=result.outcome)


@router.post("/bakong", response_model=WebhookResponse)
async def bakong_webhook(
    request: Request,
    x_bakong_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provisioner: ProvisioningClient = Depends(get_provisioner),
):
    raw = await request.body()
    secret = _require_secret("bakong", settings.BAKONG_WEBHOOK_SECRET)
    try:
        check_signature(raw, x_bakong_signature, secret)
    except SignatureInvalid as e:
        logger.warning("Rejected bakong webhook: %s", e)
        raise HTTPException(status_code=401, detail="Invalid signature")

    return await _process("bakong", _parse_body(raw), db, settings, provisioner)


@router.post("/ikhode/{invoice_id}", response_model=WebhookResponse)
async def ikhode_webhook(
    invoice_id: str,
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provisioner: ProvisioningClient = Depends(get_provisioner),
):
    raw = await request.body()
    secret = _require_secret("ikhode", settings.IKHODE_WEBHOOK_SECRET)
    try:
        check_bearer_token(authorization, secret)
    except SignatureInvalid as e:
        logger.warning("Rejected ikhode webhook for %s: %s", invoice_id, e)
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid secret key.")

    body = _parse_body(raw)
    body["invoice_id"] = invoice_id
    return await _process("ikhode", body, db, settings, provisioner)
