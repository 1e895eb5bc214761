"""
Poll driver: "has this fingerprint been paid?"

Background polling runs in silent mode, where "not yet paid" and gateway
hiccups are ordinary answers. The payer's "I've paid" button runs in manual
mode, where they are raised so the API can say so. A positive answer goes
through apply_settlement exactly like a webhook would.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.errors import ExpiredFingerprint, GatewayError, PaymentNotReceived, RecordNotFound
from settlement_engine.models import SettlementStatus, utcnow
from settlement_engine.processors.base import BaseGateway
from settlement_engine.services.normalizer import event_from_poll
from settlement_engine.services.provisioning import ProvisioningClient
from settlement_engine.services.settlement import SettlementOutcome, apply_settlement, expire_if_elapsed

logger = logging.getLogger(__name__)


class PollMode:
    SILENT = "silent"
    MANUAL = "manual"


class PollResult:
    def __init__(
        self,
        fingerprint: str,
        status: str,
        outcome: Optional[str] = None,
        order_status: Optional[str] = None,
        invoice_status: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.fingerprint = fingerprint
        self.status = status  # paid | pending | expired | failed
        self.outcome = outcome
        self.order_status = order_status
        self.invoice_status = invoice_status
        self.detail = detail


def _closed_record(record: models.SettlementRecord, mode: str) -> PollResult:
    if record.status == SettlementStatus.SETTLED:
        return PollResult(record.fingerprint, "paid", outcome=SettlementOutcome.ALREADY_SETTLED)
    if record.failure_reason == "expired":
        if mode == PollMode.MANUAL:
            raise ExpiredFingerprint(f"Payment request {record.fingerprint} has expired")
        return PollResult(record.fingerprint, "expired", outcome=SettlementOutcome.EXPIRED)
    return PollResult(record.fingerprint, "failed", detail=record.failure_reason)


async def poll_settlement(
    db: Session,
    fingerprint: str,
    gateway: BaseGateway,
    provisioner: ProvisioningClient,
    mode: str = PollMode.SILENT,
    now: Optional[datetime] = None,
) -> PollResult:
    """
    Check one payment request against the gateway.

    Raises:
        RecordNotFound: unknown fingerprint
        ExpiredFingerprint: (manual) validity window has elapsed
        PaymentNotReceived: (manual) gateway has not seen the payment yet
        GatewayError: (manual) gateway unreachable
    """
    now = now or utcnow()
    record = db.query(models.SettlementRecord).filter(
        models.SettlementRecord.fingerprint == fingerprint.lower()
    ).first()
    if record is None:
        raise RecordNotFound(f"Payment request {fingerprint} not found")

    if record.status != SettlementStatus.PENDING:
        return _closed_record(record, mode)
    if expire_if_elapsed(db, record, now):
        return _closed_record(record, mode)

    try:
        status = await gateway.check_transaction(record.fingerprint)
    except GatewayError as e:
        if mode == PollMode.MANUAL:
            raise
        logger.warning("Background poll for %s failed: %s", record.fingerprint, e)
        return PollResult(record.fingerprint, "pending", detail=str(e))

    if not status.settled:
        if mode == PollMode.MANUAL:
            raise PaymentNotReceived("Payment not yet received")
        return PollResult(record.fingerprint, "pending")

    event = event_from_poll(gateway.gateway_name, record.fingerprint, status.evidence)
    result = await apply_settlement(db, event, provisioner, record=record, now=now)
    if result.payment_confirmed:
        poll_status = "paid"
    elif result.outcome == SettlementOutcome.EXPIRED:
        poll_status = "expired"
    else:
        poll_status = "failed"
    return PollResult(
        record.fingerprint,
        poll_status,
        outcome=result.outcome,
        order_status=result.order_status,
        invoice_status=result.invoice_status,
        detail=result.detail,
    )
