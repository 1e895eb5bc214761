"""
Maps a gateway event back to the SettlementRecord it settles.

Lookup order, first hit wins:
1. fingerprint (md5 of the payload)           exact
2. bill reference echoed by the gateway       exact
3. external id as bill reference / invoice id / order id   exact
4. short id prefix (e.g. "INV-1a2b3c4d-123456")  only when the prefix
   identifies exactly one unpaid invoice

Step 4 exists for gateways that shorten our ids to fit the 25 byte bill
number. It never picks between several candidates.
"""
import logging
import re
from typing import Optional

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.errors import RecordNotFound
from settlement_engine.services.normalizer import SettlementEvent

logger = logging.getLogger(__name__)

SHORT_REFERENCE = re.compile(r"^(?:INV|TXN)-([0-9a-fA-F]{8})-\d+$")
MIN_PREFIX_LENGTH = 8

OPEN_INVOICE_STATES = (models.InvoiceStatus.UNPAID, models.InvoiceStatus.OVERDUE)


def make_bill_reference(invoice_id: str, issued_at_epoch: int) -> str:
    """INV-<first 8 chars of invoice id>-<last 6 digits of epoch>, 19 bytes."""
    return f"INV-{invoice_id[:8]}-{str(issued_at_epoch)[-6:]}"


def _record_by_reference(db: Session, reference: str) -> Optional[models.SettlementRecord]:
    return db.query(models.SettlementRecord).filter(
        models.SettlementRecord.bill_reference == reference
    ).order_by(models.SettlementRecord.created_at.desc()).first()


def _record_for_invoice(db: Session, invoice_id: str) -> Optional[models.SettlementRecord]:
    """Prefer a pending record; otherwise the most recent one."""
    records = db.query(models.SettlementRecord).filter(
        models.SettlementRecord.invoice_id == invoice_id
    ).order_by(models.SettlementRecord.created_at.desc()).all()
    for record in records:
        if record.status == models.SettlementStatus.PENDING:
            return record
    return records[0] if records else None


def _invoice_for_order(db: Session, order_id: str) -> Optional[models.Invoice]:
    invoices = db.query(models.Invoice).filter(
        models.Invoice.order_id == order_id
    ).order_by(models.Invoice.created_at.desc()).all()
    for invoice in invoices:
        if invoice.status in OPEN_INVOICE_STATES:
            return invoice
    return invoices[0] if invoices else None


def _invoice_by_prefix(db: Session, external_id: str) -> Optional[models.Invoice]:
    match = SHORT_REFERENCE.match(external_id)
    prefix = match.group(1).lower() if match else external_id
    if len(prefix) < MIN_PREFIX_LENGTH:
        return None

    candidates = db.query(models.Invoice).filter(
        models.Invoice.id.startswith(prefix, autoescape=True),
        models.Invoice.status.in_(OPEN_INVOICE_STATES),
    ).limit(2).all()

    if len(candidates) == 1:
        logger.warning(
            "Matched external id %s to invoice %s by prefix fallback",
            external_id, candidates[0].id,
        )
        return candidates[0]
    if len(candidates) > 1:
        logger.error("External id %s is ambiguous: prefix matches several unpaid invoices", external_id)
    return None


def resolve_record(db: Session, event: SettlementEvent) -> models.SettlementRecord:
    """
    Find the settlement record an event refers to.

    Raises:
        RecordNotFound: nothing (or nothing unambiguous) matches
    """
    if event.fingerprint:
        record = db.query(models.SettlementRecord).filter(
            models.SettlementRecord.fingerprint == event.fingerprint.lower()
        ).first()
        if record:
            return record

    if event.reference:
        record = _record_by_reference(db, event.reference)
        if record:
            return record

    external_id = (event.external_id or "").strip()
    if external_id:
        record = _record_by_reference(db, external_id)
        if record:
            return record

        invoice = db.query(models.Invoice).filter(models.Invoice.id == external_id).first()
        if invoice is None:
            invoice = _invoice_for_order(db, external_id)
        if invoice is None:
            invoice = _invoice_by_prefix(db, external_id)
        if invoice is not None:
            record = _record_for_invoice(db, invoice.id)
            if record:
                return record

    raise RecordNotFound(
        f"No settlement record for {event.gateway} event "
        f"(external_id={event.external_id!r}, reference={event.reference!r})"
    )
