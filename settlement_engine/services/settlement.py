"""
Settlement state machine.

Orchestrates:
1. Issue a KHQR payload and persist a pending SettlementRecord
2. Apply a "settled" event from the poller or a webhook, exactly once:
   a. record  pending -> settled        (conditional UPDATE, loser is a no-op)
   b. invoice unpaid|overdue -> paid    (conditional UPDATE)
   c. branch on order status: provision / renew / extend
   d. provisioning command; a failure leaves a and b committed
3. Expire pending records whose validity window elapsed
4. Re-run fulfilment for orders left in "paid" after a provisioning failure

Every transition is a single "UPDATE ... WHERE status = <expected>" so a poll
and a webhook racing for the same fingerprint cannot both win. Nothing is
cached between calls; state is always re-read from the database.
"""
import calendar
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import MerchantConfig, get_settings
from settlement_engine.errors import (
    InvalidPayloadField,
    InvoiceAlreadyPaid,
    ProvisioningFailed,
    RecordNotFound,
)
from settlement_engine.khqr.builder import (
    CURRENCY_CODES,
    DEFAULT_IMAGE_BASE_URL,
    KHQRPayload,
    build_khqr,
    convert_amount,
)
from settlement_engine.models import InvoiceStatus, OrderStatus, SettlementStatus, utcnow
from settlement_engine.services.matching import OPEN_INVOICE_STATES, make_bill_reference, resolve_record
from settlement_engine.services.normalizer import SettlementEvent
from settlement_engine.services.provisioning import ProvisioningClient

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_SECONDS = 15 * 60
DEFAULT_BILLING_DAYS = get_settings().DEFAULT_BILLING_DAYS

PAYMENT_METHODS = {
    "bakong": "bakong",
    "ikhode": "KHQR Gateway",
}


class SettlementOutcome:
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    EXPIRED = "expired"
    DUPLICATE_PAYMENT = "duplicate_payment"
    AMOUNT_MISMATCH = "amount_mismatch"
    PROVISIONING_FAILED = "provisioning_failed"
    NOT_SETTLED = "not_settled"


class FulfilmentAction:
    PROVISION = "provision"
    RENEW = "renew"
    EXTEND = "extend"


class SettlementResult:
    def __init__(
        self,
        fingerprint: str,
        outcome: str,
        action: Optional[str] = None,
        order_id: Optional[str] = None,
        order_status: Optional[str] = None,
        invoice_id: Optional[str] = None,
        invoice_status: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.fingerprint = fingerprint
        self.outcome = outcome
        self.action = action
        self.order_id = order_id
        self.order_status = order_status
        self.invoice_id = invoice_id
        self.invoice_status = invoice_status
        self.detail = detail

    @property
    def payment_confirmed(self) -> bool:
        # provisioning trouble is an admin problem, the payer did pay
        return self.outcome in (
            SettlementOutcome.SETTLED,
            SettlementOutcome.ALREADY_SETTLED,
            SettlementOutcome.PROVISIONING_FAILED,
        )


# ---------------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------------
def _epoch(dt: datetime) -> int:
    return calendar.timegm(dt.timetuple())


def _same_amount(a, b) -> bool:
    try:
        return Decimal(str(a)) == Decimal(str(b))
    except InvalidOperation:
        return False


# numeric ISO 4217 codes some gateway bodies use
CURRENCY_BY_CODE = {code: name for name, code in CURRENCY_CODES.items()}


def _invoice_total_in(invoice: models.Invoice, currency: str, merchant: MerchantConfig) -> Decimal:
    invoice_currency = (invoice.currency or "").upper()
    for code in (invoice_currency, currency):
        if code not in CURRENCY_CODES:
            raise InvalidPayloadField(
                f"Unsupported currency {code!r}; expected one of {sorted(CURRENCY_CODES)}"
            )
    total, _ = convert_amount(
        Decimal(str(invoice.total)), invoice_currency, currency, merchant.usd_to_khr_rate
    )
    return total


def _find_issued(db: Session, invoice: models.Invoice, fingerprint: str) -> Optional[models.SettlementRecord]:
    existing = db.query(models.SettlementRecord).filter(
        models.SettlementRecord.fingerprint == fingerprint
    ).first()
    if existing is not None and existing.invoice_id != invoice.id:
        raise InvalidPayloadField(
            f"Payload for invoice {invoice.id} collides with an existing payment request; retry"
        )
    return existing


def issue_settlement(
    db: Session,
    invoice_id: str,
    merchant: MerchantConfig,
    amount=None,
    currency: Optional[str] = None,
    gateway: str = "bakong",
    validity_seconds: int = DEFAULT_VALIDITY_SECONDS,
    image_base_url: str = DEFAULT_IMAGE_BASE_URL,
    now: Optional[datetime] = None,
):
    """
    Build a KHQR payload for an invoice and persist a pending SettlementRecord.

    Returns (record, khqr). Issuing the exact same payload twice returns the
    existing record instead of creating a second one.

    Raises:
        RecordNotFound: unknown invoice
        InvoiceAlreadyPaid: invoice is paid
        InvalidPayloadField / InvalidMerchantConfig: from the builder, or an
            amount that does not match the invoice total
    """
    now = now or utcnow()
    invoice = db.query(models.Invoice).filter(models.Invoice.id == invoice_id).first()
    if invoice is None:
        raise RecordNotFound(f"Invoice {invoice_id} not found")
    if invoice.status == InvoiceStatus.PAID:
        raise InvoiceAlreadyPaid(f"Invoice {invoice_id} has already been paid")

    currency = (currency or invoice.currency).upper()
    if amount is None:
        amount = invoice.total
    else:
        expected = _invoice_total_in(invoice, currency, merchant)
        if not _same_amount(amount, expected):
            raise InvalidPayloadField(
                f"Payment amount {amount} {currency} does not match invoice total "
                f"{invoice.total} {invoice.currency} ({expected} {currency})"
            )

    khqr: KHQRPayload = build_khqr(
        merchant,
        amount=amount,
        currency=currency,
        bill_reference=make_bill_reference(invoice.id, _epoch(now)),
        image_base_url=image_base_url,
    )
    # an open-amount QR would let any payment settle the invoice
    if khqr.is_open_amount and Decimal(str(invoice.total)) > 0:
        raise InvalidPayloadField(
            f"Invoice total {invoice.total} {invoice.currency} rounds to zero in {khqr.currency}"
        )

    existing = _find_issued(db, invoice, khqr.fingerprint)
    if existing is not None:
        return existing, khqr

    record = models.SettlementRecord(
        order_id=invoice.order_id,
        invoice_id=invoice.id,
        gateway=gateway,
        fingerprint=khqr.fingerprint,
        bill_reference=khqr.bill_reference,
        payload=khqr.payload,
        amount=khqr.amount or "0",
        currency=khqr.currency,
        original_amount=khqr.original_amount,
        original_currency=khqr.original_currency,
        status=SettlementStatus.PENDING,
        created_at=now,
        expires_at=now + timedelta(seconds=validity_seconds),
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request stored the same payload first
        db.rollback()
        existing = _find_issued(db, invoice, khqr.fingerprint)
        if existing is None:
            raise
        return existing, khqr
    db.refresh(record)
    logger.info(
        "Issued KHQR %s for invoice %s (%s %s, expires %s)",
        record.fingerprint, invoice.id, record.amount, record.currency, record.expires_at.isoformat(),
    )
    return record, khqr


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------
def _expire(db: Session, record_id: str, now: datetime) -> int:
    return db.query(models.SettlementRecord).filter(
        models.SettlementRecord.id == record_id,
        models.SettlementRecord.status == SettlementStatus.PENDING,
        models.SettlementRecord.expires_at < now,
    ).update(
        {"status": SettlementStatus.FAILED, "failure_reason": "expired"},
        synchronize_session=False,
    )


def expire_if_elapsed(db: Session, record: models.SettlementRecord, now: Optional[datetime] = None) -> bool:
    """Expire a single pending record if its window has passed. True when it is (now) expired."""
    now = now or utcnow()
    if _expire(db, record.id, now):
        db.commit()
        logger.info("Settlement %s expired unpaid", record.fingerprint)
    db.refresh(record)
    return record.status == SettlementStatus.FAILED and record.failure_reason == "expired"


def expire_stale_settlements(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    count = db.query(models.SettlementRecord).filter(
        models.SettlementRecord.status == SettlementStatus.PENDING,
        models.SettlementRecord.expires_at < now,
    ).update(
        {"status": SettlementStatus.FAILED, "failure_reason": "expired"},
        synchronize_session=False,
    )
    db.commit()
    if count:
        logger.info("Expired %d unpaid settlement record(s)", count)
    return count


# ---------------------------------------------------------------------------
# Fulfilment
# ---------------------------------------------------------------------------
def _billing_days(order: models.Order) -> int:
    details = order.server_details or {}
    try:
        days = int(details.get("billing_days") or DEFAULT_BILLING_DAYS)
    except (TypeError, ValueError):
        days = DEFAULT_BILLING_DAYS
    return days if days > 0 else DEFAULT_BILLING_DAYS


def _extended_due_date(order: models.Order, now: datetime) -> datetime:
    # paying early must not cost the customer the days they still have
    start = order.next_due_date if order.next_due_date and order.next_due_date > now else now
    return start + timedelta(days=_billing_days(order))


def _load_order(db: Session, order_id: str) -> Optional[models.Order]:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if order is not None:
        db.refresh(order)
    return order


def _mark_retry_eligible(db: Session, order: models.Order, from_status: str, error: Exception) -> None:
    db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == from_status,
    ).update(
        {"status": OrderStatus.PAID, "notes": f"Fulfilment failed, retry pending: {error}"},
        synchronize_session=False,
    )
    db.commit()


async def _provision(db: Session, order: models.Order, provisioner: ProvisioningClient,
                     now: datetime, note: str) -> str:
    db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == OrderStatus.PENDING,
    ).update({"status": OrderStatus.PAID, "notes": note}, synchronize_session=False)
    claimed = db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == OrderStatus.PAID,
    ).update({"status": OrderStatus.PROVISIONING}, synchronize_session=False)
    db.commit()
    if not claimed:
        logger.info("Order %s is already being fulfilled elsewhere", order.id)
        return SettlementOutcome.SETTLED

    try:
        ack = await provisioner.create(order.id, order.server_details or {})
    except ProvisioningFailed as e:
        logger.error("Provisioning failed for order %s: %s", order.id, e)
        _mark_retry_eligible(db, order, OrderStatus.PROVISIONING, e)
        return SettlementOutcome.PROVISIONING_FAILED

    db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == OrderStatus.PROVISIONING,
    ).update(
        {
            "status": OrderStatus.ACTIVE,
            "server_id": ack.server_id or order.server_id,
            "next_due_date": now + timedelta(days=_billing_days(order)),
        },
        synchronize_session=False,
    )
    db.commit()
    logger.info("Order %s provisioned (server %s)", order.id, ack.server_id)
    return SettlementOutcome.SETTLED


async def _renew(db: Session, order: models.Order, provisioner: ProvisioningClient,
                 now: datetime, from_status: str) -> str:
    try:
        await provisioner.renew(order.id, order.server_details or {}, order.server_id)
    except ProvisioningFailed as e:
        logger.error("Renewal failed for order %s: %s", order.id, e)
        _mark_retry_eligible(db, order, from_status, e)
        return SettlementOutcome.PROVISIONING_FAILED

    db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == from_status,
    ).update(
        {"status": OrderStatus.ACTIVE, "next_due_date": _extended_due_date(order, now)},
        synchronize_session=False,
    )
    db.commit()
    logger.info("Order %s renewed", order.id)
    return SettlementOutcome.SETTLED


def _extend(db: Session, order: models.Order, now: datetime) -> str:
    db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == OrderStatus.ACTIVE,
    ).update({"next_due_date": _extended_due_date(order, now)}, synchronize_session=False)
    db.commit()
    logger.info("Order %s due date extended", order.id)
    return SettlementOutcome.SETTLED


def reported_amount_matches(event: SettlementEvent, record: models.SettlementRecord) -> bool:
    """True when the gateway reports no amount, or the amount the QR asked for."""
    if event.amount is None or not record.amount or record.amount == "0":
        return True
    currency = (event.currency or record.currency).strip().upper()
    currency = CURRENCY_BY_CODE.get(currency, currency)
    if currency == record.currency:
        return _same_amount(event.amount, record.amount)
    if currency == record.original_currency:
        return _same_amount(event.amount, record.original_amount)
    return False


def choose_action(order_status: str) -> Optional[str]:
    if order_status in (OrderStatus.PENDING, OrderStatus.PAID):
        return FulfilmentAction.PROVISION
    if order_status == OrderStatus.SUSPENDED:
        return FulfilmentAction.RENEW
    if order_status == OrderStatus.ACTIVE:
        return FulfilmentAction.EXTEND
    return None


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------
def _result(db: Session, record: models.SettlementRecord, outcome: str,
            action: Optional[str] = None, detail: Optional[str] = None) -> SettlementResult:
    order = _load_order(db, record.order_id) if record.order_id else None
    invoice = db.query(models.Invoice).filter(models.Invoice.id == record.invoice_id).first()
    if invoice is not None:
        db.refresh(invoice)
    return SettlementResult(
        fingerprint=record.fingerprint,
        outcome=outcome,
        action=action,
        order_id=order.id if order else None,
        order_status=order.status if order else None,
        invoice_id=invoice.id if invoice else None,
        invoice_status=invoice.status if invoice else None,
        detail=detail,
    )


async def apply_settlement(
    db: Session,
    event: SettlementEvent,
    provisioner: ProvisioningClient,
    record: Optional[models.SettlementRecord] = None,
    now: Optional[datetime] = None,
) -> SettlementResult:
    """
    Drive one settlement record forward in response to a gateway event.

    Idempotent: a second event for a record that is already settled returns
    ALREADY_SETTLED and changes nothing. Late events for expired records are
    discarded with outcome EXPIRED.

    Raises:
        RecordNotFound: the event matches no settlement record
    """
    now = now or utcnow()
    if record is None:
        record = resolve_record(db, event)

    if not event.is_settled:
        logger.info("Ignoring %s event with status %s for %s", event.gateway, event.status, record.fingerprint)
        return _result(db, record, SettlementOutcome.NOT_SETTLED, detail=f"gateway status {event.status}")

    # 1. record pending -> settled
    won = db.query(models.SettlementRecord).filter(
        models.SettlementRecord.id == record.id,
        models.SettlementRecord.status == SettlementStatus.PENDING,
        models.SettlementRecord.expires_at >= now,
    ).update(
        {
            "status": SettlementStatus.SETTLED,
            "settled_at": now,
            "gateway_evidence": event.evidence,
        },
        synchronize_session=False,
    )
    if not won:
        db.rollback()
        db.refresh(record)
        if record.status == SettlementStatus.SETTLED:
            logger.info("Settlement %s already applied; nothing to do", record.fingerprint)
            return _result(db, record, SettlementOutcome.ALREADY_SETTLED)
        if record.failure_reason == "duplicate_payment":
            return _result(db, record, SettlementOutcome.DUPLICATE_PAYMENT,
                           detail="invoice was already paid by another settlement")
        if record.failure_reason == "amount_mismatch":
            return _result(db, record, SettlementOutcome.AMOUNT_MISMATCH,
                           detail="gateway reported a different amount")
        if record.status == SettlementStatus.PENDING:
            expire_if_elapsed(db, record, now)
        logger.info(
            "Discarding late %s event for %s settlement %s (%s)",
            event.gateway, record.status, record.fingerprint, record.failure_reason,
        )
        return _result(db, record, SettlementOutcome.EXPIRED,
                       detail=f"record is {record.status} ({record.failure_reason})")

    if not reported_amount_matches(event, record):
        db.rollback()
        db.query(models.SettlementRecord).filter(
            models.SettlementRecord.id == record.id,
            models.SettlementRecord.status == SettlementStatus.PENDING,
        ).update(
            {
                "status": SettlementStatus.FAILED,
                "failure_reason": "amount_mismatch",
                "gateway_evidence": event.evidence,
            },
            synchronize_session=False,
        )
        db.commit()
        db.refresh(record)
        logger.error(
            "Amount mismatch on %s: %s reported %s %s, expected %s %s; held for review",
            record.fingerprint, event.gateway, event.amount, event.currency or record.currency,
            record.amount, record.currency,
        )
        return _result(db, record, SettlementOutcome.AMOUNT_MISMATCH,
                       detail=f"gateway reported {event.amount} {event.currency or record.currency}, "
                              f"expected {record.amount} {record.currency}")

    # 2. invoice -> paid, same transaction as step 1
    paid = db.query(models.Invoice).filter(
        models.Invoice.id == record.invoice_id,
        models.Invoice.status.in_(OPEN_INVOICE_STATES),
    ).update(
        {
            "status": InvoiceStatus.PAID,
            "paid_at": now,
            "payment_method": PAYMENT_METHODS.get(event.gateway, event.gateway),
            "transaction_id": event.transaction_id or record.bill_reference or record.fingerprint,
        },
        synchronize_session=False,
    )
    if not paid:
        # another settlement already paid this invoice; this money needs a refund
        db.rollback()
        db.query(models.SettlementRecord).filter(
            models.SettlementRecord.id == record.id,
            models.SettlementRecord.status == SettlementStatus.PENDING,
        ).update(
            {
                "status": SettlementStatus.FAILED,
                "failure_reason": "duplicate_payment",
                "gateway_evidence": event.evidence,
            },
            synchronize_session=False,
        )
        db.commit()
        db.refresh(record)
        logger.error(
            "Duplicate payment on invoice %s via %s (%s); refund required",
            record.invoice_id, event.gateway, record.fingerprint,
        )
        return _result(db, record, SettlementOutcome.DUPLICATE_PAYMENT,
                       detail="invoice was already paid by another settlement")
    db.commit()
    db.refresh(record)
    logger.info("Settlement %s applied; invoice %s paid", record.fingerprint, record.invoice_id)

    # 3. branch on order status
    order = _load_order(db, record.order_id) if record.order_id else None
    if order is None:
        return _result(db, record, SettlementOutcome.SETTLED, detail="no order attached to invoice")

    action = choose_action(order.status)
    method = PAYMENT_METHODS.get(event.gateway, event.gateway)
    note = f"Payment confirmed via {method}. Transaction: {event.transaction_id or record.fingerprint}"

    # 4. fulfilment; failures never undo 1 and 2
    if action == FulfilmentAction.PROVISION:
        outcome = await _provision(db, order, provisioner, now, note)
    elif action == FulfilmentAction.RENEW:
        outcome = await _renew(db, order, provisioner, now, OrderStatus.SUSPENDED)
    elif action == FulfilmentAction.EXTEND:
        outcome = _extend(db, order, now)
    else:
        logger.warning("Order %s is %s; payment recorded without fulfilment", order.id, order.status)
        return _result(db, record, SettlementOutcome.SETTLED,
                       detail=f"order status {order.status} needs manual review")

    return _result(db, record, outcome, action=action)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------
async def retry_provisioning(
    db: Session,
    provisioner: ProvisioningClient,
    now: Optional[datetime] = None,
) -> List[SettlementResult]:
    """
    Re-run fulfilment for orders stuck in "paid" whose invoice is paid.

    Orders that already have a server were being renewed; the rest are new.
    """
    now = now or utcnow()
    results = []
    orders = db.query(models.Order).filter(models.Order.status == OrderStatus.PAID).all()
    for order in orders:
        record = db.query(models.SettlementRecord).filter(
            models.SettlementRecord.order_id == order.id,
            models.SettlementRecord.status == SettlementStatus.SETTLED,
        ).order_by(models.SettlementRecord.settled_at.desc()).first()
        if record is None:
            continue

        if order.server_id:
            action = FulfilmentAction.RENEW
            outcome = await _renew(db, order, provisioner, now, OrderStatus.PAID)
        else:
            action = FulfilmentAction.PROVISION
            outcome = await _provision(db, order, provisioner, now, order.notes or "")
        results.append(_result(db, record, outcome, action=action))
    return results
