"""
Renewal scheduler sweep.

Runs independently of settlement:
- reminder events for unpaid invoices due in exactly 7, 3 or 1 day(s)
- unpaid invoices past their due date are flagged overdue
- active orders with an overdue invoice or a past next_due_date are
  suspended on the panel and marked suspended here

Reminder delivery (e-mail) is someone else's job; the sweep only reports
what should be sent.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.errors import ProvisioningFailed
from settlement_engine.models import InvoiceStatus, OrderStatus, utcnow
from settlement_engine.services.provisioning import ProvisioningClient

logger = logging.getLogger(__name__)

REMINDER_DAYS = (7, 3, 1)
REMINDER_HORIZON = timedelta(days=7)


class ReminderEvent:
    def __init__(self, invoice: models.Invoice, days_until_due: int):
        self.invoice_id = invoice.id
        self.invoice_number = invoice.invoice_number
        self.user_id = invoice.user_id
        self.order_id = invoice.order_id
        self.amount = invoice.total
        self.currency = invoice.currency
        self.due_date = invoice.due_date
        self.days_until_due = days_until_due
        self.status = invoice.status


class SuspensionEvent:
    def __init__(self, order_id: str, reason: str, panel_suspended: bool, detail: Optional[str] = None):
        self.order_id = order_id
        self.reason = reason
        self.panel_suspended = panel_suspended
        self.detail = detail


class RenewalSweepResult:
    def __init__(self, checked_at: datetime, reminders: List[ReminderEvent],
                 overdue_invoice_ids: List[str], suspensions: List[SuspensionEvent]):
        self.checked_at = checked_at
        self.reminders = reminders
        self.overdue_invoice_ids = overdue_invoice_ids
        self.suspensions = suspensions


def days_until_due(due_date: datetime, now: datetime) -> int:
    return math.ceil((due_date - now).total_seconds() / 86400)


def collect_reminders(db: Session, now: Optional[datetime] = None) -> List[ReminderEvent]:
    now = now or utcnow()
    invoices = db.query(models.Invoice).filter(
        models.Invoice.status == InvoiceStatus.UNPAID,
        models.Invoice.due_date >= now,
        models.Invoice.due_date <= now + REMINDER_HORIZON,
    ).all()

    reminders = []
    for invoice in invoices:
        days = days_until_due(invoice.due_date, now)
        if days in REMINDER_DAYS:
            logger.info("Reminder due for invoice %s: %d day(s) until due", invoice.invoice_number, days)
            reminders.append(ReminderEvent(invoice, days))
    return reminders


def flag_overdue_invoices(db: Session, now: Optional[datetime] = None) -> List[str]:
    now = now or utcnow()
    ids = [
        row.id for row in db.query(models.Invoice.id).filter(
            models.Invoice.status == InvoiceStatus.UNPAID,
            models.Invoice.due_date < now,
        ).all()
    ]
    if ids:
        db.query(models.Invoice).filter(
            models.Invoice.id.in_(ids),
            models.Invoice.status == InvoiceStatus.UNPAID,
        ).update({"status": InvoiceStatus.OVERDUE}, synchronize_session=False)
        db.commit()
        logger.info("Flagged %d invoice(s) overdue", len(ids))
    return ids


def _suspension_reason(order: models.Order, overdue_order_ids: set, now: datetime) -> Optional[str]:
    if order.id in overdue_order_ids:
        return "invoice_overdue"
    if order.next_due_date is not None and order.next_due_date < now:
        return "billing_overdue"
    return None


def _claim_suspension(db: Session, order_id: str, now: datetime) -> bool:
    """Mark the order suspended only if it is still active and still owes money."""
    overdue = select(models.Invoice.order_id).where(
        models.Invoice.status == InvoiceStatus.OVERDUE,
        models.Invoice.order_id.isnot(None),
    )
    claimed = db.query(models.Order).filter(
        models.Order.id == order_id,
        models.Order.status == OrderStatus.ACTIVE,
        or_(models.Order.id.in_(overdue), models.Order.next_due_date < now),
    ).update({"status": OrderStatus.SUSPENDED}, synchronize_session=False)
    db.commit()
    return bool(claimed)


async def suspend_overdue_orders(
    db: Session,
    provisioner: ProvisioningClient,
    now: Optional[datetime] = None,
) -> List[SuspensionEvent]:
    now = now or utcnow()
    overdue_order_ids = {
        row.order_id for row in db.query(models.Invoice.order_id).filter(
            models.Invoice.status == InvoiceStatus.OVERDUE,
            models.Invoice.order_id.isnot(None),
        ).all()
    }
    candidates = db.query(models.Order).filter(
        models.Order.status == OrderStatus.ACTIVE,
        or_(models.Order.id.in_(list(overdue_order_ids)), models.Order.next_due_date < now),
    ).all()

    suspensions = []
    for order in candidates:
        reason = _suspension_reason(order, overdue_order_ids, now)
        if reason is None:
            continue
        if not _claim_suspension(db, order.id, now):
            logger.info("Order %s was paid or changed before suspension; skipped", order.id)
            continue

        panel_suspended, detail = True, None
        try:
            await provisioner.suspend(order.id, order.server_details or {}, order.server_id)
        except ProvisioningFailed as e:
            # the order is suspended here regardless; the panel can catch up
            logger.error("Panel suspension failed for order %s: %s", order.id, e)
            panel_suspended, detail = False, str(e)

        logger.info("Suspended order %s (%s)", order.id, reason)
        suspensions.append(SuspensionEvent(order.id, reason, panel_suspended, detail))
    return suspensions


def pending_reminders(db: Session, now: Optional[datetime] = None) -> List[ReminderEvent]:
    """Unpaid or overdue invoices due within the next 7 days (or already late), soonest first."""
    now = now or utcnow()
    invoices = db.query(models.Invoice).filter(
        models.Invoice.status.in_((InvoiceStatus.UNPAID, InvoiceStatus.OVERDUE)),
        models.Invoice.due_date <= now + REMINDER_HORIZON,
    ).order_by(models.Invoice.due_date.asc()).all()
    return [ReminderEvent(invoice, days_until_due(invoice.due_date, now)) for invoice in invoices]


async def run_renewal_sweep(
    db: Session,
    provisioner: ProvisioningClient,
    now: Optional[datetime] = None,
) -> RenewalSweepResult:
    now = now or utcnow()
    reminders = collect_reminders(db, now)
    overdue = flag_overdue_invoices(db, now)
    suspensions = await suspend_overdue_orders(db, provisioner, now)
    return RenewalSweepResult(now, reminders, overdue, suspensions)
