from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement_engine.database import get_db
from settlement_engine.dependencies import get_provisioner
from settlement_engine.models import InvoiceStatus
from settlement_engine.schemas.responses import (
    PendingRemindersResponse,
    ReminderEntry,
    RenewalSweepResponse,
    SuspensionEntry,
)
from settlement_engine.services.provisioning import ProvisioningClient
from settlement_engine.services.renewal import ReminderEvent, pending_reminders, run_renewal_sweep

router = APIRouter()


def _reminder_entry(reminder: ReminderEvent) -> ReminderEntry:
    return ReminderEntry(
        invoice_id=reminder.invoice_id,
        invoice_number=reminder.invoice_number,
        user_id=reminder.user_id,
        order_id=reminder.order_id,
        amount=reminder.amount,
        currency=reminder.currency,
        due_date=reminder.due_date,
        days_until_due=reminder.days_until_due,
        status=reminder.status,
        is_overdue=reminder.days_until_due < 0 or reminder.status == InvoiceStatus.OVERDUE,
    )


@router.post("/sweep", response_model=RenewalSweepResponse)
async def renewal_sweep(
    db: Session = Depends(get_db),
    provisioner: ProvisioningClient = Depends(get_provisioner),
):
    """
    Daily job: reminder events at 7/3/1 days before due, overdue flagging,
    and suspension of active orders that are past due.
    """
    result = await run_renewal_sweep(db, provisioner)
    return RenewalSweepResponse(
        checked_at=result.checked_at,
        reminders_generated=len(result.reminders),
        reminders=[_reminder_entry(r) for r in result.reminders],
        overdue_invoice_ids=result.overdue_invoice_ids,
        suspended_count=len(result.suspensions),
        suspensions=[SuspensionEntry(**vars(s)) for s in result.suspensions],
    )


@router.get("/pending", response_model=PendingRemindersResponse)
def get_pending_reminders(db: Session = Depends(get_db)):
    entries = [_reminder_entry(r) for r in pending_reminders(db)]
    return PendingRemindersResponse(
        total_pending=len(entries),
        overdue_count=sum(1 for e in entries if e.is_overdue),
        due_soon_count=sum(1 for e in entries if not e.is_overdue and e.days_until_due <= 3),
        reminders=entries,
    )
