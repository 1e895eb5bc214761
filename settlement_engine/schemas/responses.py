from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class KHQRResponse(BaseModel):
    settlement_id: str
    fingerprint: str
    status: str
    qr_string: str
    qr_image_url: str
    crc: str
    bill_reference: Optional[str]
    amount: Optional[str]  # None for an open-amount QR
    currency: str
    original_amount: str
    original_currency: str
    exchange_rate: Optional[str] = None
    expires_at: datetime


class PollResponse(BaseModel):
    fingerprint: str
    status: str
    outcome: Optional[str] = None
    order_status: Optional[str] = None
    invoice_status: Optional[str] = None
    detail: Optional[str] = None


class SettlementResultResponse(BaseModel):
    fingerprint: str
    outcome: str
    action: Optional[str] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_status: Optional[str] = None
    detail: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str  # success | ignored
    message: str
    outcome: Optional[str] = None


class ExpireResponse(BaseModel):
    expired: int


class RetryResponse(BaseModel):
    retried: int
    results: List[SettlementResultResponse]


class ReminderEntry(BaseModel):
    invoice_id: str
    invoice_number: str
    user_id: Optional[str]
    order_id: Optional[str]
    amount: float
    currency: str
    due_date: datetime
    days_until_due: int
    status: str
    is_overdue: bool


class SuspensionEntry(BaseModel):
    order_id: str
    reason: str
    panel_suspended: bool
    detail: Optional[str] = None


class RenewalSweepResponse(BaseModel):
    checked_at: datetime
    reminders_generated: int
    reminders: List[ReminderEntry]
    overdue_invoice_ids: List[str]
    suspended_count: int
    suspensions: List[SuspensionEntry]


class PendingRemindersResponse(BaseModel):
    total_pending: int
    overdue_count: int
    due_soon_count: int
    reminders: List[ReminderEntry]
