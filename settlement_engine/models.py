from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, String, Float, DateTime, JSON, ForeignKey, Text

from settlement_engine.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id():
    return str(uuid.uuid4())


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    FAILED = "failed"


class InvoiceStatus:
    UNPAID = "unpaid"
    PAID = "paid"
    OVERDUE = "overdue"


class SettlementStatus:
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=OrderStatus.PENDING)
    server_details = Column(JSON, nullable=False, default=dict)
    server_id = Column(String, nullable=True)
    next_due_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=generate_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    invoice_number = Column(String, nullable=False)
    total = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    due_date = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=InvoiceStatus.UNPAID)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def is_overdue(self, now: datetime) -> bool:
        return self.status != InvoiceStatus.PAID and now > self.due_date


class SettlementRecord(Base):
    """One row per issued QR payload. Rows are never deleted."""

    __tablename__ = "settlement_records"

    id = Column(String, primary_key=True, default=generate_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    invoice_id = Column(String, ForeignKey("invoices.id"), nullable=False, index=True)
    gateway = Column(String, nullable=False, default="bakong")
    fingerprint = Column(String(32), nullable=False, unique=True, index=True)
    bill_reference = Column(String(25), nullable=True, index=True)
    payload = Column(Text, nullable=False)
    amount = Column(String, nullable=False)  # as encoded in the payload
    currency = Column(String(3), nullable=False)
    original_amount = Column(String, nullable=False)
    original_currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=SettlementStatus.PENDING)
    failure_reason = Column(String, nullable=True)  # expired | duplicate_payment
    gateway_evidence = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    settled_at = Column(DateTime, nullable=True)
