"""
Seeds SQLite with demo orders and invoices for the settlement API.

Distribution:
- new orders awaiting their first payment (pending, unpaid invoice)
- active servers with a renewal invoice due in 7 / 3 / 1 days
- active servers whose renewal invoice is already overdue
- suspended servers waiting for a renewal payment
"""
import sys
import os
import random
from datetime import timedelta
import uuid

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from settlement_engine.database import engine, SessionLocal
from settlement_engine import models

random.seed(42)

PLANS = [
    {"plan_id": "mc-basic", "plan_name": "Minecraft Basic", "price": 5.00, "billing_days": 30},
    {"plan_id": "mc-pro", "plan_name": "Minecraft Pro", "price": 12.00, "billing_days": 30},
    {"plan_id": "rust-std", "plan_name": "Rust Standard", "price": 18.50, "billing_days": 30},
    {"plan_id": "ark-week", "plan_name": "ARK Weekly", "price": 4.00, "billing_days": 7},
]

NOW = models.utcnow()
_invoice_counter = 1000


def make_order(status, plan, server_id=None, next_due_date=None, created_at=None):
    return models.Order(
        id=str(uuid.uuid4()),
        user_id=f"user_{random.randint(1, 40):03d}",
        status=status,
        server_details=dict(plan),
        server_id=server_id,
        next_due_date=next_due_date,
        created_at=created_at or NOW - timedelta(days=random.randint(1, 60)),
    )


def make_invoice(order, due_date, status="unpaid"):
    global _invoice_counter
    _invoice_counter += 1
    return models.Invoice(
        id=str(uuid.uuid4()),
        order_id=order.id,
        user_id=order.user_id,
        invoice_number=f"INV-{NOW:%Y%m}-{_invoice_counter}",
        total=order.server_details["price"],
        currency="USD",
        due_date=due_date,
        status=status,
    )


def generate():
    rows = []

    # --- 1. New orders awaiting payment ---
    for _ in range(6):
        order = make_order(models.OrderStatus.PENDING, random.choice(PLANS), created_at=NOW)
        rows += [order, make_invoice(order, NOW + timedelta(days=1))]

    # --- 2. Active servers with renewals coming up (reminder thresholds) ---
    for days in (7, 3, 1, 10):
        due = NOW + timedelta(days=days) - timedelta(hours=1)
        order = make_order(models.OrderStatus.ACTIVE, random.choice(PLANS),
                           server_id=uuid.uuid4().hex[:8], next_due_date=due)
        rows += [order, make_invoice(order, due)]

    # --- 3. Active servers already past due ---
    for _ in range(2):
        due = NOW - timedelta(days=random.randint(1, 5))
        order = make_order(models.OrderStatus.ACTIVE, random.choice(PLANS),
                           server_id=uuid.uuid4().hex[:8], next_due_date=due)
        rows += [order, make_invoice(order, due)]

    # --- 4. Suspended servers ---
    for _ in range(2):
        due = NOW - timedelta(days=random.randint(6, 20))
        order = make_order(models.OrderStatus.SUSPENDED, random.choice(PLANS),
                           server_id=uuid.uuid4().hex[:8], next_due_date=due)
        rows += [order, make_invoice(order, due, status="overdue")]

    return rows


def seed(db):
    rows = generate()
    db.add_all(rows)
    db.commit()
    return len(rows)


def main():
    print("Creating database tables...")
    models.Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        existing = db.query(models.Order).count()
        if existing > 0:
            print(f"Database already has {existing} orders. Skipping seed.")
            return

        print("Generating orders and invoices...")
        seed(db)

        from sqlalchemy import func as sqlfunc
        states = db.query(
            models.Order.status,
            sqlfunc.count(models.Order.id)
        ).group_by(models.Order.status).all()
        print("\nOrder status distribution:")
        for state, cnt in states:
            print(f"  {state}: {cnt}")

    finally:
        db.close()


if __name__ == "__main__":
    main()
