import logging

from fastapi import FastAPI
from contextlib import asynccontextmanager

from settlement_engine.config import get_settings
from settlement_engine.database import engine, SessionLocal
from settlement_engine import models

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables
    models.Base.metadata.create_all(bind=engine)
    # Seed demo data if empty
    if settings.SEED_DEMO_DATA:
        db = SessionLocal()
        try:
            count = db.query(models.Order).count()
        finally:
            db.close()
        if count == 0:
            import subprocess
            import sys
            subprocess.run([sys.executable, "scripts/seed_demo_data.py"], check=False)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="KHQR payment issuing and settlement reconciliation for game-server orders",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "gamehost-settlement-api"}


from settlement_engine.routers import payments, webhooks, renewals  # noqa: E402
app.include_router(payments.router, prefix="/api/v1/payments", tags=["payments"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["webhooks"])
app.include_router(renewals.router, prefix="/api/v1/renewals", tags=["renewals"])
