"""
Normalizes gateway notifications into one canonical SettlementEvent.

Bakong and Ikhode deliver differently shaped bodies (field names, status
vocabulary, timestamp formats). Each is parsed with its own schema, then
mapped onto SettlementEvent before it reaches the settlement service.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from settlement_engine.errors import InvalidPayloadField


# Standard status vocabulary
NORMALIZED_STATES = {
    # Bakong
    "SUCCESS": "settled",
    "FAILED": "failed",
    "PENDING": "pending",
    # Ikhode
    "PAID": "settled",
    "COMPLETED": "settled",
    "ERROR": "failed",
}


class BakongWebhook(BaseModel):
    gateway: Literal["bakong"] = "bakong"
    transactionId: str
    status: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    reference: Optional[str] = None
    md5: Optional[str] = None
    timestamp: Optional[Union[int, float, str]] = None


class IkhodeWebhook(BaseModel):
    gateway: Literal["ikhode"] = "ikhode"
    invoice_id: str
    transaction_id: Optional[str] = None
    # the Ikhode relay only calls back once the payment is confirmed
    status: str = "PAID"
    amount: Optional[str] = None
    fee: Optional[str] = None
    currency: Optional[str] = None
    timestamp: Optional[Union[int, float, str]] = None


GatewayWebhook = Union[BakongWebhook, IkhodeWebhook]

WEBHOOK_SCHEMAS = {
    "bakong": BakongWebhook,
    "ikhode": IkhodeWebhook,
}


class SettlementEvent:
    """A gateway's claim that a payment settled (or did not)."""

    def __init__(
        self,
        gateway: str,
        status: str,
        external_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        reference: Optional[str] = None,
        transaction_id: Optional[str] = None,
        amount: Optional[str] = None,
        currency: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        evidence: Optional[Dict[str, Any]] = None,
    ):
        self.gateway = gateway
        self.status = status
        self.external_id = external_id
        self.fingerprint = fingerprint
        self.reference = reference
        self.transaction_id = transaction_id
        self.amount = amount
        self.currency = currency
        # gateway-supplied time, None when the body carries none
        self.timestamp = timestamp
        self.evidence = evidence or {}

    @property
    def is_settled(self) -> bool:
        return self.status == "settled"

    def __repr__(self):
        return (
            f"SettlementEvent(gateway={self.gateway!r}, status={self.status!r}, "
            f"external_id={self.external_id!r}, fingerprint={self.fingerprint!r})"
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds, epoch milliseconds or ISO8601 → naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, str) and not value.strip().lstrip("-").replace(".", "", 1).isdigit():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidPayloadField(f"Unparseable timestamp {value!r}")
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt
    try:
        epoch = float(value)
    except (TypeError, ValueError):
        raise InvalidPayloadField(f"Unparseable timestamp {value!r}")
    if epoch > 1e12:
        epoch = epoch / 1000
    try:
        return datetime.fromtimestamp(epoch, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        raise InvalidPayloadField(f"Unparseable timestamp {value!r}")


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def parse_webhook(gateway: str, raw: Dict[str, Any]) -> GatewayWebhook:
    schema = WEBHOOK_SCHEMAS.get(gateway)
    if schema is None:
        raise InvalidPayloadField(f"Unknown gateway: {gateway}")

    data = dict(raw)
    data["gateway"] = gateway
    for key in ("amount", "fee", "transactionId", "transaction_id", "reference", "invoice_id"):
        if key in data and data[key] is not None:
            data[key] = str(data[key])
    if gateway == "ikhode" and "transaction_id" not in data and "transactionId" in data:
        data["transaction_id"] = data["transactionId"]
    try:
        return schema(**data)
    except ValidationError as e:
        raise InvalidPayloadField(f"Invalid {gateway} webhook body: {e.errors()}")


def normalize(gateway: str, raw: Dict[str, Any]) -> SettlementEvent:
    """
    Maps a gateway webhook body to a SettlementEvent.

    Args:
        gateway: bakong or ikhode
        raw: the decoded JSON body (Ikhode also carries the invoice id from the URL)

    Raises:
        InvalidPayloadField: unknown gateway, missing fields or bad timestamp
    """
    parsed = parse_webhook(gateway, raw)
    status = NORMALIZED_STATES.get(parsed.status.upper(), "pending")
    timestamp = parse_timestamp(parsed.timestamp)

    if isinstance(parsed, BakongWebhook):
        return SettlementEvent(
            gateway="bakong",
            status=status,
            external_id=parsed.transactionId,
            fingerprint=parsed.md5,
            reference=parsed.reference,
            transaction_id=parsed.reference or parsed.transactionId,
            amount=parsed.amount,
            currency=parsed.currency,
            timestamp=timestamp,
            evidence=dict(raw),
        )

    return SettlementEvent(
        gateway="ikhode",
        status=status,
        external_id=parsed.invoice_id,
        reference=parsed.transaction_id,
        transaction_id=parsed.transaction_id,
        amount=parsed.amount,
        currency=parsed.currency,
        timestamp=timestamp,
        evidence=dict(raw),
    )


def event_from_poll(gateway: str, fingerprint: str, evidence: Dict[str, Any]) -> SettlementEvent:
    """A positive status-check answer, shaped like a webhook event."""
    data = evidence.get("data") if isinstance(evidence.get("data"), dict) else {}
    return SettlementEvent(
        gateway=gateway,
        status="settled",
        fingerprint=fingerprint,
        transaction_id=_as_text(data.get("hash") or data.get("externalRef")),
        amount=_as_text(data.get("amount")),
        currency=_as_text(data.get("currency")),
        evidence=evidence,
    )
