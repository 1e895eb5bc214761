"""
Inbound webhook authentication.

The signature is checked against the raw request bytes before anything is
parsed. A missing secret never verifies.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from settlement_engine.errors import ReplayDetected, SignatureInvalid
from settlement_engine.models import utcnow

logger = logging.getLogger(__name__)

REPLAY_WINDOW = timedelta(minutes=5)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _strip_scheme(signature_header: str) -> str:
    # accepts "sha256=<hex>" as well as the bare hex digest
    value = signature_header.strip()
    if "=" in value:
        scheme, _, digest = value.partition("=")
        if scheme.lower() == "sha256":
            return digest.strip()
    return value


def check_signature(raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> None:
    """Raise SignatureInvalid unless the body was signed with ``secret``."""
    if not secret:
        raise SignatureInvalid("Webhook secret is not configured")
    if not signature_header:
        raise SignatureInvalid("Missing signature header")
    expected = compute_signature(raw_body, secret)
    provided = _strip_scheme(signature_header).lower()
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii", "replace")):
        raise SignatureInvalid("Signature mismatch")


def check_bearer_token(authorization: Optional[str], secret: Optional[str]) -> None:
    """Constant-time check of a vendor shared secret sent as a bearer token."""
    if not secret:
        raise SignatureInvalid("Webhook secret is not configured")
    token = (authorization or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise SignatureInvalid("Invalid bearer token")


def check_timestamp(
    timestamp: Optional[datetime],
    now: Optional[datetime] = None,
    window: timedelta = REPLAY_WINDOW,
) -> None:
    """Raise ReplayDetected when ``timestamp`` is outside ``window`` of now."""
    if timestamp is None:
        return
    now = now or utcnow()
    if abs(now - timestamp) > window:
        raise ReplayDetected(f"Timestamp {timestamp.isoformat()} outside replay window")


def verify(
    raw_body: Union[bytes, str],
    signature_header: Optional[str],
    secret: Optional[str],
    timestamp: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> bool:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    try:
        check_signature(raw_body, signature_header, secret)
        check_timestamp(timestamp, now)
    except (SignatureInvalid, ReplayDetected) as e:
        logger.warning("Webhook verification failed: %s", e)
        return False
    return True
