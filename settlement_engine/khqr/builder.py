"""
KHQR payload builder.

Field order is fixed:
  00 format indicator, 01 initiation method, 29 merchant account (nested),
  52 category, 53 currency, 54 amount (optional), 58 country,
  59 merchant name, 60 merchant city, 62 additional data (nested), 63 CRC.

Pure function: persisting the resulting settlement record is the caller's job.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union
from urllib.parse import urlencode

from settlement_engine.config import MerchantConfig
from settlement_engine.errors import InvalidMerchantConfig, InvalidPayloadField
from settlement_engine.khqr import tlv
from settlement_engine.khqr.checksum import append_crc, fingerprint

CURRENCY_CODES = {
    "USD": "840",
    "KHR": "116",
}

# KHR has no minor unit
CURRENCY_EXPONENT = {
    "USD": Decimal("0.01"),
    "KHR": Decimal("1"),
}

PAYLOAD_FORMAT_INDICATOR = "01"
STATIC_QR = "11"
DYNAMIC_QR = "12"
ACCOUNT_DOMAIN = "bakong"
MERCHANT_CATEGORY_CODE = "5411"
COUNTRY_CODE = "KH"

MAX_MERCHANT_NAME = 25
MAX_MERCHANT_CITY = 15
MAX_BILL_REFERENCE = 25

DEFAULT_IMAGE_BASE_URL = "https://api.qrserver.com/v1/create-qr-code/"


@dataclass(frozen=True)
class KHQRPayload:
    payload: str
    fingerprint: str
    crc: str
    currency: str
    amount: Optional[str]
    original_amount: str
    original_currency: str
    exchange_rate: Optional[Decimal]
    bill_reference: Optional[str]
    image_url: str

    @property
    def is_open_amount(self) -> bool:
        return self.amount is None


def _truncate(value: str, limit: int) -> str:
    return value.strip()[:limit]


def _validate_account_id(account_id: str) -> str:
    if account_id.count("@") != 1:
        raise InvalidMerchantConfig(
            f"Merchant account id {account_id!r} must contain exactly one '@'"
        )
    user, domain = account_id.split("@")
    if not user or not domain:
        raise InvalidMerchantConfig(
            f"Merchant account id {account_id!r} must look like 'name@bank'"
        )
    return account_id


def _parse_amount(amount: Union[str, int, float, Decimal]) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidPayloadField(f"Amount {amount!r} is not a decimal number")
    if not value.is_finite():
        raise InvalidPayloadField(f"Amount {amount!r} is not a decimal number")
    return value


def _currency(code: str, field: str) -> str:
    code = (code or "").upper()
    if code not in CURRENCY_CODES:
        raise InvalidPayloadField(
            f"Unsupported {field} {code!r}; expected one of {sorted(CURRENCY_CODES)}"
        )
    return code


def convert_amount(amount: Decimal, from_currency: str, to_currency: str, usd_to_khr_rate: Decimal):
    """
    Convert between USD and KHR with the fixed rate.

    Returns (converted_amount, rate_applied). rate_applied is None when no
    conversion was needed.
    """
    if from_currency == to_currency:
        return amount, None
    if usd_to_khr_rate <= 0:
        raise InvalidMerchantConfig("Exchange rate must be positive")
    if from_currency == "USD" and to_currency == "KHR":
        converted = amount * usd_to_khr_rate
    else:
        converted = amount / usd_to_khr_rate
    return converted.quantize(CURRENCY_EXPONENT[to_currency], rounding=ROUND_HALF_UP), usd_to_khr_rate


def format_amount(amount: Decimal, currency: str) -> str:
    return str(amount.quantize(CURRENCY_EXPONENT[currency], rounding=ROUND_HALF_UP))


def qr_image_url(payload: str, base_url: str = DEFAULT_IMAGE_BASE_URL, size: int = 300) -> str:
    """Reference to a rendered, scannable image of the payload."""
    return f"{base_url}?{urlencode({'size': f'{size}x{size}', 'data': payload})}"


def build_khqr(
    merchant: MerchantConfig,
    amount: Union[str, int, float, Decimal],
    currency: str,
    bill_reference: Optional[str] = None,
    image_base_url: str = DEFAULT_IMAGE_BASE_URL,
) -> KHQRPayload:
    """
    Build a KHQR payload for the merchant.

    ``currency`` is the currency the amount is quoted in. When it differs from
    the merchant's settlement currency the amount is converted first; both
    figures are returned for display.

    Raises:
        InvalidMerchantConfig: bad account id, settlement currency or rate
        InvalidPayloadField: bad amount, currency or text fields
    """
    account_id = _validate_account_id(merchant.account_id or "")
    try:
        settlement_currency = _currency(merchant.settlement_currency, "settlement currency")
    except InvalidPayloadField as e:
        raise InvalidMerchantConfig(str(e))
    requested_currency = _currency(currency, "currency")

    original = _parse_amount(amount)
    converted, rate = convert_amount(
        original, requested_currency, settlement_currency, merchant.usd_to_khr_rate
    )
    encoded_amount = format_amount(converted, settlement_currency) if converted > 0 else None

    name = _truncate(merchant.merchant_name or "", MAX_MERCHANT_NAME)
    city = _truncate(merchant.merchant_city or "", MAX_MERCHANT_CITY)
    if not name or not city:
        raise InvalidPayloadField("Merchant name and city are required")
    reference = _truncate(bill_reference, MAX_BILL_REFERENCE) if bill_reference else None

    parts = [
        tlv.encode("00", PAYLOAD_FORMAT_INDICATOR),
        tlv.encode("01", DYNAMIC_QR if encoded_amount else STATIC_QR),
        tlv.encode_composite("29", [("00", ACCOUNT_DOMAIN), ("01", account_id)]),
        tlv.encode("52", MERCHANT_CATEGORY_CODE),
        tlv.encode("53", CURRENCY_CODES[settlement_currency]),
    ]
    if encoded_amount:
        parts.append(tlv.encode("54", encoded_amount))
    parts += [
        tlv.encode("58", COUNTRY_CODE),
        tlv.encode("59", name),
        tlv.encode("60", city),
    ]
    if reference:
        parts.append(tlv.encode_composite("62", [("01", reference)]))

    payload = append_crc("".join(parts))

    return KHQRPayload(
        payload=payload,
        fingerprint=fingerprint(payload),
        crc=payload[-4:],
        currency=settlement_currency,
        amount=encoded_amount,
        original_amount=format_amount(original, requested_currency),
        original_currency=requested_currency,
        exchange_rate=rate,
        bill_reference=reference,
        image_url=qr_image_url(payload, image_base_url),
    )
