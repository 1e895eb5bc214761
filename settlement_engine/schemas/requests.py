from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, field_validator


class IssueKHQRRequest(BaseModel):
    invoice_id: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    gateway: Literal["bakong", "ikhode"] = "bakong"

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        if v is None:
            return v
        v = v.strip().upper()
        if len(v) != 3:
            raise ValueError("currency must be a 3-letter ISO code")
        return v

    @field_validator("invoice_id")
    @classmethod
    def validate_invoice_id(cls, v):
        if not v or not v.strip():
            raise ValueError("invoice_id cannot be empty")
        return v.strip()
