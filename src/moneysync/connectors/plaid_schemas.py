"""Pydantic schemas for the Plaid responses the institution provider consumes.

Plaid SDK objects are validated directly (``from_attributes``); SDK enum-like
values are coerced to plain strings. Each schema knows how to turn itself into
the payload of the matching MoneySync entity.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_to_str(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, Enum):
        return v.value
    # Plaid SDK "enums" are ModelSimple objects exposing .value
    value = getattr(v, "value", v)
    return str(value)


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        from_attributes=True,
        populate_by_name=True,
    )


class BalanceSchema(BaseSchema):
    """Schema for account balance information."""

    available: Decimal | None = None
    current: Decimal | None = None
    limit: Decimal | None = None
    iso_currency_code: str | None = Field(None, max_length=3)


class AccountSchema(BaseSchema):
    """Schema for Plaid account data."""

    account_id: str
    balances: BalanceSchema
    mask: str | None = Field(None, max_length=4)
    name: str
    official_name: str | None = None
    subtype: str | None = None
    type: str

    @field_validator("type", "subtype", mode="before")
    @classmethod
    def coerce_account_enums(cls, v: Any) -> Any:
        """Accept Plaid SDK enum or string and convert to string."""
        return _enum_to_str(v)

    def to_payload(self, institution_id: str | None) -> dict[str, Any]:
        return {
            "name": self.name,
            "official_name": self.official_name,
            "balance": str(self.balances.current or Decimal("0")),
            "available": (
                str(self.balances.available)
                if self.balances.available is not None
                else None
            ),
            "currency": self.balances.iso_currency_code or "USD",
            "type": self.type,
            "subtype": self.subtype,
            "mask": self.mask,
            "institution_id": institution_id,
        }


class TransactionSchema(BaseSchema):
    """Schema for Plaid transaction data."""

    transaction_id: str
    account_id: str
    amount: Decimal
    iso_currency_code: str | None = Field(None, max_length=3)
    transaction_date: date = Field(..., alias="date")
    name: str | None = None
    merchant_name: str | None = None
    category: list[str] = Field(default_factory=list)
    payment_channel: str | None = None
    pending: bool = False

    @field_validator("payment_channel", mode="before")
    @classmethod
    def coerce_payment_channel(cls, v: Any) -> Any:
        return _enum_to_str(v)

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: Any) -> Any:
        """Ensure category is a list of strings; Plaid may return None."""
        if v is None:
            return []
        if isinstance(v, list):
            return [str(x) for x in v]
        return [str(v)]

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        """Validate transaction amount is reasonable."""
        if abs(v) > Decimal("1000000"):
            raise ValueError("Transaction amount exceeds reasonable limit")
        return v

    def to_payload(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "amount": str(self.amount),
            "date": self.transaction_date.isoformat(),
            "description": self.name,
            "merchant_name": self.merchant_name,
            "category": self.category,
            "pending": self.pending,
            "currency": self.iso_currency_code or "USD",
            "payment_channel": self.payment_channel,
        }


class InstitutionData(BaseModel):
    """Accounts and transactions fetched from one institution connection."""

    accounts: list[AccountSchema] = Field(default_factory=list)
    transactions: list[TransactionSchema] = Field(default_factory=list)
    institution_id: str | None = None
    fetched_at: datetime
