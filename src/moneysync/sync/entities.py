"""Payload schemas for each synchronized entity type.

Remote snapshots are validated against these schemas before they reach the
local cache. Schemas allow extra fields so that newer servers can add
attributes without breaking older devices.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from moneysync.errors import EntityValidationError
from moneysync.sync.models import EntitySnapshot, EntityType


class EntityPayload(BaseModel):
    """Base schema for entity payloads."""

    model_config = ConfigDict(
        extra="allow", str_strip_whitespace=True, populate_by_name=True
    )


class AccountPayload(EntityPayload):
    name: str = Field(..., min_length=1)
    balance: Decimal = Decimal("0")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    type: str | None = None
    subtype: str | None = None
    mask: str | None = Field(None, max_length=4)
    institution_id: str | None = None


class TransactionPayload(EntityPayload):
    account_id: str = Field(..., min_length=1)
    amount: Decimal
    transaction_date: date = Field(..., alias="date")
    description: str | None = None
    merchant_name: str | None = None
    category: list[str] = Field(default_factory=list)
    pending: bool = False

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        """Validate transaction amount is reasonable."""
        if abs(v) > Decimal("1000000"):
            raise ValueError("Transaction amount exceeds reasonable limit")
        return v


class BudgetPayload(EntityPayload):
    name: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    period: str = "monthly"
    category: str | None = None


class GoalPayload(EntityPayload):
    name: str = Field(..., min_length=1)
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0)
    target_date: date | None = None


class InvestmentPayload(EntityPayload):
    account_id: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)
    quantity: Decimal
    cost_basis: Decimal | None = None


class NotificationPreferencePayload(EntityPayload):
    channel: str = Field(..., pattern="^(push|email|sms|in_app)$")
    enabled: bool = True
    categories: list[str] = Field(default_factory=list)


PAYLOAD_SCHEMAS: dict[EntityType, type[EntityPayload]] = {
    EntityType.ACCOUNT: AccountPayload,
    EntityType.TRANSACTION: TransactionPayload,
    EntityType.BUDGET: BudgetPayload,
    EntityType.GOAL: GoalPayload,
    EntityType.INVESTMENT: InvestmentPayload,
    EntityType.NOTIFICATION_PREFERENCE: NotificationPreferencePayload,
}


def validate_payload(
    entity_type: EntityType, payload: dict[str, Any], entity_id: str = "?"
) -> EntityPayload:
    """Validate a payload against its entity type's schema.

    Raises:
        EntityValidationError: If the payload does not match
    """
    schema = PAYLOAD_SCHEMAS[entity_type]
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise EntityValidationError(entity_type.value, entity_id, str(e)) from e


def validate_snapshot(snapshot: EntitySnapshot) -> None:
    """Validate a remote snapshot; tombstones carry no payload requirements."""
    if not snapshot.is_active:
        return
    validate_payload(snapshot.entity_type, snapshot.payload, snapshot.entity_id)
