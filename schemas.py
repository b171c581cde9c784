import math
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from models import CurrencyCode, TransactionType


MISSING_FIELDS_MESSAGE = "Missing required fields"


def require_fields(payload: Any, fields: Iterable[str]) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    for name in fields:
        value = payload.get(name)
        if value is None:
            raise ValueError(MISSING_FIELDS_MESSAGE)
        if isinstance(value, str) and not value.strip():
            raise ValueError(MISSING_FIELDS_MESSAGE)
    return payload


def parse_amount(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise ValueError("Amount must be a number")
    try:
        amount = float(str(value).strip())
    except ValueError as exc:
        raise ValueError("Amount must be a number") from exc
    if not math.isfinite(amount):
        raise ValueError("Amount must be a number")
    if amount <= 0:
        raise ValueError("Amount must be greater than 0")
    return amount


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        message = str(error.get("msg", "Invalid value"))
        # pydantic prefixes messages raised from validators
        message = message.removeprefix("Value error, ")
        location = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


class _TransactionFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    amount: float
    type: TransactionType

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float:
        return parse_amount(value)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> TransactionType:
        return TransactionType.parse(value)


class TransactionIn(_TransactionFields):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=255)


class TransactionUpdateIn(_TransactionFields):
    version: Optional[int] = Field(default=None, ge=1)


class CategoryFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> TransactionType:
        return TransactionType.parse(value)


class CategoryIn(CategoryFields):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=255)


class SettingsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    dark_mode: bool = Field(default=False, alias="darkMode")
    currency: CurrencyCode = CurrencyCode.usd
    notifications_enabled: bool = Field(default=False, alias="notificationsEnabled")
    budget_alert_threshold: int = Field(
        default=80, alias="budgetAlertThreshold", ge=0, le=100
    )

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class ImportRow(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    amount: float
    type: TransactionType

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float:
        return parse_amount(value)
