import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"

    @classmethod
    def parse(cls, value: object) -> "TransactionType":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError("Invalid type. Must be INCOME or EXPENSE")
        try:
            return cls(value.upper())
        except ValueError as exc:
            raise ValueError("Invalid type. Must be INCOME or EXPENSE") from exc


class CurrencyCode(str, Enum):
    usd = "USD"
    eur = "EUR"
    gbp = "GBP"
    jpy = "JPY"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


TRANSACTION_TYPE_ENUM = SAEnum(
    TransactionType, name="transactiontype", values_callable=_enum_values
)
CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode, name="currencycode", values_callable=_enum_values
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base):
    __tablename__ = "users"

    # Identity provider's subject id; the application never issues its own.
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="user"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="user"
    )
    settings: Mapped[Optional["UserSettings"]] = relationship(
        "UserSettings", back_populates="user", uselist=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))

    user: Mapped["User"] = relationship("User", back_populates="categories")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="transactions")
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_user_category", "user_id", "category_id"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def category_name(self) -> str:
        return self.category.name if self.category else ""


class UserSettings(Base, TimestampMixin):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), primary_key=True)
    dark_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, default=CurrencyCode.usd, nullable=False
    )
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    budget_alert_threshold: Mapped[int] = mapped_column(
        Integer, default=80, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="settings")

    __table_args__ = (
        CheckConstraint(
            "budget_alert_threshold >= 0 AND budget_alert_threshold <= 100",
            name="ck_settings_threshold_range",
        ),
    )
