"""Report aggregation over in-memory ledger entries.

Everything here is pure: callers load transactions, convert them with
``LedgerEntry.from_transaction`` and pass the entries in. Sums use plain float
addition; rounding is left to whoever formats the numbers.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Mapping, Optional, Sequence

from models import Transaction, TransactionType


CHART_PALETTE: tuple[str, ...] = (
    "#FF9F43",
    "#28C76F",
    "#FFBB33",
    "#4884EE",
    "#EA5455",
    "#9C27B0",
    "#00BCD4",
    "#795548",
)


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    description: str
    category: str
    amount: float
    type: TransactionType
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "LedgerEntry":
        return cls(
            id=txn.id,
            description=txn.description,
            category=txn.category_name,
            amount=txn.amount,
            type=txn.type,
            created_at=txn.created_at,
        )

    @property
    def signed_amount(self) -> float:
        if self.type == TransactionType.expense:
            return -abs(self.amount)
        return abs(self.amount)


@dataclass
class MonthlyBucket:
    name: str
    income: float = 0.0
    expenses: float = 0.0

    def as_dict(self) -> dict[str, object]:
        return {"name": self.name, "income": self.income, "expenses": self.expenses}


@dataclass(frozen=True)
class Totals:
    income: float
    expenses: float

    @property
    def net_savings(self) -> float:
        return self.income - self.expenses


@dataclass
class CategoryUsage:
    name: str
    type: TransactionType
    count: int = 0
    amount: float = 0.0


def month_label(
    created_at: datetime, *, tz: Optional[tzinfo] = None, label_format: str = "%b"
) -> str:
    """Label a naive-UTC timestamp with its month in ``tz``."""
    moment = created_at
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if tz is not None:
        moment = moment.astimezone(tz)
    return moment.strftime(label_format)


def monthly_totals(
    entries: Iterable[LedgerEntry],
    *,
    tz: Optional[tzinfo] = None,
    label_format: str = "%b",
) -> list[MonthlyBucket]:
    buckets: dict[str, MonthlyBucket] = {}
    for entry in entries:
        label = month_label(entry.created_at, tz=tz, label_format=label_format)
        bucket = buckets.get(label)
        if bucket is None:
            bucket = buckets[label] = MonthlyBucket(name=label)
        if entry.type == TransactionType.income:
            bucket.income += entry.amount
        else:
            bucket.expenses += entry.amount
    return list(buckets.values())


def category_expenses(entries: Iterable[LedgerEntry]) -> dict[str, float]:
    out: dict[str, float] = {}
    for entry in entries:
        if entry.type != TransactionType.expense:
            continue
        out[entry.category] = out.get(entry.category, 0.0) + entry.amount
    return out


def totals(entries: Iterable[LedgerEntry]) -> Totals:
    income = 0.0
    expenses = 0.0
    for entry in entries:
        if entry.type == TransactionType.income:
            income += entry.amount
        else:
            expenses += entry.amount
    return Totals(income=income, expenses=expenses)


def chart_color(name: str, palette: Sequence[str] = CHART_PALETTE) -> str:
    digest = hashlib.sha1(name.encode("utf-8")).digest()
    return palette[int.from_bytes(digest[:4], "big") % len(palette)]


def pie_data(
    category_totals: Mapping[str, float],
    *,
    colors: Optional[Mapping[str, Optional[str]]] = None,
    palette: Sequence[str] = CHART_PALETTE,
) -> list[dict[str, object]]:
    colors = colors or {}
    return [
        {
            "name": name,
            "value": value,
            "color": colors.get(name) or chart_color(name, palette),
        }
        for name, value in category_totals.items()
    ]


def category_usage(
    entries: Iterable[LedgerEntry],
) -> dict[tuple[TransactionType, str], CategoryUsage]:
    usage: dict[tuple[TransactionType, str], CategoryUsage] = {}
    for entry in entries:
        key = (entry.type, entry.category)
        item = usage.get(key)
        if item is None:
            item = usage[key] = CategoryUsage(name=entry.category, type=entry.type)
        item.count += 1
        item.amount += entry.amount
    return usage
