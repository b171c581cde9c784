from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from models import (
    Category,
    CurrencyCode,
    Transaction,
    TransactionType,
    User,
    UserSettings,
)
from periods import Period
from reports import (
    LedgerEntry,
    category_expenses,
    category_usage,
    monthly_totals,
    pie_data,
    totals,
)
from schemas import (
    CategoryFields,
    CategoryIn,
    ImportRow,
    SettingsIn,
    TransactionIn,
    TransactionUpdateIn,
)
from views import TransactionQuery, apply_query


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class CategoryAmbiguous(ValueError):
    pass


def local_timezone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def local_today() -> date:
    return datetime.now(local_timezone()).date()


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "description": txn.description,
        "category": txn.category_name,
        "categoryId": txn.category_id,
        "amount": txn.amount,
        "type": txn.type.value,
        "version": txn.version,
        "createdAt": txn.created_at.isoformat() + "Z",
        "updatedAt": txn.updated_at.isoformat() + "Z",
    }


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "userId": category.user_id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
    }


@dataclass
class TransactionFilters:
    user_id: Optional[str] = None
    period: Optional[Period] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            user = User(id=user_id)
            self.session.add(user)
            self.session.flush()
            logger.info(f"user_registered: user_id={user_id}")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _scoped(self, stmt):
        if self.user_id:
            stmt = stmt.where(Category.user_id == self.user_id)
        return stmt

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = self._scoped(select(Category)).order_by(Category.type, Category.name)
        if txn_type is not None:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: str) -> Category:
        category = self.session.scalar(
            self._scoped(select(Category).where(Category.id == category_id))
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _find_duplicate(
        self, user_id: str, name: str, txn_type: TransactionType
    ) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == user_id,
                Category.type == txn_type,
                func.lower(Category.name) == name.lower(),
            )
        )

    def create(self, data: CategoryIn) -> Category:
        UserService(self.session).ensure(data.user_id)
        if self._find_duplicate(data.user_id, data.name, data.type):
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=data.user_id,
            name=data.name,
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(
            f"category_created: id={category.id} user_id={category.user_id} "
            f"type={category.type.value}"
        )
        return category

    def update(self, category_id: str, data: CategoryFields) -> Category:
        category = self.get(category_id)
        duplicate = self._find_duplicate(category.user_id, data.name, data.type)
        if duplicate and duplicate.id != category.id:
            raise ValueError("Category with this name already exists")
        if data.type != category.type and self._usage_count(category.id):
            raise ConflictError("Category type cannot change while transactions use it")
        category.name = data.name
        category.type = data.type
        category.color = data.color
        self.session.commit()
        logger.info(f"category_updated: id={category.id}")
        return category

    def delete(self, category_id: str) -> None:
        category = self.get(category_id)
        in_use = self._usage_count(category.id)
        if in_use:
            raise ConflictError(
                f"Category is used by {in_use} transaction(s) and cannot be deleted"
            )
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id}")

    def _usage_count(self, category_id: str) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            ).scalar_one()
            or 0
        )

    def find(self, name: str, txn_type: TransactionType) -> Optional[Category]:
        if not self.user_id:
            raise ValueError("A user is required to resolve categories")
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == txn_type,
                Category.name == name,
            )
        )

    def match(
        self, name: str, txn_type: TransactionType, *, fuzzy: bool = False
    ) -> Optional[Category]:
        """Find the category a free-form name refers to.

        Exact name first, then case-insensitive, then (when ``fuzzy``) the
        unique category within one edit.
        """
        name = name.strip()
        exact = self.find(name, txn_type)
        if exact:
            return exact
        folded = self._find_duplicate(self.user_id, name, txn_type)
        if folded or not fuzzy:
            return folded

        input_lower = name.lower()
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in self.list_all(txn_type):
            dist = int(Levenshtein.distance(input_lower, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is None or best_distance > 1:
            return None
        if len(best) > 1:
            options = ", ".join(sorted(c.name for c in best))
            raise CategoryAmbiguous(f"Category '{name}' is ambiguous ({options})")
        return best[0]

    def resolve(
        self, name: str, txn_type: TransactionType, *, fuzzy: bool = False
    ) -> Category:
        """Category for a transaction, created when missing.

        Without ``fuzzy`` only the exact name counts and a new category keeps
        the name as given.
        """
        if fuzzy:
            category = self.match(name, txn_type, fuzzy=True)
            name = name.strip()
        else:
            category = self.find(name, txn_type)
        if category:
            return category
        category = Category(user_id=self.user_id, name=name, type=txn_type)
        self.session.add(category)
        self.session.flush()
        logger.info(
            f"category_created: id={category.id} user_id={self.user_id} "
            f"type={txn_type.value} source=transaction"
        )
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: TransactionIn) -> Transaction:
        UserService(self.session).ensure(data.user_id)
        category = CategoryService(self.session, data.user_id).resolve(
            data.category, data.type
        )
        txn = Transaction(
            user_id=data.user_id,
            description=data.description,
            category=category,
            amount=data.amount,
            type=data.type,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} user_id={txn.user_id} "
            f"type={txn.type.value}"
        )
        return txn

    def get(self, transaction_id: str) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        if self.user_id:
            stmt = stmt.where(Transaction.user_id == self.user_id)
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters(user_id=self.user_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .order_by(Transaction.created_at.desc())
        )
        if filters.user_id:
            stmt = stmt.where(Transaction.user_id == filters.user_id)
        if filters.period is not None and filters.period.slug != "all":
            start, end = filters.period.bounds(local_timezone())
            stmt = stmt.where(
                Transaction.created_at >= start, Transaction.created_at < end
            )
        return self.session.scalars(stmt).all()

    def entries(
        self,
        filters: Optional[TransactionFilters] = None,
        query: Optional[TransactionQuery] = None,
    ) -> list[LedgerEntry]:
        entries = [LedgerEntry.from_transaction(txn) for txn in self.list(filters)]
        if query is None:
            return entries
        return apply_query(entries, query)

    def _check_version(self, txn: Transaction, expected: Optional[int]) -> None:
        if expected is not None and expected != txn.version:
            raise ConflictError(
                "Transaction was modified by another request; reload and retry"
            )

    def _commit_versioned(self, action: str, transaction_id: str) -> None:
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            logger.warning(f"transaction_{action}_conflict: id={transaction_id}")
            raise ConflictError(
                "Transaction was modified by another request; reload and retry"
            ) from exc

    def update(
        self,
        transaction_id: str,
        data: TransactionUpdateIn,
        expected_version: Optional[int] = None,
    ) -> Transaction:
        txn = self.get(transaction_id)
        self._check_version(txn, expected_version or data.version)
        category = CategoryService(self.session, txn.user_id).resolve(
            data.category, data.type
        )
        txn.description = data.description
        txn.category = category
        txn.amount = data.amount
        txn.type = data.type
        self._commit_versioned("update", transaction_id)
        self.session.refresh(txn)
        logger.info(f"transaction_updated: id={txn.id} version={txn.version}")
        return txn

    def delete(self, transaction_id: str, expected_version: Optional[int] = None) -> None:
        txn = self.get(transaction_id)
        self._check_version(txn, expected_version)
        self.session.delete(txn)
        self._commit_versioned("delete", transaction_id)
        logger.info(f"transaction_deleted: id={transaction_id}")


class ImportService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.categories = CategoryService(session, user_id)

    def preview(self, rows: Iterable[ImportRow]) -> tuple[list[dict[str, object]], list[str]]:
        preview_rows: list[dict[str, object]] = []
        errors: list[str] = []
        for idx, row in enumerate(rows, start=1):
            try:
                category = self.categories.match(row.category, row.type, fuzzy=True)
            except CategoryAmbiguous as exc:
                errors.append(f"Row {idx}: {exc}")
                category = None
            preview_rows.append(
                {
                    "description": row.description,
                    "category": category.name if category else row.category,
                    "newCategory": category is None,
                    "amount": row.amount,
                    "type": row.type.value,
                }
            )
        return preview_rows, errors

    def commit(self, rows: list[ImportRow]) -> list[Transaction]:
        UserService(self.session).ensure(self.user_id)
        created: list[Transaction] = []
        try:
            for idx, row in enumerate(rows, start=1):
                try:
                    category = self.categories.resolve(row.category, row.type, fuzzy=True)
                except CategoryAmbiguous as exc:
                    raise ValueError(f"Row {idx}: {exc}") from exc
                txn = Transaction(
                    user_id=self.user_id,
                    description=row.description,
                    category=category,
                    amount=row.amount,
                    type=row.type,
                )
                self.session.add(txn)
                created.append(txn)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"transactions_imported: user_id={self.user_id} count={len(created)}")
        return created


class SettingsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> UserSettings:
        record = self.session.get(UserSettings, self.user_id)
        if record is not None:
            return record
        return UserSettings(
            user_id=self.user_id,
            dark_mode=False,
            currency=CurrencyCode(get_settings().default_currency),
            notifications_enabled=False,
            budget_alert_threshold=80,
        )

    def update(self, data: SettingsIn) -> UserSettings:
        UserService(self.session).ensure(self.user_id)
        record = self.session.get(UserSettings, self.user_id)
        if record is None:
            record = self.get()
            self.session.add(record)
        for name in data.model_fields_set:
            setattr(record, name, getattr(data, name))
        self.session.commit()
        self.session.refresh(record)
        logger.info(f"settings_updated: user_id={self.user_id}")
        return record


class ReportService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()

    def _ledger(self, period: Optional[Period]) -> tuple[list[Transaction], list[LedgerEntry]]:
        txns = TransactionService(self.session, self.user_id).list(
            TransactionFilters(user_id=self.user_id, period=period)
        )
        # oldest first, so chart buckets come out chronologically
        entries = [LedgerEntry.from_transaction(txn) for txn in reversed(txns)]
        return txns, entries

    def _category_colors(self) -> dict[str, Optional[str]]:
        colors: dict[str, Optional[str]] = {}
        for category in CategoryService(self.session, self.user_id).list_all(
            TransactionType.expense
        ):
            if category.color:
                colors.setdefault(category.name, category.color)
        return colors

    def _monthly(self, entries: list[LedgerEntry]) -> list[dict[str, object]]:
        buckets = monthly_totals(
            entries,
            tz=local_timezone(),
            label_format=self.settings.month_label_format,
        )
        return [bucket.as_dict() for bucket in buckets]

    def _pie(self, entries: list[LedgerEntry]) -> list[dict[str, object]]:
        return pie_data(category_expenses(entries), colors=self._category_colors())

    @staticmethod
    def _period_dict(period: Period) -> dict[str, str]:
        return {
            "slug": period.slug,
            "start": period.start.isoformat(),
            "end": period.end.isoformat(),
        }

    def dashboard(self, period: Period, *, recent_limit: int = 5) -> dict[str, object]:
        txns, entries = self._ledger(period)
        summary = totals(entries)
        return {
            "period": self._period_dict(period),
            "totalIncome": summary.income,
            "totalExpenses": summary.expenses,
            "netSavings": summary.net_savings,
            "monthlyData": self._monthly(entries),
            "pieData": self._pie(entries),
            "recentTransactions": [
                transaction_to_dict(txn) for txn in txns[:recent_limit]
            ],
        }

    def report(self, period: Period, report_type: str) -> dict[str, object]:
        if report_type not in ("income-expense", "category-breakdown"):
            raise ValueError(
                "Invalid report type. Must be income-expense or category-breakdown"
            )
        _, entries = self._ledger(period)
        summary = totals(entries)
        out: dict[str, object] = {
            "period": self._period_dict(period),
            "reportType": report_type,
            "totalIncome": summary.income,
            "totalExpenses": summary.expenses,
            "netSavings": summary.net_savings,
        }
        if report_type == "income-expense":
            out["monthlyData"] = self._monthly(entries)
        else:
            out["categoryBreakdown"] = self._pie(entries)
        return out

    def category_summary(self) -> list[dict[str, object]]:
        _, entries = self._ledger(None)
        usage = category_usage(entries)
        out = []
        for category in CategoryService(self.session, self.user_id).list_all():
            item = usage.get((category.type, category.name))
            data = category_to_dict(category)
            data["count"] = item.count if item else 0
            data["amount"] = item.amount if item else 0.0
            out.append(data)
        return out
