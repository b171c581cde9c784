from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal, Optional

from models import TransactionType
from reports import LedgerEntry


SortDirection = Literal["asc", "desc"]

SORT_FIELDS = ("createdAt", "amount", "description", "category", "type")

_SORT_KEYS: dict[str, Callable[[LedgerEntry], object]] = {
    "createdAt": lambda entry: entry.created_at,
    "amount": lambda entry: entry.amount,
    "description": lambda entry: entry.description.lower(),
    "category": lambda entry: entry.category.lower(),
    "type": lambda entry: entry.type.value.lower(),
}


@dataclass
class TransactionQuery:
    search: Optional[str] = None
    type: Optional[TransactionType] = None
    categories: list[str] = field(default_factory=list)
    sort_field: str = "createdAt"
    sort_direction: SortDirection = "desc"

    def __post_init__(self) -> None:
        if self.sort_field not in _SORT_KEYS:
            raise ValueError(
                f"Invalid sort field. Must be one of {', '.join(SORT_FIELDS)}"
            )
        if self.sort_direction not in ("asc", "desc"):
            raise ValueError("Invalid sort direction. Must be asc or desc")

    def matches(self, entry: LedgerEntry) -> bool:
        if self.search:
            needle = self.search.lower()
            if (
                needle not in entry.description.lower()
                and needle not in entry.category.lower()
            ):
                return False
        if self.type is not None and entry.type != self.type:
            return False
        if self.categories and entry.category not in self.categories:
            return False
        return True


def apply_query(
    entries: Iterable[LedgerEntry], query: TransactionQuery
) -> list[LedgerEntry]:
    selected = [entry for entry in entries if query.matches(entry)]
    return sorted(
        selected,
        key=_SORT_KEYS[query.sort_field],
        reverse=query.sort_direction == "desc",
    )


def distinct_categories(entries: Iterable[LedgerEntry]) -> list[str]:
    seen: dict[str, None] = {}
    for entry in entries:
        if entry.category:
            seen.setdefault(entry.category, None)
    return list(seen)


def next_sort(
    current_field: str, current_direction: SortDirection, clicked_field: str
) -> tuple[str, SortDirection]:
    """Sort state after a column header is clicked."""
    if clicked_field not in _SORT_KEYS:
        raise ValueError(f"Invalid sort field. Must be one of {', '.join(SORT_FIELDS)}")
    if clicked_field == current_field:
        return clicked_field, "desc" if current_direction == "asc" else "asc"
    return clicked_field, "asc"
