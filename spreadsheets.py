import csv
import re
from datetime import datetime, timezone, tzinfo
from io import BytesIO, StringIO
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl import Workbook, load_workbook
from pydantic import ValidationError

from models import TransactionType
from reports import LedgerEntry
from schemas import ImportRow, describe_validation_error


EXPORT_HEADERS = ["Date", "Description", "Category", "Amount", "Type"]
SHEET_NAME = "Transactions"


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def local_date(created_at: datetime, tz: Optional[tzinfo] = None) -> str:
    moment = created_at
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if tz is not None:
        moment = moment.astimezone(tz)
    return moment.date().isoformat()


def export_csv(entries: Sequence[LedgerEntry], *, tz: Optional[tzinfo] = None) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADERS)
    for entry in entries:
        writer.writerow(
            [
                local_date(entry.created_at, tz),
                sanitize_csv_value(entry.description),
                sanitize_csv_value(entry.category),
                f"{entry.signed_amount:.2f}",
                entry.type.value,
            ]
        )
    return output.getvalue()


def export_xlsx(
    entries: Sequence[LedgerEntry], *, tz: Optional[tzinfo] = None
) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_NAME
    sheet.append(EXPORT_HEADERS)
    for entry in entries:
        sheet.append(
            [
                local_date(entry.created_at, tz),
                entry.description,
                entry.category,
                entry.amount,
                entry.type.value,
            ]
        )
        for cell in sheet[sheet.max_row][:3]:
            # text that looks like a formula stays text
            cell.data_type = "s"
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def read_csv(content: str) -> list[dict[str, Any]]:
    reader = csv.DictReader(StringIO(content))
    return [dict(row) for row in reader]


def read_xlsx(content: bytes) -> list[dict[str, Any]]:
    workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        header = next(rows, None)
        if not header:
            return []
        names = [str(cell).strip() if cell is not None else "" for cell in header]
        records: list[dict[str, Any]] = []
        for values in rows:
            if all(value is None or str(value).strip() == "" for value in values):
                continue
            records.append(dict(zip(names, values)))
        return records
    finally:
        workbook.close()


def _field(raw: Mapping[str, Any], name: str) -> Any:
    value = raw.get(name)
    if value is None or value == "":
        value = raw.get(name.lower())
    return value


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_records(
    records: Iterable[Mapping[str, Any]],
) -> tuple[list[ImportRow], list[str]]:
    rows: list[ImportRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(records, start=1):
        type_raw = _text(_field(raw, "Type")) or TransactionType.expense.value
        txn_type = (
            TransactionType.income
            if type_raw.upper() == TransactionType.income.value
            else TransactionType.expense
        )
        amount = _field(raw, "Amount")
        try:
            rows.append(
                ImportRow(
                    description=_text(_field(raw, "Description")),
                    category=_text(_field(raw, "Category")),
                    amount=amount if amount not in (None, "") else 0,
                    type=txn_type,
                )
            )
        except ValidationError as exc:
            errors.append(f"Row {idx}: {describe_validation_error(exc)}")
    return rows, errors


def parse_upload(filename: str, content: bytes) -> tuple[list[ImportRow], list[str]]:
    name = (filename or "").lower()
    if name.endswith(".xlsx"):
        try:
            records = read_xlsx(content)
        except Exception as exc:
            raise ValueError("Could not read spreadsheet") from exc
    elif name.endswith(".csv"):
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValueError("CSV files must be UTF-8 encoded") from exc
        records = read_csv(text)
    else:
        raise ValueError("Unsupported file type. Upload a .csv or .xlsx file")
    if not records:
        raise ValueError("No valid data found in the file")
    return parse_records(records)
