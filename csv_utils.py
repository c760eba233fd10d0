import csv
import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import PaymentMethod, Transaction, TransactionType
from schemas import TransactionIn, parse_payload

COLUMNS = [
    "Date",
    "Type",
    "Amount",
    "Category",
    "Description",
    "PaymentMethod",
    "Notes",
    "Tags",
]

TAG_SEPARATOR = ";"


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


def parse_date(value: str) -> datetime:
    value = value.strip()
    if not value:
        raise ValueError("Date is required")
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        day = datetime.strptime(value, "%d.%m.%Y").date()
    return datetime.combine(day, time.min)


def parse_amount(value: str) -> Decimal:
    clean = value.strip().replace("€", "").replace("$", "").replace("₹", "")
    clean = clean.replace(" ", "").replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be positive")
    return amount


def _unescape(value: str) -> str:
    # sanitize_csv_value prefixes risky cells with a tab on export
    return value[1:] if value.startswith("\t") else value


def parse_csv(content: str) -> tuple[list[TransactionIn], list[str]]:
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    rows: list[TransactionIn] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            type_raw = (raw.get("Type") or "expense").strip().lower()
            method_raw = (raw.get("PaymentMethod") or "").strip().lower()
            notes = _unescape(raw.get("Notes") or "").strip()
            tags_raw = _unescape(raw.get("Tags") or "")
            rows.append(
                parse_payload(
                    TransactionIn,
                    {
                        "type": TransactionType(type_raw),
                        "occurred_at": parse_date(raw.get("Date") or ""),
                        "amount": parse_amount(raw.get("Amount") or ""),
                        "category": _unescape(raw.get("Category") or ""),
                        "description": _unescape(raw.get("Description") or ""),
                        "payment_method": (
                            PaymentMethod(method_raw)
                            if method_raw
                            else PaymentMethod.upi
                        ),
                        "notes": notes or None,
                        "tags": [
                            tag for tag in tags_raw.split(TAG_SEPARATOR) if tag.strip()
                        ],
                    },
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(COLUMNS)
    for txn in transactions:
        writer.writerow(
            [
                txn.occurred_at.isoformat(sep=" ", timespec="seconds"),
                txn.type.value,
                f"{txn.amount:.2f}",
                sanitize_csv_value(txn.category.value),
                sanitize_csv_value(txn.description or ""),
                txn.payment_method.value,
                sanitize_csv_value(txn.notes or ""),
                sanitize_csv_value(TAG_SEPARATOR.join(txn.tags or [])),
            ]
        )
    return output.getvalue()


def export_filename(today: date) -> str:
    return f"transactions-{today.isoformat()}.csv"
