import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import PayingItem, TypeOfFlow
from schemas import CSVRow

CSV_HEADER = ["Date", "TypeOfFlow", "Amount", "Category", "Account", "Comment"]


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


def parse_date(value: str):
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("₽", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def _parse_type_of_flow(value: str) -> TypeOfFlow:
    raw = value.strip().lower()
    if raw in {"1", "income"}:
        return TypeOfFlow.income
    if raw in {"2", "outgo", "expense"}:
        return TypeOfFlow.outgo
    raise ValueError(f"Unknown type of flow: {value!r}")


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            comment_raw = (raw.get("Comment") or "").strip()
            rows.append(
                CSVRow(
                    date=parse_date(raw.get("Date") or ""),
                    type_of_flow=_parse_type_of_flow(raw.get("TypeOfFlow") or ""),
                    summ_cents=parse_amount(raw.get("Amount") or "0"),
                    category=(raw.get("Category") or "").strip(),
                    account=(raw.get("Account") or "").strip(),
                    comment=comment_raw or None,
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_paying_items(items: Sequence[PayingItem]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)
    for item in items:
        writer.writerow(
            [
                item.date.isoformat(),
                item.category.type_of_flow.value if item.category else "",
                f"{item.summ_cents / 100:.2f}",
                sanitize_csv_value(item.category.name if item.category else ""),
                sanitize_csv_value(item.account.name if item.account else ""),
                sanitize_csv_value(item.comment or ""),
            ]
        )
    return output.getvalue()
