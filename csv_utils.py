import csv
import re
from datetime import date, datetime
from io import StringIO
from typing import Sequence

from models import Transaction
from money import from_minor_units, to_minor_units

EXPORT_HEADERS = ["Data", "Descrição", "Tipo", "Categoria", "Valor", "Método", "Parcelas"]


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
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d/%m/%Y").date()


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    """Parse a typed amount such as ``R$ 1.234,56`` or ``12.5`` into cents."""
    clean = value.strip().replace("R$", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    cents = to_minor_units(clean)
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADERS)
    for txn in transactions:
        installments = txn.installments
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description),
                txn.type.value,
                sanitize_csv_value(txn.category),
                f"{from_minor_units(txn.amount_cents):.2f}",
                (txn.payment_method.value if txn.payment_method else "OTHER"),
                f"{installments[0]}/{installments[1]}" if installments else "",
            ]
        )
    return output.getvalue()
