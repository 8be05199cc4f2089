import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from models import PaymentMethod, TransactionType
from money import Amount, round_amount, to_minor_units
from periods import days_in_month


def new_provisional_id() -> str:
    return f"tmp-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class InstallmentTemplate:
    description: str
    type: TransactionType
    category: str
    payment_method: PaymentMethod = PaymentMethod.credit_card


@dataclass(frozen=True)
class TransactionDraft:
    """A transaction that has not been given a storage id yet."""

    date: date
    description: str
    amount_cents: int
    type: TransactionType
    category: str
    payment_method: PaymentMethod
    installments: Optional[tuple[int, int]] = None
    provisional_id: str = field(default_factory=new_provisional_id)


def add_months_with_rollover(start: date, months: int) -> date:
    """Advance by calendar months keeping the day; overflow spills forward.

    2024-01-31 plus one month is 2024-03-02, not 2024-02-29.
    """
    total_months = start.month - 1 + months
    year = start.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    if start.day <= dim:
        return date(year, month, start.day)
    return date(year, month, dim) + timedelta(days=start.day - dim)


def installment_amount(total_amount: Amount, count: int) -> Decimal:
    return round_amount(round_amount(total_amount) / count)


def expand_installments(
    total_amount: Amount,
    count: int,
    start_date: date,
    template: InstallmentTemplate,
) -> list[TransactionDraft]:
    if count < 2:
        raise ValueError("Installment count must be at least 2")
    if round_amount(total_amount) < 0:
        raise ValueError("Amount must be positive")

    # Every slice carries the same rounded value; the residue is not redistributed.
    per_installment_cents = to_minor_units(installment_amount(total_amount, count))
    drafts: list[TransactionDraft] = []
    for i in range(count):
        drafts.append(
            TransactionDraft(
                date=add_months_with_rollover(start_date, i),
                description=f"{template.description} ({i + 1}/{count})",
                amount_cents=per_installment_cents,
                type=template.type,
                category=template.category,
                payment_method=template.payment_method,
                installments=(i + 1, count),
            )
        )
    return drafts
