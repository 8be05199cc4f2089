import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from csv_utils import parse_amount, parse_date
from models import PaymentMethod, TransactionType
from money import from_minor_units


class UserIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("Invalid email")
        return value


class TokenOut(BaseModel):
    token: str


class ProfileIn(BaseModel):
    name: str = Field(default="", max_length=120)
    monthly_salary: Decimal = Field(default=Decimal("0"), ge=0)
    financial_goals: str = ""
    bio: str = ""
    avatar: Optional[str] = None
    credit_card_closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    credit_card_due_day: Optional[int] = Field(default=None, ge=1, le=31)


class ProfileOut(BaseModel):
    name: str
    monthly_salary: float
    financial_goals: str
    bio: str
    avatar: Optional[str]
    credit_card_closing_day: Optional[int]
    credit_card_due_day: Optional[int]


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field(default="#94a3b8", pattern=r"^#[0-9a-fA-F]{6}$")
    budget_limit: Optional[Decimal] = Field(default=None, ge=0)


class CategoryOut(BaseModel):
    id: int
    name: str
    color: str
    budget_limit: Optional[float]


class TransactionIn(BaseModel):
    date: date
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    payment_method: PaymentMethod = PaymentMethod.other
    installment_current: Optional[int] = Field(default=None, ge=1)
    installment_total: Optional[int] = Field(default=None, ge=1)
    client_id: Optional[str] = Field(default=None, max_length=64)


class NewTransactionIn(TransactionIn):
    """Manual entry; ``installment_count > 1`` expands a purchase into slices."""

    installment_count: Optional[int] = Field(default=None, ge=1, le=120)


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(default=None, ge=0)
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    payment_method: Optional[PaymentMethod] = None


class TransactionOut(BaseModel):
    id: int
    client_id: Optional[str] = None
    date: date
    description: str
    amount: float
    type: TransactionType
    category: str
    payment_method: PaymentMethod
    installment_current: Optional[int] = None
    installment_total: Optional[int] = None


# Tool-call arguments as the language model emits them (camelCase).


class AddTransactionArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    type: TransactionType = TransactionType.expense
    date: Optional[dt.date] = None
    category: Optional[str] = Field(default=None, max_length=100)
    payment_method: Optional[PaymentMethod] = Field(
        default=None, alias="paymentMethod"
    )
    installment_count: Optional[int] = Field(
        default=None, alias="installmentCount", ge=1, le=120
    )

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("payment_method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper() or None
        return value

    @field_validator("date", "category", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class DeleteTransactionArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class EditTransactionArgs(TransactionPatch):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    payment_method: Optional[PaymentMethod] = Field(
        default=None, alias="paymentMethod"
    )

    @field_validator("id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("type", "payment_method", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class ParsedTransaction(BaseModel):
    """One candidate row read from a statement or receipt."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    date: date
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal
    type: TransactionType = TransactionType.expense
    category: str = ""
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.other, alias="paymentMethod"
    )

    @field_validator("type", "payment_method", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("category", mode="before")
    @classmethod
    def _none_to_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("date", mode="before")
    @classmethod
    def _loose_date(cls, value: Any) -> Any:
        return parse_date(value) if isinstance(value, str) else value

    @field_validator("amount", mode="before")
    @classmethod
    def _loose_amount(cls, value: Any) -> Any:
        if isinstance(value, str):
            return from_minor_units(parse_amount(value, allow_negative=True))
        return value

    @field_validator("amount", mode="after")
    @classmethod
    def _absolute(cls, value: Decimal) -> Decimal:
        return abs(value)


class ImportCommitIn(BaseModel):
    transactions: list[TransactionIn] = Field(default_factory=list)


class SourceOut(BaseModel):
    title: str
    uri: str


class AttachmentOut(BaseModel):
    type: Literal["image", "file", "audio", "doc", "sheet"]
    name: str
    mime_type: str


class ChatMessageOut(BaseModel):
    id: str
    role: Literal["user", "model"]
    text: str
    sources: list[SourceOut] = Field(default_factory=list)
    attachment: Optional[AttachmentOut] = None


class DailyPointOut(BaseModel):
    day: int
    income: float
    expense: float


class CategorySliceOut(BaseModel):
    name: str
    value: float
    color: str
    limit: float
    share_percent: float
    budget_percent: Optional[float]
    status: Optional[str]


class DashboardOut(BaseModel):
    month: str
    income: float
    expense: float
    income_change: float
    expense_change: float
    balance: float
    billing_cycle_applied: bool
    daily: list[DailyPointOut]
    categories: list[CategorySliceOut]


class FinancialAdviceOut(BaseModel):
    summary: str
    spending_analysis: str
    tips: list[str]
