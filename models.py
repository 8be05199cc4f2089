from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class PaymentMethod(str, Enum):
    credit_card = "CREDIT_CARD"
    debit_card = "DEBIT_CARD"
    cash = "CASH"
    pix = "PIX"
    other = "OTHER"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


TRANSACTION_TYPE_ENUM = SAEnum(
    TransactionType, name="transactiontype", values_callable=_enum_values
)
PAYMENT_METHOD_ENUM = SAEnum(
    PaymentMethod, name="paymentmethod", values_callable=_enum_values
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    profile: Mapped[Optional["UserProfile"]] = relationship(
        "UserProfile", back_populates="user", uselist=False
    )


class UserProfile(Base, TimestampMixin):
    __tablename__ = "profiles"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    monthly_salary_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    financial_goals: Mapped[str] = mapped_column(Text, nullable=False, default="")
    bio: Mapped[str] = mapped_column(Text, nullable=False, default="")
    avatar: Mapped[Optional[str]] = mapped_column(Text)
    credit_card_closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    credit_card_due_day: Mapped[Optional[int]] = mapped_column(Integer)

    user: Mapped["User"] = relationship("User", back_populates="profile")

    __table_args__ = (
        CheckConstraint(
            "credit_card_closing_day IS NULL OR credit_card_closing_day BETWEEN 1 AND 31",
            name="ck_profile_closing_day",
        ),
        CheckConstraint(
            "credit_card_due_day IS NULL OR credit_card_due_day BETWEEN 1 AND 31",
            name="ck_profile_due_day",
        ),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#94a3b8")
    budget_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        CheckConstraint(
            "budget_limit_cents IS NULL OR budget_limit_cents >= 0",
            name="ck_category_limit_positive",
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    # Soft reference by name; renaming a category does not touch this column.
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False, default=PaymentMethod.other
    )
    installment_current: Mapped[Optional[int]] = mapped_column(Integer)
    installment_total: Mapped[Optional[int]] = mapped_column(Integer)

    @property
    def installments(self) -> Optional[tuple[int, int]]:
        if self.installment_total is None or self.installment_current is None:
            return None
        return self.installment_current, self.installment_total

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category", "user_id", "category"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(installment_current IS NULL AND installment_total IS NULL) OR "
            "(installment_current >= 1 AND installment_current <= installment_total)",
            name="ck_transactions_installments",
        ),
    )
