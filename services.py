from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aggregation import PeriodStats, aggregate
from assistant import DEFAULT_CATEGORY, build_user_context
from attachments import Attachment, extract_text, is_binary_payload
from auth import hash_password, verify_password
from config import get_settings
from errors import ParseError, PersistenceError
from installments import InstallmentTemplate, TransactionDraft, expand_installments
from llm_client import AssistantClient
from models import Category, PaymentMethod, Transaction, TransactionType, User, UserProfile
from money import to_minor_units
from periods import MonthRef
from schemas import (
    CategoryIn,
    NewTransactionIn,
    ParsedTransaction,
    ProfileIn,
    TransactionIn,
    TransactionPatch,
    UserIn,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: tuple[tuple[str, str, Optional[int]], ...] = (
    ("Alimentação", "#f87171", 80000),
    ("Transporte", "#60a5fa", 40000),
    ("Compras", "#c084fc", 50000),
    ("Contas", "#fbbf24", 120000),
    ("Salário", "#34d399", None),
    ("Saúde", "#2dd4bf", 30000),
    ("Lazer", "#f472b6", 40000),
    ("Outros", "#94a3b8", 20000),
)

REPORT_PROMPT = "Gere um relatório financeiro JSON com: summary, spendingAnalysis e tips."


def _commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"commit_failed: error={exc}")
        raise PersistenceError("Could not save changes") from exc


def match_category_name(name: Optional[str], names: Sequence[str]) -> str:
    """Map a loosely typed category onto one of the user's category names.

    Exact (case-insensitive) matches win; otherwise a single name within one
    edit is accepted. Anything else is kept as typed.
    """
    raw = (name or "").strip()
    if not raw:
        return DEFAULT_CATEGORY
    lowered = raw.lower()
    for candidate in names:
        if candidate.strip().lower() == lowered:
            return candidate

    best_distance: Optional[int] = None
    best: list[str] = []
    for candidate in names:
        dist = int(Levenshtein.distance(lowered, candidate.strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return raw


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: UserIn) -> User:
        existing = self.session.scalar(select(User).where(User.email == data.email))
        if existing:
            raise ValueError("Email already registered")
        user = User(email=data.email, password_hash=hash_password(data.password))
        self.session.add(user)
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Could not create user") from exc
        CategoryService(self.session, user.id).ensure_defaults()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            return None
        return user


class ProfileService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[UserProfile]:
        return self.session.get(UserProfile, self.user_id)

    def upsert(self, data: ProfileIn) -> UserProfile:
        profile = self.get()
        if profile is None:
            profile = UserProfile(user_id=self.user_id)
            self.session.add(profile)
        profile.name = data.name.strip()
        profile.monthly_salary_cents = to_minor_units(data.monthly_salary)
        profile.financial_goals = data.financial_goals
        profile.bio = data.bio
        profile.avatar = data.avatar
        profile.credit_card_closing_day = data.credit_card_closing_day
        profile.credit_card_due_day = data.credit_card_due_day
        _commit(self.session)
        self.session.refresh(profile)
        return profile

    def closing_day(self) -> Optional[int]:
        profile = self.get()
        return profile.credit_card_closing_day if profile else None


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def ensure_defaults(self) -> None:
        count = self.session.execute(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        ).scalar_one()
        if count:
            return
        for name, color, limit in DEFAULT_CATEGORIES:
            self.session.add(
                Category(
                    user_id=self.user_id,
                    name=name,
                    color=color,
                    budget_limit_cents=limit,
                )
            )
        _commit(self.session)

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def names(self) -> list[str]:
        return [c.name for c in self.list_all()]

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(name):
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            color=data.color,
            budget_limit_cents=(
                to_minor_units(data.budget_limit) if data.budget_limit is not None else None
            ),
        )
        self.session.add(category)
        _commit(self.session)
        self.session.refresh(category)
        return category

    def update(
        self, category_id: int, data: CategoryIn, *, migrate_transactions: bool = False
    ) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(name, exclude_id=category.id):
            raise ValueError("Category with this name already exists")

        old_name = category.name
        category.name = name
        category.color = data.color
        category.budget_limit_cents = (
            to_minor_units(data.budget_limit) if data.budget_limit is not None else None
        )
        # Transactions hold the category by name; without migration they keep the old text.
        if migrate_transactions and old_name != name:
            self.session.execute(
                update(Transaction)
                .where(Transaction.user_id == self.user_id, Transaction.category == old_name)
                .values(category=name)
            )
        _commit(self.session)
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.delete(category)
        _commit(self.session)


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    query: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None


def _check_installments(current: Optional[int], total: Optional[int]) -> None:
    if (current is None) != (total is None):
        raise ValueError("Installment position and total must be given together")
    if current is not None and total is not None and current > total:
        raise ValueError("Installment position exceeds total")


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def build(self, data: TransactionIn) -> Transaction:
        _check_installments(data.installment_current, data.installment_total)
        return Transaction(
            user_id=self.user_id,
            date=data.date,
            description=data.description.strip(),
            amount_cents=to_minor_units(data.amount),
            type=data.type,
            category=data.category.strip(),
            payment_method=data.payment_method,
            installment_current=data.installment_current,
            installment_total=data.installment_total,
        )

    def create(self, data: TransactionIn) -> Transaction:
        txn = self.build(data)
        self.session.add(txn)
        _commit(self.session)
        self.session.refresh(txn)
        return txn

    def create_many(
        self, drafts: Sequence[TransactionDraft]
    ) -> list[tuple[str, Transaction]]:
        """Store drafts in one commit and pair each provisional id with its row."""
        pairs: list[tuple[str, Transaction]] = []
        for draft in drafts:
            current, total = draft.installments or (None, None)
            txn = Transaction(
                user_id=self.user_id,
                date=draft.date,
                description=draft.description,
                amount_cents=draft.amount_cents,
                type=draft.type,
                category=draft.category,
                payment_method=draft.payment_method,
                installment_current=current,
                installment_total=total,
            )
            self.session.add(txn)
            pairs.append((draft.provisional_id, txn))
        _commit(self.session)
        for _, txn in pairs:
            self.session.refresh(txn)
        return pairs

    def create_installments(self, data: NewTransactionIn) -> list[Transaction]:
        count = data.installment_count or 1
        if count < 2:
            return [self.create(data)]
        drafts = expand_installments(
            data.amount,
            count,
            data.date,
            InstallmentTemplate(
                description=data.description.strip(),
                type=data.type,
                category=data.category.strip(),
                payment_method=data.payment_method,
            ),
        )
        return [txn for _, txn in self.create_many(drafts)]

    def find(self, transaction_id: int) -> Optional[Transaction]:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            return None
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.find(transaction_id)
        if txn is None:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        _check_installments(data.installment_current, data.installment_total)
        txn.date = data.date
        txn.description = data.description.strip()
        txn.amount_cents = to_minor_units(data.amount)
        txn.type = data.type
        txn.category = data.category.strip()
        txn.payment_method = data.payment_method
        txn.installment_current = data.installment_current
        txn.installment_total = data.installment_total
        _commit(self.session)
        self.session.refresh(txn)
        return txn

    def patch(self, transaction_id: int, changes: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        if changes.date is not None:
            txn.date = changes.date
        if changes.description is not None:
            txn.description = changes.description.strip()
        if changes.amount is not None:
            txn.amount_cents = to_minor_units(changes.amount)
        if changes.type is not None:
            txn.type = changes.type
        if changes.category is not None:
            txn.category = changes.category.strip()
        if changes.payment_method is not None:
            txn.payment_method = changes.payment_method
        _commit(self.session)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> bool:
        result = self.session.execute(
            delete(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        _commit(self.session)
        return bool(result.rowcount)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.payment_method:
            stmt = stmt.where(Transaction.payment_method == filters.payment_method)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(Transaction.category).like(like),
                )
            )
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 50) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def has_any(self) -> bool:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def dashboard(self, month: MonthRef) -> PeriodStats:
        transactions = TransactionService(self.session, self.user_id).list()
        categories = CategoryService(self.session, self.user_id).list_all()
        closing_day = ProfileService(self.session, self.user_id).closing_day()
        return aggregate(
            transactions, month, closing_day=closing_day, categories=categories
        )


def _parse_id(transaction_id: str) -> Optional[int]:
    try:
        return int(str(transaction_id).strip())
    except ValueError:
        return None


class ServiceTransactionStore:
    """Transaction primitives for chat turns, backed by the services above."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.transactions = TransactionService(session, user_id)
        self.categories = CategoryService(session, user_id)
        self.profiles = ProfileService(session, user_id)

    def add(self, drafts: Sequence[TransactionDraft]) -> list[tuple[str, Transaction]]:
        return self.transactions.create_many(drafts)

    def edit(self, transaction_id: str, changes: TransactionPatch) -> bool:
        txn_id = _parse_id(transaction_id)
        if txn_id is None or self.transactions.find(txn_id) is None:
            return False
        self.transactions.patch(txn_id, changes)
        return True

    def delete(self, transaction_id: str) -> bool:
        txn_id = _parse_id(transaction_id)
        if txn_id is None:
            return False
        return self.transactions.delete(txn_id)

    def recent(self, limit: int) -> list[Transaction]:
        return self.transactions.recent(limit)

    def profile(self) -> Optional[UserProfile]:
        return self.profiles.get()

    def resolve_category(self, name: str) -> str:
        return match_category_name(name, self.categories.names())


class ImportService:
    def __init__(
        self, session: Session, user_id: int, client: Optional[AssistantClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client

    async def parse(self, upload: Attachment) -> list[ParsedTransaction]:
        if self.client is None:
            raise ValueError("Document parsing needs a language model client")
        if is_binary_payload(upload.name, upload.mime_type):
            candidates = await self.client.parse_document(
                data=upload.as_base64(),
                mime_type=upload.mime_type or "application/octet-stream",
            )
        else:
            try:
                text = extract_text(upload.name, upload.mime_type, upload.data)
            except ValueError as exc:
                raise ParseError(str(exc)) from exc
            if text is None:
                raise ParseError(f"Unsupported file type: {upload.name}")
            candidates = await self.client.parse_document(text=text)

        names = CategoryService(self.session, self.user_id).names()
        resolved = [
            c.model_copy(update={"category": match_category_name(c.category, names)})
            for c in candidates
        ]
        logger.info(f"import_parsed: user_id={self.user_id} rows={len(resolved)}")
        return resolved

    def commit(self, rows: Sequence[TransactionIn]) -> list[Transaction]:
        service = TransactionService(self.session, self.user_id)
        try:
            created = [service.build(row) for row in rows]
        except ValueError:
            self.session.rollback()
            raise
        self.session.add_all(created)
        _commit(self.session)
        for txn in created:
            self.session.refresh(txn)
        logger.info(f"import_committed: user_id={self.user_id} rows={len(created)}")
        return created


@dataclass(frozen=True)
class FinancialAdvice:
    summary: str
    spending_analysis: str
    tips: list[str] = field(default_factory=list)


def parse_advice(raw: str) -> FinancialAdvice:
    cleaned = re.sub(r"```(?:json)?", "", raw).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        return FinancialAdvice(
            summary="Análise realizada.",
            spending_analysis=raw,
            tips=["Verifique seus gastos."],
        )
    tips = data.get("tips") or []
    if isinstance(tips, str):
        tips = [tips]
    return FinancialAdvice(
        summary=str(data.get("summary") or "Análise realizada."),
        spending_analysis=str(
            data.get("spendingAnalysis") or data.get("spending_analysis") or ""
        ),
        tips=[str(tip) for tip in tips],
    )


class ReportService:
    def __init__(self, session: Session, user_id: int, client: AssistantClient) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client

    async def generate(self) -> FinancialAdvice:
        transactions = TransactionService(self.session, self.user_id)
        if not transactions.has_any():
            raise ValueError("Add transactions before requesting a report")
        limit = get_settings().chat_context_limit
        context = build_user_context(
            transactions.recent(limit),
            ProfileService(self.session, self.user_id).get(),
            limit,
        )
        raw = await self.client.complete(REPORT_PROMPT, context)
        return parse_advice(raw)
