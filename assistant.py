"""Chat turns that can read attachments and change transactions.

A :class:`ChatOrchestrator` owns one chat history and lets a single turn run at
a time. Each turn takes a fresh :class:`ChatSession` snapshot of the user's
recent transactions, sends it to the language model together with the explicit
history, and then applies whatever tool calls come back, in order, through a
:class:`TransactionStore`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, Literal, Optional, Protocol, Sequence

from attachments import Attachment, AttachmentKind, extract_text, is_binary_payload
from errors import ExternalServiceError, PersistenceError, RateLimitError, TurnInProgressError
from installments import InstallmentTemplate, TransactionDraft, expand_installments
from llm_client import (
    AttachmentPayload,
    ChatReply,
    ChatRequest,
    HistoryEntry,
    Source,
    ToolCall,
)
from models import PaymentMethod, TransactionType
from money import format_brl, from_minor_units, to_minor_units
from periods import local_today
from schemas import (
    AddTransactionArgs,
    DeleteTransactionArgs,
    EditTransactionArgs,
    TransactionPatch,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Outros"
AUDIO_PLACEHOLDER = "🎤 Áudio enviado"
AUDIO_PROMPT = "Analise este conteúdo de áudio/comando."
UNSUPPORTED_FILE_TEXT = "Arquivo {name} (formato não suportado para leitura local)"

WELCOME_TEXT = (
    "Olá! Sou o Fin, seu analista pessoal. 🤖\n\n"
    "Posso ver:\n"
    "• Imagens (Prints, Produtos)\n"
    "• PDFs e Docs (Faturas, Contratos)\n"
    "• Excel/CSV (Planilhas)\n"
    "• Áudios (Notas de voz)\n\n"
    "Também posso gerenciar suas transações! Tente: \"Adicione um gasto de R$ 50\" "
    "ou \"Mude o valor do almoço para 30\"."
)
GENERIC_ERROR_TEXT = "Desculpe, tive um erro ao processar sua mensagem."
RATE_LIMIT_TEXT = "⏳ Estou recebendo muitas mensagens agora. Tente novamente em instantes."
TIMEOUT_TEXT = "⌛ O assistente demorou demais para responder. Tente novamente."


class TurnState(str, Enum):
    idle = "idle"
    awaiting_model_response = "awaiting_model_response"
    applying_tool_calls = "applying_tool_calls"


@dataclass(frozen=True)
class ChatAttachment:
    type: AttachmentKind
    name: str
    mime_type: str


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "model"]
    text: str
    sources: tuple[Source, ...] = ()
    attachment: Optional[ChatAttachment] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class ContextTransaction(Protocol):
    id: int
    date: date
    description: str
    category: str
    type: TransactionType
    amount_cents: int


class ContextProfile(Protocol):
    monthly_salary_cents: int
    financial_goals: str


class TransactionStore(Protocol):
    """The mutation primitives a chat turn may use."""

    def add(self, drafts: Sequence[TransactionDraft]) -> list: ...

    def edit(self, transaction_id: str, changes: TransactionPatch) -> bool: ...

    def delete(self, transaction_id: str) -> bool: ...

    def recent(self, limit: int) -> Sequence[ContextTransaction]: ...

    def profile(self) -> Optional[ContextProfile]: ...

    def resolve_category(self, name: str) -> str: ...


class ModelClient(Protocol):
    async def send_turn(self, request: ChatRequest, *, today: str = "") -> ChatReply: ...


def build_user_context(
    transactions: Sequence[ContextTransaction],
    profile: Optional[ContextProfile],
    limit: int = 50,
) -> str:
    lines = [
        f"[ID:{t.id}] {t.date.isoformat()}: {t.description} ({t.category}) "
        f"{t.type.value} R${from_minor_units(t.amount_cents)}"
        for t in list(transactions)[:limit]
    ]
    context = "DADOS:\n" + "\n".join(lines) + "\n"
    if profile is not None:
        context += (
            f"PERFIL: Salário R${from_minor_units(profile.monthly_salary_cents)}, "
            f"Meta: {profile.financial_goals}"
        )
    return context


@dataclass(frozen=True)
class ChatSession:
    client: ModelClient
    user_context: str
    today: date

    @classmethod
    def snapshot(
        cls, client: ModelClient, store: TransactionStore, *, limit: int, today: date
    ) -> "ChatSession":
        context = build_user_context(store.recent(limit), store.profile(), limit)
        return cls(client=client, user_context=context, today=today)

    async def send_turn(
        self,
        message: str,
        history: Sequence[ChatMessage],
        attachment: Optional[AttachmentPayload] = None,
    ) -> ChatReply:
        request = ChatRequest(
            message=message,
            history=[
                HistoryEntry(role=m.role, text=m.text)
                for m in history
                if m.role != "model" or m.text
            ],
            user_context=self.user_context,
            attachment=attachment,
        )
        return await self.client.send_turn(request, today=self.today.isoformat())


class ChatOrchestrator:
    def __init__(
        self,
        client: ModelClient,
        *,
        timeout: float = 60.0,
        context_limit: int = 50,
        history_limit: int = 40,
        today_fn: Callable[[], date] = local_today,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.context_limit = context_limit
        self.history_limit = max(history_limit, 1)
        self.today_fn = today_fn
        self.state = TurnState.idle
        self._messages: list[ChatMessage] = [ChatMessage(role="model", text=WELCOME_TEXT)]

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def busy(self) -> bool:
        return self.state != TurnState.idle

    def _append(self, message: ChatMessage, turn: list[ChatMessage]) -> None:
        self._messages.append(message)
        turn.append(message)

    async def submit(
        self,
        text: str,
        attachment: Optional[Attachment],
        store: TransactionStore,
    ) -> list[ChatMessage]:
        """Run one turn and return the messages it appended."""
        if self.state != TurnState.idle:
            raise TurnInProgressError("A message is already being processed")
        text = (text or "").strip()
        if not text and attachment is None:
            raise ValueError("Message is empty")

        prior = list(self._messages)
        turn: list[ChatMessage] = []
        user_text = text
        if not user_text and attachment is not None and attachment.kind == "audio":
            user_text = AUDIO_PLACEHOLDER
        self._append(
            ChatMessage(
                role="user",
                text=user_text,
                attachment=(
                    ChatAttachment(
                        type=attachment.kind,
                        name=attachment.name,
                        mime_type=attachment.mime_type,
                    )
                    if attachment
                    else None
                ),
            ),
            turn,
        )
        self.state = TurnState.awaiting_model_response
        try:
            reply = await self._request(text, attachment, prior, store)
            if reply is None:
                self._append(ChatMessage(role="model", text=GENERIC_ERROR_TEXT), turn)
                return turn
        except RateLimitError as exc:
            logger.warning(f"chat_turn_rate_limited: status={exc.status}")
            self._append(ChatMessage(role="model", text=RATE_LIMIT_TEXT), turn)
            return turn
        except asyncio.TimeoutError:
            logger.warning(f"chat_turn_timeout: timeout={self.timeout}")
            self._append(ChatMessage(role="model", text=TIMEOUT_TEXT), turn)
            return turn
        except ExternalServiceError as exc:
            logger.error(f"chat_turn_failed: status={exc.status} error={exc.message}")
            self._append(ChatMessage(role="model", text=GENERIC_ERROR_TEXT), turn)
            return turn
        finally:
            if self.state == TurnState.awaiting_model_response:
                self.state = TurnState.idle

        self.state = TurnState.applying_tool_calls
        try:
            self._append(
                ChatMessage(role="model", text=reply.text, sources=tuple(reply.sources)),
                turn,
            )
            for call in reply.tool_calls:
                confirmation = self._apply_tool_call(call, store)
                if confirmation:
                    self._append(ChatMessage(role="model", text=confirmation), turn)
        finally:
            self.state = TurnState.idle
        return turn

    async def _request(
        self,
        text: str,
        attachment: Optional[Attachment],
        prior: Sequence[ChatMessage],
        store: TransactionStore,
    ) -> Optional[ChatReply]:
        parts: list[str] = []
        binary: Optional[AttachmentPayload] = None
        if attachment is not None:
            if is_binary_payload(attachment.name, attachment.mime_type):
                binary = AttachmentPayload(
                    mime_type=attachment.mime_type or "application/octet-stream",
                    data=attachment.as_base64(),
                )
            else:
                try:
                    content = extract_text(
                        attachment.name, attachment.mime_type, attachment.data
                    )
                except ValueError as exc:
                    logger.warning(
                        f"chat_attachment_unreadable: name={attachment.name} error={exc}"
                    )
                    return None
                if content is None:
                    parts.append(UNSUPPORTED_FILE_TEXT.format(name=attachment.name))
                else:
                    parts.append(f"Arquivo {attachment.name}:\n{content}")
        if text:
            parts.append(text)
        elif attachment is not None and attachment.kind == "audio":
            parts.append(AUDIO_PROMPT)

        try:
            session = ChatSession.snapshot(
                self.client, store, limit=self.context_limit, today=self.today_fn()
            )
        except PersistenceError as exc:
            logger.error(f"chat_context_failed: error={exc}")
            return None
        return await asyncio.wait_for(
            session.send_turn("\n".join(parts), prior[-self.history_limit :], binary),
            timeout=self.timeout,
        )

    def _apply_tool_call(self, call: ToolCall, store: TransactionStore) -> Optional[str]:
        handlers = {
            "addTransaction": self._add_transaction,
            "deleteTransaction": self._delete_transaction,
            "editTransaction": self._edit_transaction,
        }
        handler = handlers.get(call.name)
        if handler is None:
            logger.warning(f"tool_call_unknown: name={call.name}")
            return None
        try:
            return handler(call.args, store)
        except (ValueError, PersistenceError) as exc:
            logger.warning(f"tool_call_skipped: name={call.name} error={exc}")
            return None

    def _add_transaction(self, raw: dict, store: TransactionStore) -> str:
        args = AddTransactionArgs.model_validate(raw)
        txn_date = args.date or self.today_fn()
        category = store.resolve_category(args.category or DEFAULT_CATEGORY)

        count = args.installment_count or 1
        if count > 1:
            drafts = expand_installments(
                args.amount,
                count,
                txn_date,
                InstallmentTemplate(
                    description=args.description,
                    type=args.type,
                    category=category,
                    payment_method=args.payment_method or PaymentMethod.credit_card,
                ),
            )
            store.add(drafts)
            return f"✅ Adicionei {count} parcelas de {format_brl(drafts[0].amount_cents)}."

        draft = TransactionDraft(
            date=txn_date,
            description=args.description,
            amount_cents=to_minor_units(args.amount),
            type=args.type,
            category=category,
            payment_method=args.payment_method or PaymentMethod.other,
        )
        store.add([draft])
        return (
            f"✅ Transação adicionada: {draft.description} "
            f"({format_brl(draft.amount_cents)}) em {draft.category}."
        )

    def _delete_transaction(self, raw: dict, store: TransactionStore) -> str:
        args = DeleteTransactionArgs.model_validate(raw)
        if not store.delete(args.id):
            logger.info(f"tool_call_delete_missing: id={args.id}")
        return "🗑️ Transação removida."

    def _edit_transaction(self, raw: dict, store: TransactionStore) -> str:
        args = EditTransactionArgs.model_validate(raw)
        fields = args.model_dump(exclude={"id"}, exclude_none=True)
        if "category" in fields:
            fields["category"] = store.resolve_category(fields["category"])
        if not store.edit(args.id, TransactionPatch.model_validate(fields)):
            logger.info(f"tool_call_edit_missing: id={args.id}")
        return "✏️ Transação atualizada."

    def reset(self) -> None:
        if self.busy:
            raise TurnInProgressError("A message is already being processed")
        self._messages = [ChatMessage(role="model", text=WELCOME_TEXT)]


class ChatRegistry:
    """In-memory chat sessions, one per user, for the life of the process."""

    def __init__(self, factory: Callable[[ModelClient], ChatOrchestrator]) -> None:
        self._factory = factory
        self._sessions: dict[int, ChatOrchestrator] = {}

    def get(self, user_id: int, client: ModelClient) -> ChatOrchestrator:
        orchestrator = self._sessions.get(user_id)
        if orchestrator is None:
            orchestrator = self._factory(client)
            self._sessions[user_id] = orchestrator
        else:
            orchestrator.client = client
        return orchestrator

    def peek(self, user_id: int) -> Optional[ChatOrchestrator]:
        return self._sessions.get(user_id)

    def drop(self, user_id: int) -> None:
        orchestrator = self._sessions.get(user_id)
        if orchestrator is not None:
            orchestrator.reset()
            del self._sessions[user_id]
