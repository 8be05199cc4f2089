from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import httpx
from pydantic import ValidationError

from config import Settings, get_settings
from errors import ExternalServiceError, ParseError, RateLimitError
from schemas import ParsedTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    chat_model: str
    vision_model: str


GROQ = ProviderConfig(
    name="groq",
    base_url="https://api.groq.com/openai/v1",
    chat_model="llama-3.3-70b-versatile",
    vision_model="meta-llama/llama-4-scout-17b-16e-instruct",
)
GEMINI = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta/openai",
    chat_model="gemini-2.0-flash",
    vision_model="gemini-2.0-flash",
)


@dataclass(frozen=True)
class HistoryEntry:
    role: Literal["user", "model"]
    text: str


@dataclass(frozen=True)
class AttachmentPayload:
    mime_type: str
    data: str  # base64


@dataclass(frozen=True)
class ChatRequest:
    message: str
    history: list[HistoryEntry]
    user_context: str
    attachment: Optional[AttachmentPayload] = None


@dataclass(frozen=True)
class ToolCall:
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class Source:
    title: str
    uri: str


@dataclass(frozen=True)
class ChatReply:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)


CHAT_SYSTEM_PROMPT = (
    "Você é o Fin, assistente financeiro pessoal. "
    "CONTEXTO DO USUÁRIO: {context}. "
    "Responda de forma direta, breve e use emojis. "
    "Quando o usuário pedir para adicionar, alterar ou remover transações, use as "
    "ferramentas disponíveis. Datas no formato YYYY-MM-DD; hoje é {today}. "
    "Para remover ou alterar, use o ID que aparece no contexto."
)

PARSE_SYSTEM_PROMPT = """
Você é um especialista em extração de dados financeiros (OCR).
Sua tarefa é analisar o documento e retornar APENAS um JSON válido.

FORMATO OBRIGATÓRIO (Array de Objetos):
[
  {
    "date": "YYYY-MM-DD",
    "description": "Descrição curta",
    "amount": 0.00,
    "type": "INCOME" ou "EXPENSE",
    "category": "Categoria sugerida",
    "paymentMethod": "CREDIT_CARD", "DEBIT_CARD", "PIX" ou "CASH"
  }
]

IMPORTANTE:
- Não use markdown.
- Retorne apenas o JSON puro.
- Se não encontrar nada, retorne [].
"""

_TRANSACTION_FIELDS: dict[str, Any] = {
    "description": {"type": "string", "description": "Descrição curta"},
    "amount": {"type": "number", "description": "Valor total em reais"},
    "type": {"type": "string", "enum": ["INCOME", "EXPENSE"]},
    "date": {"type": "string", "description": "Data no formato YYYY-MM-DD"},
    "category": {"type": "string", "description": "Nome da categoria"},
    "paymentMethod": {
        "type": "string",
        "enum": ["CREDIT_CARD", "DEBIT_CARD", "CASH", "PIX", "OTHER"],
    },
}

TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "addTransaction",
            "description": "Adiciona uma transação; use installmentCount para compras parceladas.",
            "parameters": {
                "type": "object",
                "properties": {
                    **_TRANSACTION_FIELDS,
                    "installmentCount": {
                        "type": "integer",
                        "description": "Número de parcelas (omitir se à vista)",
                    },
                },
                "required": ["description", "amount", "type", "date", "category"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "deleteTransaction",
            "description": "Remove uma transação pelo ID.",
            "parameters": {
                "type": "object",
                "properties": {"id": {"type": "string"}},
                "required": ["id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "editTransaction",
            "description": "Altera apenas os campos informados de uma transação.",
            "parameters": {
                "type": "object",
                "properties": {"id": {"type": "string"}, **_TRANSACTION_FIELDS},
                "required": ["id"],
            },
        },
    },
]


def _attachment_part(attachment: AttachmentPayload) -> dict[str, Any]:
    mime = attachment.mime_type.lower()
    if mime.startswith("audio/"):
        audio_format = mime.split("/", 1)[1].split(";", 1)[0] or "webm"
        return {
            "type": "input_audio",
            "input_audio": {"data": attachment.data, "format": audio_format},
        }
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{attachment.mime_type};base64,{attachment.data}"},
    }


def clean_json_array(text: str) -> str:
    cleaned = re.sub(r"```(?:json)?", "", text).strip()
    first = cleaned.find("[")
    last = cleaned.rfind("]")
    if first != -1 and last != -1 and last > first:
        cleaned = cleaned[first : last + 1]
    return cleaned


class AssistantClient:
    def __init__(
        self,
        provider: ProviderConfig,
        api_key: str,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.provider.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(
                f"{self.provider.name} request timed out"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"{self.provider.name} request failed") from exc

        if resp.status_code == 429:
            raise RateLimitError("Rate limit reached", status=429)
        if resp.status_code >= 400:
            raise ExternalServiceError(_error_message(resp), status=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise ExternalServiceError(
                "Unexpected response from language model", status=resp.status_code
            ) from exc

    def _model_for(self, has_binary: bool) -> str:
        return self.provider.vision_model if has_binary else self.provider.chat_model

    async def send_turn(self, request: ChatRequest, *, today: str = "") -> ChatReply:
        system = CHAT_SYSTEM_PROMPT.format(
            context=request.user_context or "Nenhum", today=today or "desconhecido"
        )
        messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for entry in request.history:
            messages.append(
                {
                    "role": "assistant" if entry.role == "model" else "user",
                    "content": entry.text or "",
                }
            )

        text = request.message or "Analisar"
        if request.attachment:
            content: Any = [
                _attachment_part(request.attachment),
                {"type": "text", "text": text},
            ]
        else:
            content = text
        messages.append({"role": "user", "content": content})

        payload = {
            "model": self._model_for(request.attachment is not None),
            "messages": messages,
            "tools": TOOLS,
            "tool_choice": "auto",
            "temperature": 0.5,
            "max_tokens": 1024,
        }
        data = await self._post(payload)
        return _parse_reply(data)

    async def complete(self, prompt: str, user_context: str) -> str:
        payload = {
            "model": self.provider.chat_model,
            "messages": [
                {
                    "role": "system",
                    "content": CHAT_SYSTEM_PROMPT.format(
                        context=user_context or "Nenhum", today="desconhecido"
                    ),
                },
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.5,
            "max_tokens": 1024,
        }
        data = await self._post(payload)
        return _parse_reply(data).text

    async def parse_document(
        self,
        *,
        text: Optional[str] = None,
        data: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> list[ParsedTransaction]:
        if data and mime_type:
            user_content: list[dict[str, Any]] = [
                _attachment_part(AttachmentPayload(mime_type=mime_type, data=data)),
                {"type": "text", "text": "Extraia as transações deste documento."},
            ]
        else:
            user_content = [{"type": "text", "text": f"TEXTO DO EXTRATO:\n{text or ''}"}]

        payload = {
            "model": self._model_for(bool(data)),
            "messages": [
                {"role": "system", "content": PARSE_SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            "temperature": 0.1,
        }
        response = await self._post(payload)
        raw = _parse_reply(response).text or "[]"
        return parse_candidates(raw)


def parse_candidates(raw: str) -> list[ParsedTransaction]:
    try:
        decoded = json.loads(clean_json_array(raw))
    except json.JSONDecodeError as exc:
        raise ParseError("Document parser returned invalid JSON") from exc
    if not isinstance(decoded, list):
        raise ParseError("Document parser did not return a list")
    try:
        return [ParsedTransaction.model_validate(item) for item in decoded]
    except ValidationError as exc:
        raise ParseError("Document parser returned malformed rows") from exc


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return f"Language model returned HTTP {resp.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return f"Language model returned HTTP {resp.status_code}"


def _parse_reply(data: dict[str, Any]) -> ChatReply:
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ExternalServiceError("Unexpected response from language model") from exc

    tool_calls: list[ToolCall] = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        name = function.get("name")
        if not name:
            continue
        raw_args = function.get("arguments") or "{}"
        if isinstance(raw_args, dict):
            args = raw_args
        else:
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError:
                logger.warning(f"tool_call_bad_arguments: name={name}")
                args = {}
        tool_calls.append(ToolCall(name=name, args=args if isinstance(args, dict) else {}))

    sources: list[Source] = []
    for annotation in message.get("annotations") or []:
        citation = annotation.get("url_citation") if isinstance(annotation, dict) else None
        if citation and citation.get("url"):
            sources.append(
                Source(title=citation.get("title") or citation["url"], uri=citation["url"])
            )

    return ChatReply(
        text=message.get("content") or "", tool_calls=tool_calls, sources=sources
    )


def get_assistant_client(
    settings: Optional[Settings] = None,
) -> Optional[AssistantClient]:
    settings = settings or get_settings()
    if settings.groq_api_key:
        return AssistantClient(
            GROQ, settings.groq_api_key, timeout=settings.llm_timeout_secs
        )
    if settings.gemini_api_key:
        return AssistantClient(
            GEMINI, settings.gemini_api_key, timeout=settings.llm_timeout_secs
        )
    return None
