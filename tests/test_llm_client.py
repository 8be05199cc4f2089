import asyncio
import json

import httpx
import pytest

from config import Settings
from errors import ExternalServiceError, ParseError, RateLimitError
from llm_client import (
    GEMINI,
    GROQ,
    AssistantClient,
    AttachmentPayload,
    ChatRequest,
    HistoryEntry,
    clean_json_array,
    get_assistant_client,
    parse_candidates,
)
from models import PaymentMethod, TransactionType


def _completion(message: dict) -> dict:
    return {"choices": [{"index": 0, "message": {"role": "assistant", **message}}]}


def _client(handler) -> AssistantClient:
    return AssistantClient(GROQ, "test-key", transport=httpx.MockTransport(handler))


def _settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite:///:memory:",
        "timezone": "America/Sao_Paulo",
        "secret_key": "s",
        "token_max_age_hours": 1,
        "groq_api_key": None,
        "gemini_api_key": None,
        "llm_timeout_secs": 5,
        "chat_context_limit": 50,
        "chat_history_limit": 40,
        "log_level": "INFO",
    }
    values.update(overrides)
    return Settings(**values)


def test_send_turn_posts_history_tools_and_parses_tool_calls() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=_completion(
                {
                    "content": "Feito!",
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {
                                "name": "addTransaction",
                                "arguments": json.dumps({"description": "Café", "amount": 7.5}),
                            },
                        }
                    ],
                }
            ),
        )

    request = ChatRequest(
        message="Gastei 7,50 no café",
        history=[HistoryEntry("model", "Olá!"), HistoryEntry("user", "oi")],
        user_context="DADOS:\n",
    )
    reply = asyncio.run(_client(handler).send_turn(request, today="2024-05-10"))

    assert seen["url"] == "https://api.groq.com/openai/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    body = seen["body"]
    assert body["model"] == GROQ.chat_model
    assert [t["function"]["name"] for t in body["tools"]] == [
        "addTransaction",
        "deleteTransaction",
        "editTransaction",
    ]
    assert [m["role"] for m in body["messages"]] == ["system", "assistant", "user", "user"]
    assert "2024-05-10" in body["messages"][0]["content"]
    assert body["messages"][-1]["content"] == "Gastei 7,50 no café"

    assert reply.text == "Feito!"
    assert reply.tool_calls[0].name == "addTransaction"
    assert reply.tool_calls[0].args == {"description": "Café", "amount": 7.5}


def test_binary_attachment_selects_vision_model() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion({"content": "Vi a imagem"}))

    request = ChatRequest(
        message="",
        history=[],
        user_context="",
        attachment=AttachmentPayload(mime_type="image/png", data="aGVsbG8="),
    )
    asyncio.run(_client(handler).send_turn(request))

    body = seen["body"]
    assert body["model"] == GROQ.vision_model
    parts = body["messages"][-1]["content"]
    assert parts[0]["image_url"]["url"] == "data:image/png;base64,aGVsbG8="
    assert parts[1]["text"] == "Analisar"


def test_bad_tool_arguments_become_empty_dict() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_completion(
                {
                    "content": None,
                    "tool_calls": [
                        {"function": {"name": "deleteTransaction", "arguments": "{oops"}}
                    ],
                }
            ),
        )

    reply = asyncio.run(
        _client(handler).send_turn(ChatRequest(message="x", history=[], user_context=""))
    )
    assert reply.text == ""
    assert reply.tool_calls[0].args == {}


def test_sources_come_from_url_citations() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_completion(
                {
                    "content": "A Selic está em...",
                    "annotations": [
                        {
                            "type": "url_citation",
                            "url_citation": {"url": "https://www.bcb.gov.br", "title": "BCB"},
                        }
                    ],
                }
            ),
        )

    reply = asyncio.run(
        _client(handler).send_turn(ChatRequest(message="selic?", history=[], user_context=""))
    )
    assert reply.sources[0].title == "BCB"
    assert reply.sources[0].uri == "https://www.bcb.gov.br"


def test_rate_limit_raises_dedicated_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Too many requests"}})

    with pytest.raises(RateLimitError) as excinfo:
        asyncio.run(
            _client(handler).send_turn(ChatRequest(message="x", history=[], user_context=""))
        )
    assert excinfo.value.status == 429


def test_server_error_carries_status_and_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "upstream exploded"}})

    with pytest.raises(ExternalServiceError) as excinfo:
        asyncio.run(_client(handler).complete("oi", ""))
    assert excinfo.value.status == 500
    assert excinfo.value.message == "upstream exploded"


def test_transport_failure_is_external_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(ExternalServiceError):
        asyncio.run(_client(handler).complete("oi", ""))


def test_parse_document_strips_fences_and_validates() -> None:
    answer = (
        "```json\n"
        '[{"date": "05/03/2024", "description": "Uber", "amount": "-23,90", '
        '"type": "expense", "category": "Transporte", "paymentMethod": "credit_card"}]\n'
        "```"
    )

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["messages"][1]["content"][0]["text"].startswith("TEXTO DO EXTRATO:")
        return httpx.Response(200, json=_completion({"content": answer}))

    rows = asyncio.run(_client(handler).parse_document(text="linha"))
    assert len(rows) == 1
    row = rows[0]
    assert row.date.isoformat() == "2024-03-05"
    assert str(row.amount) == "23.90"
    assert row.type == TransactionType.expense
    assert row.payment_method == PaymentMethod.credit_card


def test_parse_candidates_nothing_found_is_empty() -> None:
    assert parse_candidates("Nada encontrado: []") == []


@pytest.mark.parametrize(
    "raw",
    ["not json at all", '{"date": "2024-01-01"}', '[{"description": "sem data"}]'],
)
def test_parse_candidates_rejects_bad_payloads(raw: str) -> None:
    with pytest.raises(ParseError):
        parse_candidates(raw)


def test_clean_json_array_cuts_outer_brackets() -> None:
    assert clean_json_array('Aqui está: [{"a": [1]}] fim') == '[{"a": [1]}]'


def test_provider_selection_prefers_groq() -> None:
    assert get_assistant_client(_settings()) is None
    assert get_assistant_client(_settings(gemini_api_key="g")).provider is GEMINI
    assert get_assistant_client(_settings(groq_api_key="q", gemini_api_key="g")).provider is GROQ
