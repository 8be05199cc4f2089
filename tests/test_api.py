from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from assistant import TurnState, WELCOME_TEXT
from auth import read_token
from database import Base, get_db
from errors import ParseError, RateLimitError
from llm_client import ChatReply, ToolCall
from main import app, assistant_client
from schemas import ParsedTransaction


class FakeAssistant:
    def __init__(self) -> None:
        self.replies = []
        self.rows = []
        self.parse_error = None
        self.answer = "Texto livre"
        self.complete_error = None

    async def send_turn(self, request, *, today: str = ""):
        return self.replies.pop(0) if self.replies else ChatReply(text="Olá")

    async def parse_document(self, **kwargs):
        if self.parse_error:
            raise self.parse_error
        return self.rows

    async def complete(self, prompt: str, user_context: str) -> str:
        if self.complete_error:
            raise self.complete_error
        return self.answer


@pytest.fixture()
def client(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    testing_session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = testing_session()
        try:
            yield db
        finally:
            db.close()

    fake = FakeAssistant()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[assistant_client] = lambda: fake
    monkeypatch.setattr(main, "chat_registry", main.ChatRegistry(main._new_orchestrator))
    with TestClient(app) as test_client:
        test_client.fake = fake
        yield test_client
    app.dependency_overrides.clear()


def _auth(client: TestClient, email: str = "ana@example.com") -> dict:
    resp = client.post("/auth/register", json={"email": email, "password": "segredo1"})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def _expense(**overrides) -> dict:
    payload = {
        "date": "2024-03-10",
        "description": "Mercado",
        "amount": 120.5,
        "type": "EXPENSE",
        "category": "Alimentação",
        "payment_method": "DEBIT_CARD",
    }
    payload.update(overrides)
    return payload


def test_health_is_public(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}


def test_endpoints_require_token(client: TestClient) -> None:
    assert client.get("/api/transactions").status_code == 401
    resp = client.get("/api/transactions", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401


def test_register_login_flow(client: TestClient) -> None:
    _auth(client)
    duplicate = client.post(
        "/auth/register", json={"email": "ana@example.com", "password": "segredo1"}
    )
    assert duplicate.status_code == 400

    ok = client.post("/auth/login", json={"email": "ANA@example.com", "password": "segredo1"})
    assert ok.status_code == 200
    assert read_token(ok.json()["token"]) is not None

    bad = client.post("/auth/login", json={"email": "ana@example.com", "password": "errada1"})
    assert bad.status_code == 401


def test_profile_round_trip(client: TestClient) -> None:
    headers = _auth(client)
    assert client.get("/api/profile", headers=headers).json() is None

    resp = client.put(
        "/api/profile",
        headers=headers,
        json={"name": "Ana", "monthly_salary": 5000, "credit_card_closing_day": 10},
    )
    assert resp.status_code == 200
    assert resp.json()["monthly_salary"] == 5000.0

    bad = client.put("/api/profile", headers=headers, json={"credit_card_closing_day": 32})
    assert bad.status_code == 422


def test_categories_crud(client: TestClient) -> None:
    headers = _auth(client)
    categories = client.get("/api/categories", headers=headers).json()
    assert len(categories) == 8
    assert categories[0] == {
        "id": categories[0]["id"],
        "name": "Alimentação",
        "color": "#f87171",
        "budget_limit": 800.0,
    }

    created = client.post(
        "/api/categories",
        headers=headers,
        json={"name": "Pets", "color": "#123456", "budget_limit": 150},
    )
    assert created.status_code == 201
    pet_id = created.json()["id"]

    client.post("/api/transactions", headers=headers, json=_expense(category="Pets"))
    renamed = client.put(
        f"/api/categories/{pet_id}?migrate=true",
        headers=headers,
        json={"name": "Animais", "color": "#123456"},
    )
    assert renamed.json()["budget_limit"] is None
    assert client.get("/api/transactions", headers=headers).json()[0]["category"] == "Animais"

    assert client.delete(f"/api/categories/{pet_id}", headers=headers).status_code == 200
    assert client.delete(f"/api/categories/{pet_id}", headers=headers).status_code == 404


def test_transactions_crud_and_installments(client: TestClient) -> None:
    headers = _auth(client)
    created = client.post(
        "/api/transactions",
        headers=headers,
        json=_expense(
            amount=100,
            payment_method="CREDIT_CARD",
            installment_count=3,
            client_id="tmp-abc",
        ),
    )
    assert created.status_code == 201
    rows = created.json()
    assert [r["amount"] for r in rows] == [33.33, 33.33, 33.33]
    assert {r["client_id"] for r in rows} == {"tmp-abc"}
    assert rows[0]["installment_total"] == 3

    txn_id = rows[0]["id"]
    patched = client.patch(
        f"/api/transactions/{txn_id}", headers=headers, json={"description": "Feira"}
    )
    assert patched.json()["description"] == "Feira"
    assert patched.json()["amount"] == 33.33

    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).json() == {
        "deleted": True
    }
    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).json() == {
        "deleted": False
    }
    assert client.get(f"/api/transactions/{txn_id}", headers=headers).status_code == 404
    assert (
        client.put(f"/api/transactions/{txn_id}", headers=headers, json=_expense()).status_code
        == 404
    )


def test_transaction_filters(client: TestClient) -> None:
    headers = _auth(client)
    client.post("/api/transactions", headers=headers, json=_expense())
    client.post(
        "/api/transactions",
        headers=headers,
        json=_expense(description="Uber", category="Transporte", payment_method="PIX"),
    )
    listed = client.get("/api/transactions?payment_method=pix", headers=headers).json()
    assert [t["description"] for t in listed] == ["Uber"]
    listed = client.get("/api/transactions?q=merc", headers=headers).json()
    assert [t["description"] for t in listed] == ["Mercado"]
    assert client.get("/api/transactions?start=ontem", headers=headers).status_code == 400


def test_export_csv(client: TestClient) -> None:
    headers = _auth(client)
    client.post("/api/transactions", headers=headers, json=_expense())
    resp = client.get("/api/transactions/export.csv", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "2024-03-10,Mercado,EXPENSE,Alimentação,120.50,DEBIT_CARD," in resp.text


def test_dashboard(client: TestClient) -> None:
    headers = _auth(client)
    client.put("/api/profile", headers=headers, json={"credit_card_closing_day": 5})
    client.post(
        "/api/transactions",
        headers=headers,
        json=_expense(date="2024-02-20", payment_method="CREDIT_CARD"),
    )
    data = client.get("/api/dashboard?month=2024-03", headers=headers).json()
    assert data["month"] == "2024-03"
    assert data["expense"] == 120.5
    assert data["billing_cycle_applied"] is True
    assert data["categories"][0]["status"] == "ok"
    assert len(data["daily"]) == 31

    assert client.get("/api/dashboard?month=2024-13", headers=headers).status_code == 400
    assert client.get("/api/dashboard?month=0000-05", headers=headers).status_code == 400
    assert client.get("/api/dashboard?month=0001-01", headers=headers).status_code == 400


def test_chat_turn_adds_transaction(client: TestClient) -> None:
    headers = _auth(client)
    history = client.get("/api/chat", headers=headers).json()
    assert [m["text"] for m in history] == [WELCOME_TEXT]

    client.fake.replies.append(
        ChatReply(
            text="Feito",
            tool_calls=[
                ToolCall(
                    "addTransaction",
                    {"description": "Almoço", "amount": 50, "category": "alimentação"},
                )
            ],
        )
    )
    resp = client.post(
        "/api/chat",
        headers=headers,
        data={"message": "Adicione um gasto de R$ 50 em Alimentação hoje"},
    )
    assert resp.status_code == 200
    turn = resp.json()
    assert [m["role"] for m in turn] == ["user", "model", "model"]

    rows = client.get("/api/transactions", headers=headers).json()
    assert len(rows) == 1
    assert rows[0]["category"] == "Alimentação"
    assert rows[0]["amount"] == 50.0

    assert len(client.get("/api/chat", headers=headers).json()) == 4
    client.delete("/api/chat", headers=headers)
    assert len(client.get("/api/chat", headers=headers).json()) == 1


def test_chat_rejects_empty_and_concurrent_turns(client: TestClient) -> None:
    headers = _auth(client)
    assert client.post("/api/chat", headers=headers, data={"message": " "}).status_code == 400

    user_id = read_token(headers["Authorization"].split()[1])
    main.chat_registry.get(user_id, client.fake).state = TurnState.awaiting_model_response
    resp = client.post("/api/chat", headers=headers, data={"message": "oi"})
    assert resp.status_code == 409
    assert client.delete("/api/chat", headers=headers).status_code == 409


def test_chat_with_attachment(client: TestClient) -> None:
    headers = _auth(client)
    resp = client.post(
        "/api/chat",
        headers=headers,
        data={"message": "o que tem aqui?"},
        files={"file": ("foto.png", b"\x89PNG", "image/png")},
    )
    assert resp.status_code == 200
    assert resp.json()[0]["attachment"] == {
        "type": "image",
        "name": "foto.png",
        "mime_type": "image/png",
    }


def test_assistant_unavailable_without_api_key(client: TestClient, monkeypatch) -> None:
    headers = _auth(client)
    del app.dependency_overrides[assistant_client]
    monkeypatch.setattr(main, "get_assistant_client", lambda: None)
    resp = client.post("/api/chat", headers=headers, data={"message": "oi"})
    assert resp.status_code == 503


def test_import_parse_and_commit(client: TestClient) -> None:
    headers = _auth(client)
    client.fake.rows = [
        ParsedTransaction(
            date=date(2024, 3, 1), description="Cinema", amount=40, category="Lazr"
        )
    ]
    parsed = client.post(
        "/api/import/parse",
        headers=headers,
        files={"file": ("extrato.csv", b"01/03;Cinema;40", "text/csv")},
    )
    assert parsed.status_code == 200
    rows = parsed.json()
    assert rows == [
        {
            "date": "2024-03-01",
            "description": "Cinema",
            "amount": 40.0,
            "type": "EXPENSE",
            "category": "Lazer",
            "payment_method": "OTHER",
        }
    ]

    committed = client.post(
        "/api/import/commit",
        headers=headers,
        json={"transactions": [dict(rows[0], client_id="tmp-1")]},
    )
    assert committed.status_code == 201
    assert committed.json()[0]["client_id"] == "tmp-1"


def test_import_parse_error_is_friendly(client: TestClient) -> None:
    headers = _auth(client)
    client.fake.parse_error = ParseError("bad json")
    resp = client.post(
        "/api/import/parse",
        headers=headers,
        files={"file": ("fatura.pdf", b"%PDF", "application/pdf")},
    )
    assert resp.status_code == 422
    assert resp.json() == {"detail": "Não foi possível ler este arquivo."}


def test_report(client: TestClient) -> None:
    headers = _auth(client)
    assert client.post("/api/report", headers=headers).status_code == 400

    client.post("/api/transactions", headers=headers, json=_expense())
    resp = client.post("/api/report", headers=headers)
    assert resp.json() == {
        "summary": "Análise realizada.",
        "spending_analysis": "Texto livre",
        "tips": ["Verifique seus gastos."],
    }

    client.fake.complete_error = RateLimitError("slow", status=429)
    limited = client.post("/api/report", headers=headers)
    assert limited.status_code == 429
