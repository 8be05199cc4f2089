import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from aggregation import PeriodStats
from assistant import ChatMessage, ChatOrchestrator, ChatRegistry, WELCOME_TEXT
from attachments import Attachment
from auth import issue_token, read_token
from config import get_settings
from csv_utils import export_transactions
from database import get_db
from errors import (
    ExternalServiceError,
    ParseError,
    PersistenceError,
    RateLimitError,
    TurnInProgressError,
)
from llm_client import AssistantClient, get_assistant_client
from models import Category, PaymentMethod, Transaction, TransactionType, User, UserProfile
from money import from_minor_units
from periods import MonthRef, local_today
from schemas import (
    AttachmentOut,
    CategoryIn,
    CategoryOut,
    CategorySliceOut,
    ChatMessageOut,
    DailyPointOut,
    DashboardOut,
    FinancialAdviceOut,
    ImportCommitIn,
    NewTransactionIn,
    ProfileIn,
    ProfileOut,
    SourceOut,
    TokenOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
    UserIn,
)
from services import (
    CategoryService,
    ImportService,
    MetricsService,
    ProfileService,
    ReportService,
    ServiceTransactionStore,
    TransactionFilters,
    TransactionService,
    UserService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FinTrack")

RATE_LIMIT_DETAIL = "Muitas solicitações ao assistente. Tente novamente em instantes."
PARSE_DETAIL = "Não foi possível ler este arquivo."
UPSTREAM_DETAIL = "O assistente não respondeu corretamente. Tente novamente."
PERSISTENCE_DETAIL = "Não foi possível salvar suas alterações."


def _new_orchestrator(client) -> ChatOrchestrator:
    current = get_settings()
    return ChatOrchestrator(
        client,
        timeout=current.llm_timeout_secs,
        context_limit=current.chat_context_limit,
        history_limit=current.chat_history_limit,
    )


chat_registry = ChatRegistry(_new_orchestrator)


@app.exception_handler(RateLimitError)
async def rate_limit_handler(request: Request, exc: RateLimitError):
    logger.warning(f"rate_limited: path={request.url.path}")
    return JSONResponse(status_code=429, content={"detail": RATE_LIMIT_DETAIL})


@app.exception_handler(ParseError)
async def parse_error_handler(request: Request, exc: ParseError):
    logger.warning(f"parse_failed: path={request.url.path} error={exc.message}")
    return JSONResponse(status_code=422, content={"detail": PARSE_DETAIL})


@app.exception_handler(ExternalServiceError)
async def external_error_handler(request: Request, exc: ExternalServiceError):
    logger.error(
        f"external_service_failed: path={request.url.path} status={exc.status} "
        f"error={exc.message}"
    )
    return JSONResponse(status_code=502, content={"detail": UPSTREAM_DETAIL})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"persistence_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=500, content={"detail": PERSISTENCE_DETAIL})


@app.exception_handler(TurnInProgressError)
async def turn_in_progress_handler(request: Request, exc: TurnInProgressError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = read_token(authorization[7:].strip())
    if user_id is None or db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


def assistant_client() -> AssistantClient:
    client = get_assistant_client()
    if client is None:
        raise HTTPException(
            status_code=503,
            detail="Assistente indisponível: nenhuma chave de API configurada.",
        )
    return client


def _value_error(exc: ValueError) -> HTTPException:
    status = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status, detail=str(exc))


def _transaction_out(txn: Transaction, client_id: Optional[str] = None) -> TransactionOut:
    return TransactionOut(
        id=txn.id,
        client_id=client_id,
        date=txn.date,
        description=txn.description,
        amount=float(from_minor_units(txn.amount_cents)),
        type=txn.type,
        category=txn.category,
        payment_method=txn.payment_method,
        installment_current=txn.installment_current,
        installment_total=txn.installment_total,
    )


def _category_out(category: Category) -> CategoryOut:
    return CategoryOut(
        id=category.id,
        name=category.name,
        color=category.color,
        budget_limit=(
            float(from_minor_units(category.budget_limit_cents))
            if category.budget_limit_cents is not None
            else None
        ),
    )


def _profile_out(profile: UserProfile) -> ProfileOut:
    return ProfileOut(
        name=profile.name,
        monthly_salary=float(from_minor_units(profile.monthly_salary_cents)),
        financial_goals=profile.financial_goals,
        bio=profile.bio,
        avatar=profile.avatar,
        credit_card_closing_day=profile.credit_card_closing_day,
        credit_card_due_day=profile.credit_card_due_day,
    )


def _message_out(message: ChatMessage) -> ChatMessageOut:
    return ChatMessageOut(
        id=message.id,
        role=message.role,
        text=message.text,
        sources=[SourceOut(title=s.title, uri=s.uri) for s in message.sources],
        attachment=(
            AttachmentOut(
                type=message.attachment.type,
                name=message.attachment.name,
                mime_type=message.attachment.mime_type,
            )
            if message.attachment
            else None
        ),
    )


def _dashboard_out(stats: PeriodStats) -> DashboardOut:
    return DashboardOut(
        month=str(stats.month),
        income=float(stats.income),
        expense=float(stats.expense),
        income_change=stats.income_change,
        expense_change=stats.expense_change,
        balance=float(stats.balance),
        billing_cycle_applied=stats.billing_cycle_applied,
        daily=[
            DailyPointOut(day=p.day, income=float(p.income), expense=float(p.expense))
            for p in stats.daily
        ],
        categories=[
            CategorySliceOut(
                name=s.name,
                value=float(s.value),
                color=s.color,
                limit=float(s.limit),
                share_percent=s.share_percent,
                budget_percent=s.budget_percent,
                status=s.status.value if s.status else None,
            )
            for s in stats.categories
        ],
    )


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    txn_type = None
    if params.get("type"):
        try:
            txn_type = TransactionType(params["type"].upper())
        except ValueError:
            txn_type = None
    method = None
    if params.get("payment_method"):
        try:
            method = PaymentMethod(params["payment_method"].upper())
        except ValueError:
            method = None
    try:
        start = date.fromisoformat(params["start"]) if params.get("start") else None
        end = date.fromisoformat(params["end"]) if params.get("end") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date range") from exc
    return TransactionFilters(
        type=txn_type,
        category=params.get("category") or None,
        payment_method=method,
        query=params.get("q") or None,
        start=start,
        end=end,
    )


async def _read_upload(file: UploadFile) -> Attachment:
    data = await file.read()
    return Attachment(
        name=file.filename or "arquivo",
        mime_type=file.content_type or "application/octet-stream",
        data=data,
    )


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.post("/auth/register", response_model=TokenOut)
def register(payload: UserIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).register(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TokenOut(token=issue_token(user.id))


@app.post("/auth/login", response_model=TokenOut)
def login(payload: UserIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return TokenOut(token=issue_token(user.id))


@app.get("/api/profile", response_model=Optional[ProfileOut])
def get_profile(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    profile = ProfileService(db, user_id).get()
    return _profile_out(profile) if profile else None


@app.put("/api/profile", response_model=ProfileOut)
def put_profile(
    payload: ProfileIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return _profile_out(ProfileService(db, user_id).upsert(payload))


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [_category_out(c) for c in CategoryService(db, user_id).list_all()]


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except ValueError as exc:
        raise _value_error(exc) from exc
    return _category_out(category)


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryIn,
    migrate: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        category = CategoryService(db, user_id).update(
            category_id, payload, migrate_transactions=migrate
        )
    except ValueError as exc:
        raise _value_error(exc) from exc
    return _category_out(category)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": True}


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    filters = filters_from_request(request)
    return [_transaction_out(t) for t in TransactionService(db, user_id).list(filters)]


@app.post("/api/transactions", response_model=list[TransactionOut], status_code=201)
def create_transaction(
    payload: NewTransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        created = TransactionService(db, user_id).create_installments(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [_transaction_out(t, payload.client_id) for t in created]


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    filters = filters_from_request(request)
    transactions = TransactionService(db, user_id).list(filters)
    csv_text = export_transactions(transactions)
    filename = f"transacoes_{local_today().isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return _transaction_out(TransactionService(db, user_id).get(transaction_id))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, payload)
    except ValueError as exc:
        raise _value_error(exc) from exc
    return _transaction_out(txn, payload.client_id)


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def patch_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        txn = TransactionService(db, user_id).patch(transaction_id, payload)
    except ValueError as exc:
        raise _value_error(exc) from exc
    return _transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    deleted = TransactionService(db, user_id).delete(transaction_id)
    return {"deleted": deleted}


@app.get("/api/dashboard", response_model=DashboardOut)
def dashboard(
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        target = MonthRef.parse(month) if month else MonthRef.of(local_today())
        stats = MetricsService(db, user_id).dashboard(target)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _dashboard_out(stats)


@app.get("/api/chat", response_model=list[ChatMessageOut])
def chat_history(user_id: int = Depends(current_user_id)):
    orchestrator = chat_registry.peek(user_id)
    if orchestrator is None:
        return [_message_out(ChatMessage(role="model", text=WELCOME_TEXT))]
    return [_message_out(m) for m in orchestrator.messages]


@app.post("/api/chat", response_model=list[ChatMessageOut])
async def chat_turn(
    message: str = Form(default=""),
    file: Optional[UploadFile] = File(default=None),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    client: AssistantClient = Depends(assistant_client),
):
    attachment = await _read_upload(file) if file is not None else None
    orchestrator = chat_registry.get(user_id, client)
    try:
        turn = await orchestrator.submit(
            message, attachment, ServiceTransactionStore(db, user_id)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(f"chat_turn: user_id={user_id} messages={len(turn)}")
    return [_message_out(m) for m in turn]


@app.delete("/api/chat")
def reset_chat(user_id: int = Depends(current_user_id)):
    chat_registry.drop(user_id)
    return {"reset": True}


@app.post("/api/import/parse")
async def import_parse(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    client: AssistantClient = Depends(assistant_client),
):
    upload = await _read_upload(file)
    candidates = await ImportService(db, user_id, client).parse(upload)
    return [
        {
            "date": c.date.isoformat(),
            "description": c.description,
            "amount": float(c.amount),
            "type": c.type.value,
            "category": c.category,
            "payment_method": c.payment_method.value,
        }
        for c in candidates
    ]


@app.post("/api/import/commit", response_model=list[TransactionOut], status_code=201)
def import_commit(
    payload: ImportCommitIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = ImportService(db, user_id)
    try:
        created = service.commit(payload.transactions)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        _transaction_out(txn, row.client_id)
        for txn, row in zip(created, payload.transactions)
    ]


@app.post("/api/report", response_model=FinancialAdviceOut)
async def report(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    client: AssistantClient = Depends(assistant_client),
):
    try:
        advice = await ReportService(db, user_id, client).generate()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return FinancialAdviceOut(
        summary=advice.summary,
        spending_analysis=advice.spending_analysis,
        tips=advice.tips,
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
