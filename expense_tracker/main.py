import logging
import math
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import BackgroundTasks, Cookie, FastAPI, HTTPException, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from expense_tracker import settings
from expense_tracker.ai_assistant import (
    EMPTY_MESSAGE_REPLY,
    FALLBACK_REPLY,
    HISTORY_LIMIT,
    RecentEntry,
    build_chat_messages,
    build_context,
    build_insights,
    parse_transaction_text,
)
from expense_tracker.ai_client import build_chat_client
from expense_tracker.auth_tokens import (
    GMAIL_STATE_PURPOSE,
    build_refresh_cookie,
    check_refresh_token,
    create_access_token,
    create_gmail_state,
    hash_password,
    issue_refresh_token,
    parse_refresh_cookie,
    user_id_from_token,
    verify_password,
)
from expense_tracker.budget_engine import (
    BudgetCap,
    LedgerFilter,
    PeriodStats,
    budget_overview,
    month_bounds,
    percent_change,
    previous_month,
    summarize,
)
from expense_tracker.db import (
    budgets,
    chat_messages,
    engine,
    init_db,
    ledger_entries,
    notifications,
    recurring_rules,
    users,
)
from expense_tracker.email_sync import (
    connect_account,
    connection_status,
    disconnect_account,
    handle_push_notification,
    register_watch,
    renew_all_watches,
    sync_user_emails,
)
from expense_tracker.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    TrackerError,
    UpstreamError,
    ValidationError,
)
from expense_tracker.gmail_client import GmailApi, build_auth_url, decode_push_message
from expense_tracker.ledger_store import SqlRuleStore, build_conditions, create_entry, find_entries
from expense_tracker.notifications import format_event, hub, notify, validate_notification_type
from expense_tracker.recurring_engine import (
    LedgerEntry,
    RecurringRule,
    materialize_due,
    run_sweep,
    validate_frequency,
    validate_kind,
)
from expense_tracker.report_export import render_csv, render_pdf
from expense_tracker.scheduler import Scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Smart Expense Tracker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

REFRESH_COOKIE_NAME = "refresh_token"
SORT_FIELDS = {
    "date": ledger_entries.c.date,
    "amount": ledger_entries.c.amount,
    "category": ledger_entries.c.category,
    "created_at": ledger_entries.c.created_at,
}
NOTIFICATION_PAGE_SIZE = 50
RECENT_ENTRIES_FOR_CONTEXT = 5

chat_client = build_chat_client(
    {
        "OPENAI_API_KEY": settings.OPENAI_API_KEY,
        "GROQ_API_KEY": settings.GROQ_API_KEY,
        "GEMINI_API_KEY": settings.GEMINI_API_KEY,
        "DEEPSEEK_API_KEY": settings.DEEPSEEK_API_KEY,
    }
)
gmail_api = GmailApi(
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
)
rule_store = SqlRuleStore(engine)
scheduler = Scheduler()


def run_recurring_sweep():
    return run_sweep(rule_store, date.today())


def renew_gmail_watches() -> int:
    return renew_all_watches(engine, gmail_api, settings.GMAIL_PUBSUB_TOPIC)


@app.on_event("startup")
async def on_startup() -> None:
    init_db()
    if settings.SCHEDULER_ENABLED:
        scheduler.start(
            sweep=run_recurring_sweep,
            sweep_hour=settings.RECURRING_SWEEP_HOUR,
            renew_watches=renew_gmail_watches if settings.GMAIL_PUBSUB_TOPIC else None,
            renewal_interval=timedelta(days=settings.GMAIL_WATCH_RENEWAL_DAYS),
        )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await scheduler.stop()


@app.exception_handler(TrackerError)
async def handle_tracker_error(request: Request, exc: TrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _require_non_negative(value: Decimal | None, label: str) -> None:
    if value is not None and value < 0:
        raise ValueError(f"{label} must not be negative.")


class RegisterPayload(BaseModel):
    email: str
    password: str
    name: str | None = None

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.email = payload.email.strip().lower()
        if "@" not in payload.email:
            raise ValueError("A valid email is required.")
        if len(payload.password) < 6:
            raise ValueError("Password must be at least 6 characters.")
        payload.name = _clean_text(payload.name)
        return payload


class LoginPayload(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str


class UserSummary(BaseModel):
    id: int
    email: str
    name: str | None = None
    role: str
    gmail_connected: bool


class RefreshResponse(BaseModel):
    access_token: str
    user: UserSummary


class ProfileResponse(UserSummary):
    salary: Decimal | None = None
    onboarded: bool
    created_at: datetime | None = None


class ProfileUpdatePayload(BaseModel):
    name: str | None = None
    salary: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "ProfileUpdatePayload") -> "ProfileUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Name must not be empty.")
        _require_non_negative(payload.salary, "Salary")
        return payload


class PasswordChangePayload(BaseModel):
    current_password: str
    new_password: str

    @classmethod
    def validate_payload(cls, payload: "PasswordChangePayload") -> "PasswordChangePayload":
        if len(payload.new_password) < 6:
            raise ValueError("New password must be at least 6 characters.")
        return payload


class OnboardingBudget(BaseModel):
    category: str
    amount: Decimal


class OnboardingPayload(BaseModel):
    name: str | None = None
    salary: Decimal | None = None
    budgets: list[OnboardingBudget] = []

    @classmethod
    def validate_payload(cls, payload: "OnboardingPayload") -> "OnboardingPayload":
        payload.name = _clean_text(payload.name)
        _require_non_negative(payload.salary, "Salary")
        for item in payload.budgets:
            item.category = item.category.strip()
            if not item.category:
                raise ValueError("Budget category required.")
            _require_non_negative(item.amount, "Budget amount")
        return payload


class LedgerEntryPayload(BaseModel):
    amount: Decimal
    category: str
    description: str | None = None
    entry_date: date | None = Field(None, alias="date")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def validate_payload(cls, payload: "LedgerEntryPayload") -> "LedgerEntryPayload":
        _require_non_negative(payload.amount, "Amount")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        payload.description = _clean_text(payload.description)
        return payload


class LedgerEntryUpdatePayload(BaseModel):
    amount: Decimal | None = None
    category: str | None = None
    description: str | None = None
    entry_date: date | None = Field(None, alias="date")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def validate_payload(cls, payload: "LedgerEntryUpdatePayload") -> "LedgerEntryUpdatePayload":
        _require_non_negative(payload.amount, "Amount")
        if payload.category is not None:
            payload.category = payload.category.strip()
            if not payload.category:
                raise ValueError("Category required.")
        if payload.description is not None:
            payload.description = payload.description.strip()
        return payload


class LedgerEntryResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    category: str
    description: str | None = None
    date: date
    source: str
    external_ref: str | None = None
    created_at: datetime | None = None


class PaginatedEntriesResponse(BaseModel):
    data: list[LedgerEntryResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class PeriodStatsResponse(BaseModel):
    total: Decimal
    by_category: dict[str, Decimal]
    count: int


class BalanceStatsResponse(BaseModel):
    expense: PeriodStatsResponse
    income: PeriodStatsResponse
    balance: Decimal


class SummaryResponse(BaseModel):
    type: str
    month: int
    year: int
    current: PeriodStatsResponse | BalanceStatsResponse
    previous: PeriodStatsResponse | BalanceStatsResponse
    change: Decimal


class BudgetPayload(BaseModel):
    category: str
    amount: Decimal
    month: int
    year: int

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Budget category required.")
        _require_non_negative(payload.amount, "Budget amount")
        _validate_period(payload.month, payload.year)
        return payload


class BudgetUpdatePayload(BaseModel):
    category: str | None = None
    amount: Decimal | None = None
    month: int | None = None
    year: int | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetUpdatePayload") -> "BudgetUpdatePayload":
        if payload.category is not None:
            payload.category = payload.category.strip()
            if not payload.category:
                raise ValueError("Budget category required.")
        _require_non_negative(payload.amount, "Budget amount")
        if payload.month is not None and not 1 <= payload.month <= 12:
            raise ValueError("Month must be between 1 and 12.")
        if payload.year is not None and not 2020 <= payload.year <= 2100:
            raise ValueError("Year must be between 2020 and 2100.")
        return payload


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    category: str
    amount: Decimal
    month: int
    year: int
    created_at: datetime | None = None


class BudgetLineResponse(BaseModel):
    id: int | None = None
    category: str
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: int


class BudgetOverviewResponse(BaseModel):
    month: int
    year: int
    total_budget: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    categories: list[BudgetLineResponse]


class RecurringPayload(BaseModel):
    type: str
    amount: Decimal
    category: str
    description: str | None = None
    frequency: str
    next_date: date

    @classmethod
    def validate_payload(cls, payload: "RecurringPayload") -> "RecurringPayload":
        payload.type = validate_kind(payload.type)
        payload.frequency = validate_frequency(payload.frequency)
        _require_non_negative(payload.amount, "Recurring amount")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        payload.description = _clean_text(payload.description)
        return payload


class RecurringUpdatePayload(BaseModel):
    type: str | None = None
    amount: Decimal | None = None
    category: str | None = None
    description: str | None = None
    frequency: str | None = None
    next_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "RecurringUpdatePayload") -> "RecurringUpdatePayload":
        if payload.type is not None:
            payload.type = validate_kind(payload.type)
        if payload.frequency is not None:
            payload.frequency = validate_frequency(payload.frequency)
        _require_non_negative(payload.amount, "Recurring amount")
        if payload.category is not None:
            payload.category = payload.category.strip()
            if not payload.category:
                raise ValueError("Category required.")
        return payload


class RecurringResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    category: str
    description: str | None = None
    frequency: str
    next_date: date
    is_active: bool
    created_at: datetime | None = None


class ParseTextPayload(BaseModel):
    text: str


class ParsedTransactionResponse(BaseModel):
    amount: Decimal
    category: str
    description: str
    date: date
    type: str
    original_text: str | None = None


class ConfirmParsePayload(BaseModel):
    amount: Decimal
    category: str
    description: str | None = None
    date: date
    type: str

    @classmethod
    def validate_payload(cls, payload: "ConfirmParsePayload") -> "ConfirmParsePayload":
        payload.type = validate_kind(payload.type)
        _require_non_negative(payload.amount, "Amount")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        payload.description = _clean_text(payload.description)
        return payload


class ChatPayload(BaseModel):
    message: str = ""


class ChatMessageResponse(BaseModel):
    id: int
    role: str
    content: str
    created_at: datetime | None = None


class ChatHistoryResponse(BaseModel):
    messages: list[ChatMessageResponse]


class InsightsResponse(BaseModel):
    insights: str


class GmailConnectResponse(BaseModel):
    url: str


class EmailSyncStatusResponse(BaseModel):
    connected: bool
    email: str | None = None
    last_synced_at: datetime | None = None


class SyncResponse(BaseModel):
    synced: int


class NotificationPayload(BaseModel):
    type: str = "system"
    title: str
    message: str

    @classmethod
    def validate_payload(cls, payload: "NotificationPayload") -> "NotificationPayload":
        payload.type = validate_notification_type(payload.type)
        payload.title = payload.title.strip()
        payload.message = payload.message.strip()
        if not payload.title or not payload.message:
            raise ValueError("Notification title and message required.")
        return payload


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    type: str
    title: str
    message: str
    is_read: bool
    created_at: datetime | None = None


class UnreadCountResponse(BaseModel):
    count: int


def _validate_period(month: int, year: int) -> None:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12.")
    if not 2020 <= year <= 2100:
        raise ValueError("Year must be between 2020 and 2100.")


def validated(payload_cls, payload):
    try:
        return payload_cls.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def get_user_id(authorization: str | None) -> int:
    if not authorization:
        raise AuthenticationError("Missing bearer token.")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token.")
    user_id = user_id_from_token(token.strip())
    with engine.begin() as conn:
        exists = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
    if not exists:
        raise AuthenticationError("User not found.")
    return user_id


def set_refresh_cookie(response: Response, user_id: int, raw_token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        build_refresh_cookie(user_id, raw_token),
        max_age=settings.REFRESH_TOKEN_TTL_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def store_refresh_token(conn, user_id: int) -> str:
    issued = issue_refresh_token()
    conn.execute(
        update(users)
        .where(users.c.id == user_id)
        .values(refresh_token_hash=issued.hashed, refresh_token_expires_at=issued.expires_at)
    )
    return issued.raw


def clear_refresh_token(user_id: int) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(refresh_token_hash=None, refresh_token_expires_at=None)
        )


def to_user_summary(row) -> UserSummary:
    return UserSummary(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        role=row["role"],
        gmail_connected=bool(row["gmail_connected"]),
    )


def to_profile(row) -> ProfileResponse:
    return ProfileResponse(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        role=row["role"],
        gmail_connected=bool(row["gmail_connected"]),
        salary=row["salary"],
        onboarded=bool(row["onboarded"]),
        created_at=row["created_at"],
    )


def to_entry_response(row) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["kind"],
        amount=row["amount"],
        category=row["category"],
        description=row["description"],
        date=row["date"],
        source=row["source"],
        external_ref=row["external_ref"],
        created_at=row["created_at"],
    )


def to_budget_response(row) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        user_id=row["user_id"],
        category=row["category"],
        amount=row["amount"],
        month=row["month"],
        year=row["year"],
        created_at=row["created_at"],
    )


def to_recurring_response(row) -> RecurringResponse:
    return RecurringResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["kind"],
        amount=row["amount"],
        category=row["category"],
        description=row["description"],
        frequency=row["frequency"],
        next_date=row["next_date"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def to_notification_response(row) -> NotificationResponse:
    return NotificationResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        is_read=bool(row["is_read"]),
        created_at=row["created_at"],
    )


def to_stats_response(stats: PeriodStats) -> PeriodStatsResponse:
    return PeriodStatsResponse(total=stats.total, by_category=stats.by_category, count=stats.count)


def build_ledger_filter(
    category: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    amount_min: Decimal | None = None,
    amount_max: Decimal | None = None,
    search: str | None = None,
) -> LedgerFilter:
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to.")
    if amount_min is not None and amount_max is not None and amount_min > amount_max:
        raise HTTPException(status_code=400, detail="amount_min must not exceed amount_max.")
    return LedgerFilter(
        category=_clean_text(category),
        date_from=date_from,
        date_to=date_to,
        amount_min=amount_min,
        amount_max=amount_max,
        search=_clean_text(search),
    )


def resolve_month(month: int | None, year: int | None) -> tuple[int, int]:
    today = date.today()
    resolved = (month or today.month, year or today.year)
    try:
        _validate_period(*resolved)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return resolved


def period_stats(conn, user_id: int, kind: str, ledger_filter=None, period=None) -> PeriodStats:
    return summarize(find_entries(conn, user_id, kind, ledger_filter, period))


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


# --- auth -------------------------------------------------------------------


@app.post("/auth/register", response_model=TokenResponse)
def register(payload: RegisterPayload, response: Response) -> TokenResponse:
    payload = validated(RegisterPayload, payload)
    try:
        with engine.begin() as conn:
            exists = conn.execute(select(users.c.id).where(users.c.email == payload.email)).first()
            if exists:
                raise ConflictError("Email already registered.")
            row = conn.execute(
                insert(users)
                .values(
                    email=payload.email,
                    name=payload.name,
                    hashed_password=hash_password(payload.password),
                )
                .returning(users.c.id, users.c.email, users.c.role)
            ).mappings().one()
            raw_token = store_refresh_token(conn, row["id"])
    except IntegrityError as exc:
        raise ConflictError("Email already registered.") from exc

    logger.info("Registered user %s", row["id"])
    set_refresh_cookie(response, row["id"], raw_token)
    return TokenResponse(access_token=create_access_token(row["id"], row["email"], row["role"]))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginPayload, response: Response) -> TokenResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
        if not row or not verify_password(payload.password, row["hashed_password"]):
            raise AuthenticationError("Invalid credentials.")
        raw_token = store_refresh_token(conn, row["id"])

    set_refresh_cookie(response, row["id"], raw_token)
    return TokenResponse(access_token=create_access_token(row["id"], row["email"], row["role"]))


@app.post("/auth/refresh", response_model=RefreshResponse)
def refresh(
    response: Response,
    refresh_token: str | None = Cookie(None),
) -> RefreshResponse:
    if not refresh_token:
        raise AuthenticationError("No refresh token.")
    user_id, raw_token = parse_refresh_cookie(refresh_token)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise AuthenticationError("Invalid refresh token.")

    try:
        check_refresh_token(raw_token, row["refresh_token_hash"], row["refresh_token_expires_at"])
    except AuthenticationError:
        clear_refresh_token(user_id)
        logger.warning("Rejected refresh token for user %s", user_id)
        raise

    with engine.begin() as conn:
        new_raw_token = store_refresh_token(conn, user_id)
    set_refresh_cookie(response, user_id, new_raw_token)
    return RefreshResponse(
        access_token=create_access_token(row["id"], row["email"], row["role"]),
        user=to_user_summary(row),
    )


@app.post("/auth/logout")
def logout(response: Response, refresh_token: str | None = Cookie(None)) -> dict:
    if refresh_token:
        try:
            user_id, _ = parse_refresh_cookie(refresh_token)
        except AuthenticationError:
            user_id = None
        if user_id is not None:
            clear_refresh_token(user_id)
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )
    return {"message": "Logged out"}


@app.get("/auth/profile", response_model=ProfileResponse)
def get_profile(authorization: str | None = Header(None)) -> ProfileResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return to_profile(row)


# --- users ------------------------------------------------------------------


@app.put("/users/me", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdatePayload,
    authorization: str | None = Header(None),
) -> ProfileResponse:
    user_id = get_user_id(authorization)
    payload = validated(ProfileUpdatePayload, payload)
    values = payload.model_dump(exclude_unset=True)
    with engine.begin() as conn:
        if values:
            conn.execute(update(users).where(users.c.id == user_id).values(**values))
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return to_profile(row)


@app.put("/users/me/password")
def change_password(
    payload: PasswordChangePayload,
    authorization: str | None = Header(None),
) -> dict:
    user_id = get_user_id(authorization)
    payload = validated(PasswordChangePayload, payload)
    with engine.begin() as conn:
        current_hash = conn.execute(
            select(users.c.hashed_password).where(users.c.id == user_id)
        ).scalar_one()
        if not verify_password(payload.current_password, current_hash):
            raise ValidationError("Current password is incorrect.")
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(hashed_password=hash_password(payload.new_password))
        )
    return {"message": "Password updated"}


@app.post("/users/me/onboarding", response_model=ProfileResponse)
def complete_onboarding(
    payload: OnboardingPayload,
    authorization: str | None = Header(None),
) -> ProfileResponse:
    user_id = get_user_id(authorization)
    payload = validated(OnboardingPayload, payload)
    today = date.today()
    values = {"onboarded": True}
    if payload.name is not None:
        values["name"] = payload.name
    if payload.salary is not None:
        values["salary"] = payload.salary

    with engine.begin() as conn:
        conn.execute(update(users).where(users.c.id == user_id).values(**values))
        existing = set(
            conn.execute(
                select(budgets.c.category).where(
                    budgets.c.user_id == user_id,
                    budgets.c.month == today.month,
                    budgets.c.year == today.year,
                )
            ).scalars()
        )
        new_budgets = []
        for item in payload.budgets:
            if item.category in existing:
                continue
            existing.add(item.category)
            new_budgets.append(
                {
                    "user_id": user_id,
                    "category": item.category,
                    "amount": item.amount,
                    "month": today.month,
                    "year": today.year,
                }
            )
        if new_budgets:
            conn.execute(insert(budgets), new_budgets)
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return to_profile(row)


# --- expenses and incomes ---------------------------------------------------


def register_ledger_routes(prefix: str, kind: str, label: str) -> None:
    """Expense and income routes share one shape; register both from here.

    Fixed paths are registered before ``/{entry_id}`` so they are not
    captured by it.
    """

    @app.post(f"/{prefix}", response_model=LedgerEntryResponse, name=f"create_{kind}")
    def create_ledger_entry(
        payload: LedgerEntryPayload,
        authorization: str | None = Header(None),
    ) -> LedgerEntryResponse:
        user_id = get_user_id(authorization)
        payload = validated(LedgerEntryPayload, payload)
        with engine.begin() as conn:
            row = create_entry(
                conn,
                LedgerEntry(
                    user_id=user_id,
                    kind=kind,
                    amount=payload.amount,
                    category=payload.category,
                    date=payload.entry_date or date.today(),
                    description=payload.description,
                ),
            )
        return to_entry_response(row)

    @app.get(f"/{prefix}", response_model=PaginatedEntriesResponse, name=f"list_{kind}s")
    def list_ledger_entries(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        search: str | None = None,
        category: str | None = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: Decimal | None = Query(None, ge=0),
        amount_max: Decimal | None = Query(None, ge=0),
        authorization: str | None = Header(None),
    ) -> PaginatedEntriesResponse:
        user_id = get_user_id(authorization)
        ledger_filter = build_ledger_filter(category, date_from, date_to, amount_min, amount_max, search)
        conditions = build_conditions(user_id, kind, ledger_filter)
        sort_column = SORT_FIELDS.get(sort_by, ledger_entries.c.date)
        ordering = sort_column.asc() if sort_order.lower() == "asc" else sort_column.desc()
        with engine.begin() as conn:
            total = conn.execute(
                select(func.count()).select_from(ledger_entries).where(and_(*conditions))
            ).scalar_one()
            rows = conn.execute(
                select(ledger_entries)
                .where(and_(*conditions))
                .order_by(ordering, ledger_entries.c.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).mappings().all()
        return PaginatedEntriesResponse(
            data=[to_entry_response(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    @app.get(f"/{prefix}/all", response_model=list[LedgerEntryResponse], name=f"all_{kind}s")
    def list_all_ledger_entries(
        authorization: str | None = Header(None),
    ) -> list[LedgerEntryResponse]:
        user_id = get_user_id(authorization)
        with engine.begin() as conn:
            rows = conn.execute(
                select(ledger_entries)
                .where(and_(*build_conditions(user_id, kind)))
                .order_by(ledger_entries.c.date.desc(), ledger_entries.c.id.desc())
            ).mappings().all()
        return [to_entry_response(row) for row in rows]

    @app.get(f"/{prefix}/stats", response_model=PeriodStatsResponse, name=f"{kind}_stats")
    def ledger_stats(
        category: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: Decimal | None = Query(None, ge=0),
        amount_max: Decimal | None = Query(None, ge=0),
        authorization: str | None = Header(None),
    ) -> PeriodStatsResponse:
        user_id = get_user_id(authorization)
        ledger_filter = build_ledger_filter(category, date_from, date_to, amount_min, amount_max)
        with engine.begin() as conn:
            stats = period_stats(conn, user_id, kind, ledger_filter)
        return to_stats_response(stats)

    @app.get(f"/{prefix}/export/csv", name=f"export_{kind}s_csv")
    def export_ledger_csv(
        category: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: Decimal | None = Query(None, ge=0),
        amount_max: Decimal | None = Query(None, ge=0),
        authorization: str | None = Header(None),
    ) -> Response:
        user_id = get_user_id(authorization)
        ledger_filter = build_ledger_filter(category, date_from, date_to, amount_min, amount_max)
        with engine.begin() as conn:
            entries = find_entries(conn, user_id, kind, ledger_filter)
        return Response(
            content=render_csv(entries).encode("utf-8"),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{prefix}.csv"'},
        )

    @app.get(f"/{prefix}/export/pdf", name=f"export_{kind}s_pdf")
    def export_ledger_pdf(
        category: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: Decimal | None = Query(None, ge=0),
        amount_max: Decimal | None = Query(None, ge=0),
        authorization: str | None = Header(None),
    ) -> Response:
        user_id = get_user_id(authorization)
        ledger_filter = build_ledger_filter(category, date_from, date_to, amount_min, amount_max)
        with engine.begin() as conn:
            entries = find_entries(conn, user_id, kind, ledger_filter)
        content = render_pdf(entries, f"{label} report", settings.CURRENCY)
        return Response(
            content=content,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{prefix}.pdf"'},
        )

    @app.get(f"/{prefix}/{{entry_id}}", response_model=LedgerEntryResponse, name=f"get_{kind}")
    def get_ledger_entry(
        entry_id: int,
        authorization: str | None = Header(None),
    ) -> LedgerEntryResponse:
        user_id = get_user_id(authorization)
        with engine.begin() as conn:
            row = conn.execute(
                select(ledger_entries).where(
                    ledger_entries.c.id == entry_id,
                    *build_conditions(user_id, kind),
                )
            ).mappings().first()
        if not row:
            raise NotFoundError(f"{label} not found.")
        return to_entry_response(row)

    @app.put(f"/{prefix}/{{entry_id}}", response_model=LedgerEntryResponse, name=f"update_{kind}")
    def update_ledger_entry(
        entry_id: int,
        payload: LedgerEntryUpdatePayload,
        authorization: str | None = Header(None),
    ) -> LedgerEntryResponse:
        user_id = get_user_id(authorization)
        payload = validated(LedgerEntryUpdatePayload, payload)
        values = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True, by_alias=True).items()
            if value is not None or key == "description"
        }
        conditions = [ledger_entries.c.id == entry_id, *build_conditions(user_id, kind)]
        with engine.begin() as conn:
            if values:
                row = conn.execute(
                    update(ledger_entries)
                    .where(*conditions)
                    .values(**values)
                    .returning(*ledger_entries.c)
                ).mappings().first()
            else:
                row = conn.execute(select(ledger_entries).where(*conditions)).mappings().first()
        if not row:
            raise NotFoundError(f"{label} not found.")
        return to_entry_response(row)

    @app.delete(f"/{prefix}/{{entry_id}}", name=f"delete_{kind}")
    def delete_ledger_entry(
        entry_id: int,
        authorization: str | None = Header(None),
    ) -> dict:
        user_id = get_user_id(authorization)
        stmt = ledger_entries.delete().where(
            ledger_entries.c.id == entry_id,
            *build_conditions(user_id, kind),
        )
        with engine.begin() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                raise NotFoundError(f"{label} not found.")
        return {"status": "deleted"}


register_ledger_routes("expenses", "expense", "Expense")
register_ledger_routes("incomes", "income", "Income")


# --- budgets ----------------------------------------------------------------


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload,
    authorization: str | None = Header(None),
) -> BudgetResponse:
    user_id = get_user_id(authorization)
    payload = validated(BudgetPayload, payload)
    conflict = f'Budget for "{payload.category}" in {payload.month}/{payload.year} already exists.'
    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(budgets.c.id).where(
                    budgets.c.user_id == user_id,
                    budgets.c.category == payload.category,
                    budgets.c.month == payload.month,
                    budgets.c.year == payload.year,
                )
            ).first()
            if existing:
                raise ConflictError(conflict)
            row = conn.execute(
                insert(budgets)
                .values(
                    user_id=user_id,
                    category=payload.category,
                    amount=payload.amount,
                    month=payload.month,
                    year=payload.year,
                )
                .returning(*budgets.c)
            ).mappings().one()
    except IntegrityError as exc:
        raise ConflictError(conflict) from exc
    return to_budget_response(row)


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    month: int | None = None,
    year: int | None = None,
    authorization: str | None = Header(None),
) -> list[BudgetResponse]:
    user_id = get_user_id(authorization)
    month, year = resolve_month(month, year)
    with engine.begin() as conn:
        rows = conn.execute(
            select(budgets)
            .where(budgets.c.user_id == user_id, budgets.c.month == month, budgets.c.year == year)
            .order_by(budgets.c.category.asc())
        ).mappings().all()
    return [to_budget_response(row) for row in rows]


@app.get("/budgets/overview", response_model=BudgetOverviewResponse)
def get_budget_overview(
    month: int | None = None,
    year: int | None = None,
    authorization: str | None = Header(None),
) -> BudgetOverviewResponse:
    user_id = get_user_id(authorization)
    month, year = resolve_month(month, year)
    with engine.begin() as conn:
        caps = [
            BudgetCap(category=row["category"], amount=row["amount"], id=row["id"])
            for row in conn.execute(
                select(budgets)
                .where(budgets.c.user_id == user_id, budgets.c.month == month, budgets.c.year == year)
                .order_by(budgets.c.category.asc())
            ).mappings()
        ]
        spent = period_stats(conn, user_id, "expense", period=month_bounds(month, year))
    overview = budget_overview(caps, spent.by_category, month, year)
    return BudgetOverviewResponse(
        month=overview.month,
        year=overview.year,
        total_budget=overview.total_budget,
        total_spent=overview.total_spent,
        total_remaining=overview.total_remaining,
        categories=[
            BudgetLineResponse(
                id=line.id,
                category=line.category,
                budget=line.budget,
                spent=line.spent,
                remaining=line.remaining,
                percentage=line.percentage,
            )
            for line in overview.categories
        ],
    )


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    authorization: str | None = Header(None),
) -> BudgetResponse:
    user_id = get_user_id(authorization)
    payload = validated(BudgetUpdatePayload, payload)
    values = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}
    conditions = [budgets.c.id == budget_id, budgets.c.user_id == user_id]
    try:
        with engine.begin() as conn:
            if values:
                row = conn.execute(
                    update(budgets).where(*conditions).values(**values).returning(*budgets.c)
                ).mappings().first()
            else:
                row = conn.execute(select(budgets).where(*conditions)).mappings().first()
    except IntegrityError as exc:
        raise ConflictError("A budget for that category and month already exists.") from exc
    if not row:
        raise NotFoundError("Budget not found.")
    return to_budget_response(row)


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    stmt = budgets.delete().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError("Budget not found.")
    return {"status": "deleted"}


# --- recurring rules --------------------------------------------------------


@app.post("/recurring", response_model=RecurringResponse)
def create_recurring_rule(
    payload: RecurringPayload,
    authorization: str | None = Header(None),
) -> RecurringResponse:
    user_id = get_user_id(authorization)
    payload = validated(RecurringPayload, payload)
    draft = RecurringRule(
        id=None,
        user_id=user_id,
        kind=payload.type,
        amount=payload.amount,
        category=payload.category,
        frequency=payload.frequency,
        next_date=payload.next_date,
        description=payload.description,
    )
    entries, next_date = materialize_due(draft, date.today())
    with engine.begin() as conn:
        for entry in entries:
            create_entry(conn, entry)
        row = conn.execute(
            insert(recurring_rules)
            .values(
                user_id=user_id,
                kind=payload.type,
                amount=payload.amount,
                category=payload.category,
                description=payload.description,
                frequency=payload.frequency,
                next_date=next_date,
                anchor_day=payload.next_date.day,
            )
            .returning(*recurring_rules.c)
        ).mappings().one()
    if entries:
        logger.info("Back-filled %d %s(s) for new recurring rule %s", len(entries), payload.type, row["id"])
    return to_recurring_response(row)


@app.get("/recurring", response_model=list[RecurringResponse])
def list_recurring_rules(authorization: str | None = Header(None)) -> list[RecurringResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(recurring_rules)
            .where(recurring_rules.c.user_id == user_id)
            .order_by(recurring_rules.c.next_date.asc(), recurring_rules.c.id.asc())
        ).mappings().all()
    return [to_recurring_response(row) for row in rows]


@app.get("/recurring/{rule_id}", response_model=RecurringResponse)
def get_recurring_rule(rule_id: int, authorization: str | None = Header(None)) -> RecurringResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(recurring_rules).where(
                recurring_rules.c.id == rule_id, recurring_rules.c.user_id == user_id
            )
        ).mappings().first()
    if not row:
        raise NotFoundError("Recurring transaction not found.")
    return to_recurring_response(row)


@app.put("/recurring/{rule_id}", response_model=RecurringResponse)
def update_recurring_rule(
    rule_id: int,
    payload: RecurringUpdatePayload,
    authorization: str | None = Header(None),
) -> RecurringResponse:
    user_id = get_user_id(authorization)
    payload = validated(RecurringUpdatePayload, payload)
    values = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}
    if "type" in values:
        values["kind"] = values.pop("type")
    if "next_date" in values:
        values["anchor_day"] = values["next_date"].day
    if "description" in payload.model_fields_set:
        values["description"] = _clean_text(payload.description)
    conditions = [recurring_rules.c.id == rule_id, recurring_rules.c.user_id == user_id]
    with engine.begin() as conn:
        if values:
            row = conn.execute(
                update(recurring_rules)
                .where(*conditions)
                .values(**values)
                .returning(*recurring_rules.c)
            ).mappings().first()
        else:
            row = conn.execute(select(recurring_rules).where(*conditions)).mappings().first()
    if not row:
        raise NotFoundError("Recurring transaction not found.")
    return to_recurring_response(row)


@app.patch("/recurring/{rule_id}/toggle", response_model=RecurringResponse)
def toggle_recurring_rule(rule_id: int, authorization: str | None = Header(None)) -> RecurringResponse:
    user_id = get_user_id(authorization)
    conditions = [recurring_rules.c.id == rule_id, recurring_rules.c.user_id == user_id]
    with engine.begin() as conn:
        current = conn.execute(select(recurring_rules.c.is_active).where(*conditions)).first()
        if current is None:
            raise NotFoundError("Recurring transaction not found.")
        row = conn.execute(
            update(recurring_rules)
            .where(*conditions)
            .values(is_active=not bool(current[0]))
            .returning(*recurring_rules.c)
        ).mappings().one()
    return to_recurring_response(row)


@app.delete("/recurring/{rule_id}")
def delete_recurring_rule(rule_id: int, authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    stmt = recurring_rules.delete().where(
        recurring_rules.c.id == rule_id, recurring_rules.c.user_id == user_id
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError("Recurring transaction not found.")
    return {"status": "deleted"}


# --- stats ------------------------------------------------------------------


@app.get("/stats/summary", response_model=SummaryResponse)
def stats_summary(
    type: str = "all",
    month: int | None = None,
    year: int | None = None,
    category: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    amount_min: Decimal | None = Query(None, ge=0),
    amount_max: Decimal | None = Query(None, ge=0),
    authorization: str | None = Header(None),
) -> SummaryResponse:
    user_id = get_user_id(authorization)
    summary_type = type.strip().lower()
    if summary_type not in {"all", "expense", "income"}:
        raise HTTPException(status_code=400, detail="Type must be all, expense or income.")
    month, year = resolve_month(month, year)
    ledger_filter = build_ledger_filter(category, date_from, date_to, amount_min, amount_max)
    current_period = month_bounds(month, year)
    previous_period = month_bounds(*previous_month(month, year))

    with engine.begin() as conn:
        if summary_type in {"expense", "income"}:
            current = period_stats(conn, user_id, summary_type, ledger_filter, current_period)
            previous = period_stats(conn, user_id, summary_type, period=previous_period)
            return SummaryResponse(
                type=summary_type,
                month=month,
                year=year,
                current=to_stats_response(current),
                previous=to_stats_response(previous),
                change=percent_change(current.total, previous.total),
            )

        current_expense = period_stats(conn, user_id, "expense", ledger_filter, current_period)
        current_income = period_stats(conn, user_id, "income", ledger_filter, current_period)
        previous_expense = period_stats(conn, user_id, "expense", period=previous_period)
        previous_income = period_stats(conn, user_id, "income", period=previous_period)

    current_balance = current_income.total - current_expense.total
    previous_balance = previous_income.total - previous_expense.total
    return SummaryResponse(
        type=summary_type,
        month=month,
        year=year,
        current=BalanceStatsResponse(
            expense=to_stats_response(current_expense),
            income=to_stats_response(current_income),
            balance=current_balance,
        ),
        previous=BalanceStatsResponse(
            expense=to_stats_response(previous_expense),
            income=to_stats_response(previous_income),
            balance=previous_balance,
        ),
        change=percent_change(current_balance, previous_balance),
    )


# --- AI ---------------------------------------------------------------------


@app.post("/ai/parse", response_model=ParsedTransactionResponse)
def parse_text(
    payload: ParseTextPayload,
    authorization: str | None = Header(None),
) -> ParsedTransactionResponse:
    get_user_id(authorization)
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Text required.")
    parsed = parse_transaction_text(chat_client, text, date.today())
    return ParsedTransactionResponse(
        amount=parsed.amount,
        category=parsed.category,
        description=parsed.description,
        date=parsed.date,
        type=parsed.type,
        original_text=parsed.original_text,
    )


@app.post("/ai/parse/confirm", response_model=LedgerEntryResponse)
def confirm_parsed_text(
    payload: ConfirmParsePayload,
    authorization: str | None = Header(None),
) -> LedgerEntryResponse:
    user_id = get_user_id(authorization)
    payload = validated(ConfirmParsePayload, payload)
    with engine.begin() as conn:
        row = create_entry(
            conn,
            LedgerEntry(
                user_id=user_id,
                kind=payload.type,
                amount=payload.amount,
                category=payload.category,
                date=payload.date,
                description=payload.description,
            ),
        )
    return to_entry_response(row)


def load_financial_context(conn, user_id: int) -> tuple[PeriodStats, PeriodStats, list[RecentEntry]]:
    expense_stats = period_stats(conn, user_id, "expense")
    income_stats = period_stats(conn, user_id, "income")
    recent = [
        RecentEntry(kind=kind, amount=entry.amount, category=entry.category, date=entry.date,
                    description=entry.description)
        for kind in ("expense", "income")
        for entry in find_entries(conn, user_id, kind, limit=RECENT_ENTRIES_FOR_CONTEXT)
    ]
    return expense_stats, income_stats, recent


def save_chat_message(user_id: int, role: str, content: str) -> None:
    with engine.begin() as conn:
        conn.execute(insert(chat_messages).values(user_id=user_id, role=role, content=content))


@app.post("/ai/chat")
def chat(payload: ChatPayload, authorization: str | None = Header(None)) -> StreamingResponse:
    user_id = get_user_id(authorization)
    message = payload.message.strip()
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

    if not message:
        def empty_reply():
            yield format_event({"content": EMPTY_MESSAGE_REPLY})
            yield format_event({"done": True})

        return StreamingResponse(empty_reply(), media_type="text/event-stream", headers=headers)

    save_chat_message(user_id, "user", message)
    with engine.begin() as conn:
        history_rows = conn.execute(
            select(chat_messages.c.role, chat_messages.c.content)
            .where(chat_messages.c.user_id == user_id)
            .order_by(chat_messages.c.created_at.desc(), chat_messages.c.id.desc())
            .limit(HISTORY_LIMIT)
        ).mappings().all()
        expense_stats, income_stats, recent = load_financial_context(conn, user_id)

    history = [{"role": row["role"], "content": row["content"]} for row in reversed(history_rows)]
    context = build_context(expense_stats, income_stats, recent, settings.CURRENCY)
    messages = build_chat_messages(context, history)

    def reply_stream():
        chunks = []
        try:
            for chunk in chat_client.stream(messages):
                chunks.append(chunk)
                yield format_event({"content": chunk})
        except UpstreamError:
            logger.exception("Chat stream failed for user %s", user_id)
            yield format_event({"error": "Could not process the AI request."})
            return
        save_chat_message(user_id, "assistant", "".join(chunks) or FALLBACK_REPLY)
        yield format_event({"done": True})

    return StreamingResponse(reply_stream(), media_type="text/event-stream", headers=headers)


@app.get("/ai/history", response_model=ChatHistoryResponse)
def chat_history(authorization: str | None = Header(None)) -> ChatHistoryResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(chat_messages)
            .where(chat_messages.c.user_id == user_id)
            .order_by(chat_messages.c.created_at.asc(), chat_messages.c.id.asc())
        ).mappings().all()
    return ChatHistoryResponse(
        messages=[
            ChatMessageResponse(
                id=row["id"], role=row["role"], content=row["content"], created_at=row["created_at"]
            )
            for row in rows
        ]
    )


@app.delete("/ai/history")
def clear_chat_history(authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        conn.execute(chat_messages.delete().where(chat_messages.c.user_id == user_id))
    return {"success": True}


@app.get("/ai/insights", response_model=InsightsResponse)
def insights(authorization: str | None = Header(None)) -> InsightsResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        expense_stats = period_stats(conn, user_id, "expense")
        income_stats = period_stats(conn, user_id, "income")
    return InsightsResponse(insights=build_insights(expense_stats, income_stats, settings.CURRENCY))


# --- email sync -------------------------------------------------------------


@app.get("/email-sync/gmail/connect", response_model=GmailConnectResponse)
def gmail_connect(authorization: str | None = Header(None)) -> GmailConnectResponse:
    user_id = get_user_id(authorization)
    if not settings.GOOGLE_CLIENT_ID:
        raise UpstreamError("Gmail integration is not configured.")
    url = build_auth_url(settings.GOOGLE_CLIENT_ID, settings.GOOGLE_REDIRECT_URI, create_gmail_state(user_id))
    return GmailConnectResponse(url=url)


@app.get("/email-sync/gmail/callback")
def gmail_callback(code: str | None = None, state: str | None = None) -> RedirectResponse:
    settings_url = f"{settings.FRONTEND_URL}/settings"
    if not code or not state:
        return RedirectResponse(f"{settings_url}?gmail=error")
    try:
        user_id = user_id_from_token(state, GMAIL_STATE_PURPOSE)
        connect_account(engine, gmail_api, user_id, code)
        register_watch(engine, gmail_api, user_id, settings.GMAIL_PUBSUB_TOPIC)
    except TrackerError:
        logger.exception("Gmail OAuth callback failed")
        return RedirectResponse(f"{settings_url}?gmail=error")
    return RedirectResponse(f"{settings_url}?gmail=connected")


@app.post("/email-sync/gmail/disconnect")
def gmail_disconnect(authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    disconnect_account(engine, user_id)
    return {"success": True}


@app.post("/email-sync/sync", response_model=SyncResponse)
def manual_sync(authorization: str | None = Header(None)) -> SyncResponse:
    user_id = get_user_id(authorization)
    return SyncResponse(synced=sync_user_emails(engine, gmail_api, chat_client, user_id))


@app.get("/email-sync/status", response_model=EmailSyncStatusResponse)
def email_sync_status(authorization: str | None = Header(None)) -> EmailSyncStatusResponse:
    user_id = get_user_id(authorization)
    return EmailSyncStatusResponse(**connection_status(engine, user_id))


def process_push_notification(email_address: str | None) -> None:
    try:
        handle_push_notification(engine, gmail_api, chat_client, email_address)
    except TrackerError:
        logger.exception("Webhook processing failed for %s", email_address)


@app.post("/email-sync/gmail/webhook")
def gmail_webhook(body: dict, background_tasks: BackgroundTasks) -> dict:
    data = (body.get("message") or {}).get("data")
    if not data:
        return {"status": "no data"}
    try:
        decoded = decode_push_message(data)
    except ValueError:
        logger.exception("Gmail webhook error")
        return {"status": "error"}
    logger.info("Gmail webhook received for: %s", decoded.get("emailAddress"))
    background_tasks.add_task(process_push_notification, decoded.get("emailAddress"))
    return {"status": "ok"}


# --- notifications ----------------------------------------------------------


@app.get("/notifications/stream")
async def notification_stream(token: str | None = None) -> StreamingResponse:
    if not token:
        raise AuthenticationError("Missing token.")
    user_id = user_id_from_token(token)
    return StreamingResponse(
        hub.stream(user_id, settings.NOTIFICATION_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/notifications", response_model=NotificationResponse)
def create_notification(
    payload: NotificationPayload,
    authorization: str | None = Header(None),
) -> NotificationResponse:
    user_id = get_user_id(authorization)
    payload = validated(NotificationPayload, payload)
    row = notify(engine, user_id, payload.type, payload.title, payload.message)
    return to_notification_response(row)


@app.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(authorization: str | None = Header(None)) -> list[NotificationResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(notifications)
            .where(notifications.c.user_id == user_id)
            .order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
            .limit(NOTIFICATION_PAGE_SIZE)
        ).mappings().all()
    return [to_notification_response(row) for row in rows]


@app.get("/notifications/unread-count", response_model=UnreadCountResponse)
def unread_count(authorization: str | None = Header(None)) -> UnreadCountResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        count = conn.execute(
            select(func.count())
            .select_from(notifications)
            .where(notifications.c.user_id == user_id, notifications.c.is_read.is_(False))
        ).scalar_one()
    return UnreadCountResponse(count=count)


@app.patch("/notifications/read-all")
def mark_all_read(authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        result = conn.execute(
            update(notifications)
            .where(notifications.c.user_id == user_id, notifications.c.is_read.is_(False))
            .values(is_read=True)
        )
    return {"updated": result.rowcount}


@app.patch("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_read(notification_id: int, authorization: str | None = Header(None)) -> NotificationResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            update(notifications)
            .where(notifications.c.id == notification_id, notifications.c.user_id == user_id)
            .values(is_read=True)
            .returning(*notifications.c)
        ).mappings().first()
    if not row:
        raise NotFoundError("Notification not found.")
    return to_notification_response(row)


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: int, authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    stmt = notifications.delete().where(
        notifications.c.id == notification_id, notifications.c.user_id == user_id
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError("Notification not found.")
    return {"status": "deleted"}
