from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)

from expense_tracker import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255)),
    Column("hashed_password", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("salary", Numeric(14, 2)),
    Column("onboarded", Boolean, nullable=False, server_default="0"),
    Column("refresh_token_hash", String(64)),
    Column("refresh_token_expires_at", DateTime),
    Column("gmail_address", String(255)),
    Column("gmail_access_token", Text),
    Column("gmail_refresh_token", Text),
    Column("gmail_token_expiry", DateTime),
    Column("gmail_connected", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

ledger_entries = Table(
    "ledger_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("kind", String(10), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("category", String(100), nullable=False),
    Column("description", String(500)),
    Column("date", Date, nullable=False),
    Column("source", String(20), nullable=False, server_default="manual"),
    Column("external_ref", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Index("ix_ledger_entries_user_kind_date", "user_id", "kind", "date"),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category", String(100), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("month", Integer, nullable=False),
    Column("year", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "category", "month", "year", name="uq_budgets_user_category_period"),
)

recurring_rules = Table(
    "recurring_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("kind", String(10), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("category", String(100), nullable=False),
    Column("description", String(500)),
    Column("frequency", String(10), nullable=False),
    Column("next_date", Date, nullable=False),
    Column("anchor_day", Integer),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

chat_messages = Table(
    "chat_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("role", String(20), nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", String(1000), nullable=False),
    Column("is_read", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

synced_emails = Table(
    "synced_emails",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("message_id", String(255), nullable=False),
    Column("subject", String(500)),
    Column("sender", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "message_id", name="uq_synced_emails_user_message"),
)


def init_db() -> None:
    metadata.create_all(engine)
