"""
Gmail bank-notification import.

Fetches recent bank e-mails for a connected user, asks the AI client to
extract a transaction from each unsynced message, stores expenses with
``source="email"`` and records every processed message in
``synced_emails`` so it is never imported twice.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from expense_tracker.ai_assistant import parse_email_content
from expense_tracker.ai_client import ChatClient
from expense_tracker.auth_tokens import utcnow
from expense_tracker.db import synced_emails, users
from expense_tracker.gmail_client import GmailApi, GmailMessage, GmailUnavailable
from expense_tracker.ledger_store import create_entry
from expense_tracker.notifications import NotificationHub, notify
from expense_tracker.recurring_engine import LedgerEntry

logger = logging.getLogger(__name__)

SOURCE_EMAIL = "email"
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


def connect_account(engine: Engine, api: GmailApi, user_id: int, code: str) -> Optional[str]:
    """Store the OAuth tokens for ``code`` and return the mailbox address."""
    tokens = api.exchange_code(code, utcnow())
    gmail_address = api.get_profile_email(tokens.access_token)
    with engine.begin() as conn:
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(
                gmail_access_token=tokens.access_token,
                gmail_refresh_token=tokens.refresh_token,
                gmail_token_expiry=tokens.expires_at,
                gmail_address=gmail_address,
                gmail_connected=True,
            )
        )
    logger.info("Gmail connected for user %s", user_id)
    return gmail_address


def disconnect_account(engine: Engine, user_id: int) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(
                gmail_access_token=None,
                gmail_refresh_token=None,
                gmail_token_expiry=None,
                gmail_address=None,
                gmail_connected=False,
            )
        )
    logger.info("Gmail disconnected for user %s", user_id)


def get_access_token(engine: Engine, api: GmailApi, user_id: int) -> Optional[str]:
    """Return a usable access token, refreshing and persisting it when stale.

    ``None`` means the user never connected Gmail.
    """
    with engine.begin() as conn:
        row = conn.execute(
            select(
                users.c.gmail_access_token,
                users.c.gmail_refresh_token,
                users.c.gmail_token_expiry,
            ).where(users.c.id == user_id)
        ).mappings().first()
    if not row or not row["gmail_refresh_token"]:
        return None

    now = utcnow()
    expiry = row["gmail_token_expiry"]
    if row["gmail_access_token"] and expiry is not None and expiry - TOKEN_EXPIRY_MARGIN > now:
        return row["gmail_access_token"]

    tokens = api.refresh_access_token(row["gmail_refresh_token"], now)
    with engine.begin() as conn:
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(gmail_access_token=tokens.access_token, gmail_token_expiry=tokens.expires_at)
        )
    return tokens.access_token


def fetch_unsynced_messages(engine: Engine, api: GmailApi, user_id: int) -> List[GmailMessage]:
    access_token = get_access_token(engine, api, user_id)
    if access_token is None:
        return []

    message_ids = api.list_message_ids(access_token)
    if not message_ids:
        return []
    with engine.begin() as conn:
        already_synced = set(
            conn.execute(
                select(synced_emails.c.message_id).where(
                    synced_emails.c.user_id == user_id,
                    synced_emails.c.message_id.in_(message_ids),
                )
            ).scalars()
        )
    return [
        api.get_message(access_token, message_id)
        for message_id in message_ids
        if message_id not in already_synced
    ]


def sync_user_emails(
    engine: Engine,
    api: GmailApi,
    chat_client: ChatClient,
    user_id: int,
    today: Optional[date] = None,
    notification_hub: Optional[NotificationHub] = None,
) -> int:
    """Import bank e-mails for one user; returns the number of expenses created.

    A failure on one message is logged and the message is retried on the
    next sync, since it was not recorded as synced.
    """
    today = today or date.today()
    messages = fetch_unsynced_messages(engine, api, user_id)
    created = 0
    for message in messages:
        try:
            parsed = parse_email_content(chat_client, message.body, message.subject, today)
            with engine.begin() as conn:
                if parsed is not None and parsed.type == "expense":
                    create_entry(
                        conn,
                        LedgerEntry(
                            user_id=user_id,
                            kind="expense",
                            amount=parsed.amount,
                            category=parsed.category,
                            date=parsed.date,
                            description=parsed.description,
                            source=SOURCE_EMAIL,
                            external_ref=message.message_id,
                        ),
                    )
                    created += 1
                    logger.info(
                        "Created expense from email: %s - %s", parsed.amount, parsed.description
                    )
                conn.execute(
                    insert(synced_emails).values(
                        user_id=user_id,
                        message_id=message.message_id,
                        subject=message.subject[:500],
                        sender=message.sender[:255],
                    )
                )
        except Exception:
            logger.exception("Failed to process email %s", message.message_id)

    if created:
        notify(
            engine,
            user_id,
            "transaction",
            "New transactions imported",
            f"{created} expense(s) were imported from your bank e-mails.",
            notification_hub,
        )
    return created


def register_watch(engine: Engine, api: GmailApi, user_id: int, topic_name: Optional[str]) -> bool:
    if not topic_name:
        logger.info("GMAIL_PUBSUB_TOPIC not set, skipping Gmail watch for user %s", user_id)
        return False
    access_token = get_access_token(engine, api, user_id)
    if access_token is None:
        return False
    api.watch(access_token, topic_name)
    logger.info("Gmail watch registered for user %s", user_id)
    return True


def renew_all_watches(engine: Engine, api: GmailApi, topic_name: Optional[str]) -> int:
    with engine.begin() as conn:
        user_ids = list(
            conn.execute(select(users.c.id).where(users.c.gmail_connected.is_(True))).scalars()
        )
    renewed = 0
    for user_id in user_ids:
        try:
            if register_watch(engine, api, user_id, topic_name):
                renewed += 1
        except GmailUnavailable:
            logger.exception("Failed to renew Gmail watch for user %s", user_id)
    return renewed


def handle_push_notification(
    engine: Engine,
    api: GmailApi,
    chat_client: ChatClient,
    email_address: Optional[str],
    notification_hub: Optional[NotificationHub] = None,
) -> int:
    if not email_address:
        return 0
    with engine.begin() as conn:
        user_id = conn.execute(
            select(users.c.id).where(
                users.c.gmail_address == email_address,
                users.c.gmail_connected.is_(True),
            )
        ).scalar_one_or_none()
    if user_id is None:
        logger.warning("Gmail push for unknown mailbox %s", email_address)
        return 0
    return sync_user_emails(
        engine, api, chat_client, user_id, notification_hub=notification_hub
    )


def connection_status(engine: Engine, user_id: int) -> dict:
    with engine.begin() as conn:
        row = conn.execute(
            select(users.c.gmail_connected, users.c.gmail_address).where(users.c.id == user_id)
        ).mappings().first()
        last_synced: Optional[datetime] = conn.execute(
            select(synced_emails.c.created_at)
            .where(synced_emails.c.user_id == user_id)
            .order_by(synced_emails.c.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
    return {
        "connected": bool(row and row["gmail_connected"]),
        "email": row["gmail_address"] if row else None,
        "last_synced_at": last_synced,
    }
