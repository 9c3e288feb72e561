from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from expense_tracker.errors import UpstreamError

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"

BANK_SENDERS = (
    "vietcombank",
    "techcombank",
    "mbbank",
    "acb",
    "vpbank",
    "tpbank",
    "bidv",
    "agribank",
)
BANK_EMAIL_QUERY = f"from:({' OR '.join(BANK_SENDERS)}) newer_than:7d"
MAX_MESSAGES = 50


class GmailUnavailable(UpstreamError):
    """Raised when a Google OAuth or Gmail API call fails."""


@dataclass(frozen=True)
class GmailTokens:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


@dataclass(frozen=True)
class GmailMessage:
    message_id: str
    subject: str
    sender: str
    date: str
    body: str


def build_auth_url(client_id: str, redirect_uri: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GMAIL_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
    )
    return f"{AUTH_URL}?{query}"


@dataclass
class GmailApi:
    client_id: str
    client_secret: str
    redirect_uri: str
    timeout: int = 10

    def exchange_code(self, code: str, now: datetime) -> GmailTokens:
        payload = self._post_form(
            TOKEN_URL,
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return _tokens_from_payload(payload, now)

    def refresh_access_token(self, refresh_token: str, now: datetime) -> GmailTokens:
        payload = self._post_form(
            TOKEN_URL,
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
        )
        tokens = _tokens_from_payload(payload, now)
        # Google only returns a refresh token on the first exchange.
        if tokens.refresh_token is None:
            tokens = GmailTokens(tokens.access_token, refresh_token, tokens.expires_at)
        return tokens

    def get_profile_email(self, access_token: str) -> str | None:
        payload = self._request(f"{GMAIL_API_URL}/profile", access_token)
        return payload.get("emailAddress")

    def list_message_ids(
        self, access_token: str, query: str = BANK_EMAIL_QUERY, max_results: int = MAX_MESSAGES
    ) -> List[str]:
        url = f"{GMAIL_API_URL}/messages?{urlencode({'q': query, 'maxResults': max_results})}"
        payload = self._request(url, access_token)
        return [message["id"] for message in payload.get("messages") or [] if message.get("id")]

    def get_message(self, access_token: str, message_id: str) -> GmailMessage:
        url = f"{GMAIL_API_URL}/messages/{quote(message_id, safe='')}?format=full"
        return parse_message(self._request(url, access_token))

    def watch(self, access_token: str, topic_name: str) -> dict:
        body = json.dumps({"topicName": topic_name, "labelIds": ["INBOX"]}).encode("utf-8")
        return self._request(
            f"{GMAIL_API_URL}/watch",
            access_token,
            data=body,
            headers={"Content-Type": "application/json"},
        )

    def _post_form(self, url: str, fields: Mapping[str, str]) -> dict:
        return self._request(
            url,
            data=urlencode(fields).encode("utf-8"),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def _request(
        self,
        url: str,
        access_token: str | None = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict:
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        request = Request(url, data=data, headers=request_headers)
        try:
            with urlopen(request, timeout=self.timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise GmailUnavailable("Gmail API unavailable.") from exc
        if not isinstance(payload, dict):
            raise GmailUnavailable("Unexpected Gmail API response.")
        return payload


def parse_message(raw: Mapping) -> GmailMessage:
    payload = raw.get("payload") or {}
    headers = {
        header.get("name", "").lower(): header.get("value", "")
        for header in payload.get("headers") or []
    }
    return GmailMessage(
        message_id=raw.get("id", ""),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        date=headers.get("date", ""),
        body=extract_body(payload),
    )


def extract_body(payload: Mapping) -> str:
    """Return the top-level body, or else the first text/plain part."""
    data = (payload.get("body") or {}).get("data")
    if data:
        return decode_base64url(data)
    for part in payload.get("parts") or []:
        part_data = (part.get("body") or {}).get("data")
        if part.get("mimeType") == "text/plain" and part_data:
            return decode_base64url(part_data)
    return ""


def decode_base64url(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("Could not decode message body")
        return ""


def decode_push_message(data: str) -> dict:
    """Decode the base64 JSON carried by a Pub/Sub push message."""
    try:
        decoded = json.loads(base64.b64decode(data).decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid push message data.") from exc
    if not isinstance(decoded, dict):
        raise ValueError("Invalid push message data.")
    return decoded


def _tokens_from_payload(payload: Mapping, now: datetime) -> GmailTokens:
    access_token = payload.get("access_token")
    if not access_token:
        raise GmailUnavailable("Google token response missing access token.")
    expires_in = payload.get("expires_in")
    expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
    return GmailTokens(
        access_token=access_token,
        refresh_token=payload.get("refresh_token"),
        expires_at=expires_at,
    )
