import unittest
from datetime import datetime, timedelta, timezone

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
from expense_tracker.errors import AuthenticationError


class PasswordTests(unittest.TestCase):
    def test_hash_round_trip(self) -> None:
        hashed = hash_password("secret1")

        self.assertNotEqual(hashed, "secret1")
        self.assertTrue(verify_password("secret1", hashed))
        self.assertFalse(verify_password("secret2", hashed))


class AccessTokenTests(unittest.TestCase):
    def test_token_carries_user_id(self) -> None:
        token = create_access_token(42, "a@example.com", "user")

        self.assertEqual(user_id_from_token(token), 42)

    def test_expired_token_is_rejected(self) -> None:
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        token = create_access_token(42, "a@example.com", "user", now=issued, ttl=timedelta(minutes=15))

        with self.assertRaises(AuthenticationError):
            user_id_from_token(token)

    def test_garbage_token_is_rejected(self) -> None:
        with self.assertRaises(AuthenticationError):
            user_id_from_token("not-a-jwt")

    def test_gmail_state_cannot_be_used_as_access_token(self) -> None:
        state = create_gmail_state(5)

        self.assertEqual(user_id_from_token(state, GMAIL_STATE_PURPOSE), 5)
        with self.assertRaises(AuthenticationError):
            user_id_from_token(state)


class RefreshTokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = datetime(2026, 2, 1, 12, 0)
        self.issued = issue_refresh_token(self.now)

    def test_matching_unexpired_token_passes(self) -> None:
        self.assertEqual(self.issued.expires_at, self.now + timedelta(days=7))
        check_refresh_token(self.issued.raw, self.issued.hashed, self.issued.expires_at, self.now)

    def test_wrong_token_fails(self) -> None:
        other = issue_refresh_token(self.now)

        with self.assertRaises(AuthenticationError):
            check_refresh_token(other.raw, self.issued.hashed, self.issued.expires_at, self.now)

    def test_expired_token_fails(self) -> None:
        later = self.issued.expires_at + timedelta(seconds=1)

        with self.assertRaises(AuthenticationError):
            check_refresh_token(self.issued.raw, self.issued.hashed, self.issued.expires_at, later)

    def test_cleared_hash_fails(self) -> None:
        with self.assertRaises(AuthenticationError):
            check_refresh_token(self.issued.raw, None, None, self.now)

    def test_cookie_round_trip(self) -> None:
        cookie = build_refresh_cookie(9, self.issued.raw)

        self.assertEqual(parse_refresh_cookie(cookie), (9, self.issued.raw))

    def test_malformed_cookie(self) -> None:
        for value in ("abc", "x:token", "9:"):
            with self.subTest(value=value):
                with self.assertRaises(AuthenticationError):
                    parse_refresh_cookie(value)


if __name__ == "__main__":
    unittest.main()
