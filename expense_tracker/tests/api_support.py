"""Shared setup for tests that touch the database or the HTTP app.

The environment must be configured before ``expense_tracker.settings``
is first imported, so every database test imports this module first.
"""

import os
import tempfile
import uuid

os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'expense_tracker_test.db')}"
)
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

from expense_tracker.db import engine, init_db, users  # noqa: E402

init_db()


def unique_email() -> str:
    return f"user-{uuid.uuid4().hex[:12]}@example.com"


def register(client, email=None, password="secret1", name="Tester") -> dict:
    response = client.post(
        "/auth/register",
        json={"email": email or unique_email(), "password": password, "name": name},
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def create_user(email=None) -> int:
    from sqlalchemy import insert

    from expense_tracker.auth_tokens import hash_password

    with engine.begin() as conn:
        return conn.execute(
            insert(users)
            .values(email=email or unique_email(), name="Tester", hashed_password=hash_password("secret1"))
            .returning(users.c.id)
        ).scalar_one()
