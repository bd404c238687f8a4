from __future__ import annotations

import pytest

from passkeys.domain import UserRecord
from passkeys.repositories.user import MemoryUserDirectory

# ──────────────────────────────────────────────────────────────
# 🧪 Directory users (refs are fixed so tests can address them)
# ──────────────────────────────────────────────────────────────
ALICE = UserRecord(user_ref=1, username="alice", display_name="Alice Liddell")
BOB = UserRecord(user_ref=2, username="bob", display_name="Bob")
CAROL = UserRecord(user_ref=3, username="carol", password_login_enabled=False)
ADMIN = UserRecord(user_ref=99, username="root", display_name="Admin", is_admin=True)

ALL_USERS = (ALICE, BOB, CAROL, ADMIN)


@pytest.fixture
def alice() -> UserRecord:
    return ALICE


@pytest.fixture
def bob() -> UserRecord:
    return BOB


@pytest.fixture
def carol() -> UserRecord:
    """Password login switched off for this user only."""
    return CAROL


@pytest.fixture
def admin_user() -> UserRecord:
    return ADMIN


@pytest.fixture
def user_directory() -> MemoryUserDirectory:
    return MemoryUserDirectory(list(ALL_USERS))


__all__ = [
    "ALICE",
    "BOB",
    "CAROL",
    "ADMIN",
    "ALL_USERS",
    "alice",
    "bob",
    "carol",
    "admin_user",
    "user_directory",
]
