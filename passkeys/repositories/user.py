from __future__ import annotations

"""
Host user directory boundary.

The passkey core never owns users. A host plugs its own directory in by
setting `USER_DIRECTORY_IMPL` to a dotted path like:

    myapp.accounts:AccountDirectory

The class is instantiated without arguments and must implement
`UserDirectoryProtocol`. Without it, the in-memory directory is used
(tests and demos).
"""

import asyncio
from typing import Dict, List, Optional

from passkeys.domain import UserRecord


class UserDirectoryProtocol:
    async def lookup_by_username(self, username: str) -> Optional[UserRecord]:
        raise NotImplementedError

    async def get_by_ref(self, user_ref: int) -> Optional[UserRecord]:
        raise NotImplementedError


class MemoryUserDirectory(UserDirectoryProtocol):
    def __init__(self, users: Optional[List[UserRecord]] = None) -> None:
        self._by_ref: Dict[int, UserRecord] = {}
        self._by_name: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        for user in users or []:
            self._put(user)

    def _put(self, user: UserRecord) -> None:
        self._by_ref[user.user_ref] = user
        self._by_name[user.username.lower()] = user.user_ref

    async def add(self, user: UserRecord) -> UserRecord:
        async with self._lock:
            self._put(user)
        return user

    async def lookup_by_username(self, username: str) -> Optional[UserRecord]:
        ref = self._by_name.get((username or "").strip().lower())
        return self._by_ref.get(ref) if ref is not None else None

    async def get_by_ref(self, user_ref: int) -> Optional[UserRecord]:
        return self._by_ref.get(user_ref)


def _import_string(path: str):
    module_path, _, class_name = path.partition(":")
    if not module_path or not class_name:
        raise ValueError("USER_DIRECTORY_IMPL must be 'module.sub:ClassName'")
    module = __import__(module_path, fromlist=[class_name])
    return getattr(module, class_name)


def get_user_directory(impl_path: Optional[str] = None) -> UserDirectoryProtocol:
    if impl_path:
        cls = _import_string(impl_path)
        return cls()  # type: ignore
    return MemoryUserDirectory()


__all__ = [
    "UserDirectoryProtocol",
    "MemoryUserDirectory",
    "get_user_directory",
]
