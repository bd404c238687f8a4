from __future__ import annotations

"""
Credential repository: stored public-key credentials, one per authenticator.

Two implementations share one contract:

- `MemoryCredentialRepository` keeps copies of `Credential` objects in dicts
  guarded by an `asyncio.Lock` (tests, single-process dev).
- `SqlCredentialRepository` talks to the `passkey_credential` table through
  an `async_sessionmaker`.

There is no delete. Revocation is the only terminal transition and, once
set, `revoked_at` is never cleared by `save`. Counter updates go through
`update_usage`, a compare-and-set so two concurrent assertions can't both
write a stale counter.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from passkeys.core.encoding import b64url, b64url_decode
from passkeys.core.exceptions import DuplicateCredentialError, InfrastructureError
from passkeys.db.models.passkey_credential import PasskeyCredential
from passkeys.db.session import transactional_async_session
from passkeys.domain import Credential, as_utc, sanitize_label, utcnow


class CredentialRepositoryProtocol:
    async def find_by_credential_id(self, credential_id: bytes) -> Optional[Credential]:
        raise NotImplementedError

    async def find_all_for_user(self, user_ref: int, *, include_revoked: bool = True) -> List[Credential]:
        raise NotImplementedError

    async def find_by_uid(self, uid: int) -> Optional[Credential]:
        raise NotImplementedError

    async def save(self, credential: Credential) -> Credential:
        raise NotImplementedError

    async def update_usage(self, uid: int, *, expected_sign_count: int, new_sign_count: int, used_at: datetime) -> bool:
        raise NotImplementedError

    async def flag_for_review(self, uid: int, at: datetime) -> None:
        raise NotImplementedError

    async def rename(self, uid: int, label: str) -> None:
        raise NotImplementedError

    async def revoke(self, uid: int, actor_ref: Optional[int], *, at: Optional[datetime] = None) -> None:
        raise NotImplementedError

    async def revoke_unless_last(
        self, uid: int, user_ref: int, actor_ref: Optional[int], *, at: Optional[datetime] = None
    ) -> bool:
        """Revoke `uid` unless it is the last active credential of `user_ref`; False means refused."""
        raise NotImplementedError

    async def count_active_for_user(self, user_ref: int) -> int:
        raise NotImplementedError


# ─────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────
class MemoryCredentialRepository(CredentialRepositoryProtocol):
    def __init__(self) -> None:
        self._rows: Dict[int, Credential] = {}
        self._by_credential_id: Dict[bytes, int] = {}
        self._next_uid = 1
        self._lock = asyncio.Lock()

    def _copy(self, uid: Optional[int]) -> Optional[Credential]:
        row = self._rows.get(uid) if uid is not None else None
        return replace(row) if row is not None else None

    async def find_by_credential_id(self, credential_id: bytes) -> Optional[Credential]:
        return self._copy(self._by_credential_id.get(bytes(credential_id)))

    async def find_all_for_user(self, user_ref: int, *, include_revoked: bool = True) -> List[Credential]:
        rows = [
            replace(c) for c in self._rows.values()
            if c.user_ref == user_ref and (include_revoked or not c.is_revoked)
        ]
        rows.sort(key=lambda c: (c.created_at, c.uid or 0))
        return rows

    async def find_by_uid(self, uid: int) -> Optional[Credential]:
        return self._copy(uid)

    async def save(self, credential: Credential) -> Credential:
        async with self._lock:
            if credential.uid is None:
                key = bytes(credential.credential_id)
                if key in self._by_credential_id:
                    raise DuplicateCredentialError(message="credential id already registered")
                stored = replace(credential, uid=self._next_uid, label=sanitize_label(credential.label))
                self._next_uid += 1
                self._rows[stored.uid] = stored
                self._by_credential_id[key] = stored.uid
                return replace(stored)

            current = self._rows.get(credential.uid)
            if current is None:
                raise KeyError(credential.uid)
            stored = replace(
                credential,
                credential_id=current.credential_id,
                created_at=current.created_at,
                revoked_at=current.revoked_at or credential.revoked_at,
                revoked_by=current.revoked_by if current.is_revoked else credential.revoked_by,
                label=sanitize_label(credential.label),
            )
            self._rows[stored.uid] = stored
            return replace(stored)

    async def update_usage(self, uid: int, *, expected_sign_count: int, new_sign_count: int, used_at: datetime) -> bool:
        async with self._lock:
            row = self._rows.get(uid)
            if row is None or row.is_revoked or row.sign_count != expected_sign_count:
                return False
            row.sign_count = new_sign_count
            row.last_used_at = used_at
            return True

    async def flag_for_review(self, uid: int, at: datetime) -> None:
        async with self._lock:
            row = self._rows.get(uid)
            if row is not None and row.flagged_at is None:
                row.flagged_at = at

    async def rename(self, uid: int, label: str) -> None:
        async with self._lock:
            row = self._rows.get(uid)
            if row is not None:
                row.label = sanitize_label(label)

    async def revoke(self, uid: int, actor_ref: Optional[int], *, at: Optional[datetime] = None) -> None:
        async with self._lock:
            row = self._rows.get(uid)
            if row is None or row.is_revoked:
                return
            row.revoked_at = at or utcnow()
            row.revoked_by = actor_ref

    async def revoke_unless_last(
        self, uid: int, user_ref: int, actor_ref: Optional[int], *, at: Optional[datetime] = None
    ) -> bool:
        async with self._lock:
            row = self._rows.get(uid)
            if row is None or row.user_ref != user_ref or row.is_revoked:
                return True
            if sum(1 for c in self._rows.values() if c.user_ref == user_ref and not c.is_revoked) <= 1:
                return False
            row.revoked_at = at or utcnow()
            row.revoked_by = actor_ref
            return True

    async def count_active_for_user(self, user_ref: int) -> int:
        return sum(1 for c in self._rows.values() if c.user_ref == user_ref and not c.is_revoked)


# ─────────────────────────────────────────────────────────────
# SQLAlchemy
# ─────────────────────────────────────────────────────────────
def _to_domain(row: PasskeyCredential) -> Credential:
    return Credential(
        uid=row.id,
        user_ref=row.user_ref,
        credential_id=b64url_decode(row.credential_id),
        public_key=bytes(row.public_key),
        algorithm=row.algorithm,
        sign_count=row.sign_count,
        user_handle=row.user_handle or "",
        aaguid=row.aaguid or "",
        transports=tuple(t for t in (row.transports or "").split(",") if t),
        label=row.label,
        created_at=as_utc(row.created_at),
        last_used_at=as_utc(row.last_used_at),
        revoked_at=as_utc(row.revoked_at),
        revoked_by=row.revoked_by,
        flagged_at=as_utc(row.flagged_at),
    )


class SqlCredentialRepository(CredentialRepositoryProtocol):
    """
    `passkey_credential` table access.

    Each call runs in its own short transaction. SQLAlchemy errors surface as
    `InfrastructureError` (except the unique violation on insert, which is a
    `DuplicateCredentialError`).
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with transactional_async_session(self._session_maker) as session:
                yield session
        except (DuplicateCredentialError, KeyError):
            raise
        except SQLAlchemyError as exc:
            logger.opt(exception=exc).error("[Passkeys] credential repository failure")
            raise InfrastructureError(message="credential store unavailable") from exc

    async def find_by_credential_id(self, credential_id: bytes) -> Optional[Credential]:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(PasskeyCredential).where(PasskeyCredential.credential_id == b64url(credential_id))
                )
            ).scalar_one_or_none()
            return _to_domain(row) if row else None

    async def find_all_for_user(self, user_ref: int, *, include_revoked: bool = True) -> List[Credential]:
        stmt = select(PasskeyCredential).where(PasskeyCredential.user_ref == user_ref)
        if not include_revoked:
            stmt = stmt.where(PasskeyCredential.revoked_at.is_(None))
        stmt = stmt.order_by(PasskeyCredential.created_at, PasskeyCredential.id)
        async with self._session() as session:
            return [_to_domain(r) for r in (await session.execute(stmt)).scalars().all()]

    async def find_by_uid(self, uid: int) -> Optional[Credential]:
        async with self._session() as session:
            row = await session.get(PasskeyCredential, uid)
            return _to_domain(row) if row else None

    async def save(self, credential: Credential) -> Credential:
        if credential.uid is None:
            return await self._insert(credential)
        async with self._session() as session:
            row = await session.get(PasskeyCredential, credential.uid)
            if row is None:
                raise KeyError(credential.uid)
            row.public_key = credential.public_key
            row.algorithm = credential.algorithm
            row.sign_count = credential.sign_count
            row.user_handle = credential.user_handle
            row.aaguid = credential.aaguid
            row.transports = ",".join(credential.transports) or None
            row.label = sanitize_label(credential.label)
            row.last_used_at = credential.last_used_at
            row.flagged_at = row.flagged_at or credential.flagged_at
            if row.revoked_at is None and credential.revoked_at is not None:
                row.revoked_at = credential.revoked_at
                row.revoked_by = credential.revoked_by
            await session.flush()
            return _to_domain(row)

    async def _insert(self, credential: Credential) -> Credential:
        row = PasskeyCredential(
            user_ref=credential.user_ref,
            credential_id=b64url(credential.credential_id),
            public_key=credential.public_key,
            algorithm=credential.algorithm,
            sign_count=credential.sign_count,
            user_handle=credential.user_handle,
            aaguid=credential.aaguid,
            transports=",".join(credential.transports) or None,
            label=sanitize_label(credential.label),
            created_at=credential.created_at,
            last_used_at=credential.last_used_at,
        )
        try:
            async with transactional_async_session(self._session_maker) as session:
                session.add(row)
                await session.flush()
                stored = _to_domain(row)
        except IntegrityError as exc:
            raise DuplicateCredentialError(message="credential id already registered") from exc
        except SQLAlchemyError as exc:
            logger.opt(exception=exc).error("[Passkeys] credential insert failed")
            raise InfrastructureError(message="credential store unavailable") from exc
        return stored

    async def update_usage(self, uid: int, *, expected_sign_count: int, new_sign_count: int, used_at: datetime) -> bool:
        stmt = (
            update(PasskeyCredential)
            .where(
                PasskeyCredential.id == uid,
                PasskeyCredential.sign_count == expected_sign_count,
                PasskeyCredential.revoked_at.is_(None),
            )
            .values(sign_count=new_sign_count, last_used_at=used_at)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def flag_for_review(self, uid: int, at: datetime) -> None:
        stmt = (
            update(PasskeyCredential)
            .where(PasskeyCredential.id == uid, PasskeyCredential.flagged_at.is_(None))
            .values(flagged_at=at)
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def rename(self, uid: int, label: str) -> None:
        stmt = update(PasskeyCredential).where(PasskeyCredential.id == uid).values(label=sanitize_label(label))
        async with self._session() as session:
            await session.execute(stmt)

    async def revoke(self, uid: int, actor_ref: Optional[int], *, at: Optional[datetime] = None) -> None:
        # first revocation wins; later calls match no row
        stmt = (
            update(PasskeyCredential)
            .where(PasskeyCredential.id == uid, PasskeyCredential.revoked_at.is_(None))
            .values(revoked_at=at or utcnow(), revoked_by=actor_ref)
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def revoke_unless_last(
        self, uid: int, user_ref: int, actor_ref: Optional[int], *, at: Optional[datetime] = None
    ) -> bool:
        # row locks on every active credential of the user serialize concurrent removals
        active = (
            select(PasskeyCredential.id)
            .where(PasskeyCredential.user_ref == user_ref, PasskeyCredential.revoked_at.is_(None))
            .with_for_update()
        )
        async with self._session() as session:
            ids = set((await session.execute(active)).scalars().all())
            if uid not in ids:
                return True
            if len(ids) <= 1:
                return False
            await session.execute(
                update(PasskeyCredential)
                .where(PasskeyCredential.id == uid, PasskeyCredential.revoked_at.is_(None))
                .values(revoked_at=at or utcnow(), revoked_by=actor_ref)
            )
            return True

    async def count_active_for_user(self, user_ref: int) -> int:
        stmt = (
            select(func.count())
            .select_from(PasskeyCredential)
            .where(PasskeyCredential.user_ref == user_ref, PasskeyCredential.revoked_at.is_(None))
        )
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())


__all__ = [
    "CredentialRepositoryProtocol",
    "MemoryCredentialRepository",
    "SqlCredentialRepository",
]
