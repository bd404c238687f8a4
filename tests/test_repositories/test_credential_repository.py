# tests/test_repositories/test_credential_repository.py

from datetime import datetime, timedelta, timezone

import pytest

from passkeys.core.exceptions import DuplicateCredentialError, ErrorKind
from passkeys.db.base import Base
from passkeys.db.session import build_async_engine, build_session_maker
from passkeys.domain import DEFAULT_LABEL, Credential
from passkeys.repositories.credential import MemoryCredentialRepository, SqlCredentialRepository

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
async def repo(request, tmp_path):
    if request.param == "memory":
        yield MemoryCredentialRepository()
        return

    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'passkeys.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield SqlCredentialRepository(build_session_maker(engine))
    finally:
        await engine.dispose()


def _credential(user_ref=1, cred_id=b"cred-1", **kwargs):
    values = dict(
        user_ref=user_ref,
        credential_id=cred_id,
        public_key=b"\xa5\x01\x02",
        algorithm=-7,
        user_handle="aGFuZGxl",
        aaguid="00000000-0000-0000-0000-000000000000",
        transports=("usb", "nfc"),
        label="YubiKey",
        created_at=T0,
    )
    values.update(kwargs)
    return Credential(**values)


# ------------------------ save / find ----------------------------------------

@pytest.mark.anyio
async def test_save__assigns_uid_and_roundtrips(repo):
    saved = await repo.save(_credential())
    assert saved.uid is not None

    found = await repo.find_by_credential_id(b"cred-1")
    assert found.uid == saved.uid
    assert found.user_ref == 1
    assert found.public_key == b"\xa5\x01\x02"
    assert found.transports == ("usb", "nfc")
    assert found.label == "YubiKey"
    assert found.created_at == T0
    assert found.is_revoked is False
    assert (await repo.find_by_uid(saved.uid)).credential_id == b"cred-1"


@pytest.mark.anyio
async def test_save__duplicate_credential_id(repo):
    await repo.save(_credential(user_ref=1))
    with pytest.raises(DuplicateCredentialError) as ei:
        await repo.save(_credential(user_ref=2))
    assert ei.value.kind is ErrorKind.CREDENTIAL_DUPLICATE
    assert await repo.find_all_for_user(2) == []


@pytest.mark.anyio
async def test_save__label_sanitized(repo):
    saved = await repo.save(_credential(label="   "))
    assert saved.label == DEFAULT_LABEL


@pytest.mark.anyio
async def test_find__missing(repo):
    assert await repo.find_by_credential_id(b"nope") is None
    assert await repo.find_by_uid(12345) is None
    assert await repo.find_all_for_user(7) == []


@pytest.mark.anyio
async def test_find_all_for_user__ordering_and_revoked_filter(repo):
    a = await repo.save(_credential(cred_id=b"a", created_at=T0 + timedelta(minutes=2)))
    b = await repo.save(_credential(cred_id=b"b", created_at=T0))
    c = await repo.save(_credential(cred_id=b"c", created_at=T0 + timedelta(minutes=1)))
    await repo.save(_credential(user_ref=2, cred_id=b"other"))
    await repo.revoke(c.uid, 1)

    assert [x.uid for x in await repo.find_all_for_user(1)] == [b.uid, c.uid, a.uid]
    assert [x.uid for x in await repo.find_all_for_user(1, include_revoked=False)] == [b.uid, a.uid]
    assert await repo.count_active_for_user(1) == 2


# ------------------------ usage / counter ------------------------------------

@pytest.mark.anyio
async def test_update_usage__compare_and_set(repo):
    saved = await repo.save(_credential(sign_count=3))

    assert await repo.update_usage(saved.uid, expected_sign_count=3, new_sign_count=4, used_at=T0) is True
    assert await repo.update_usage(saved.uid, expected_sign_count=3, new_sign_count=5, used_at=T0) is False

    stored = await repo.find_by_uid(saved.uid)
    assert stored.sign_count == 4
    assert stored.last_used_at == T0


@pytest.mark.anyio
async def test_update_usage__refused_for_revoked(repo):
    saved = await repo.save(_credential())
    await repo.revoke(saved.uid, None)
    assert await repo.update_usage(saved.uid, expected_sign_count=0, new_sign_count=1, used_at=T0) is False


@pytest.mark.anyio
async def test_flag_for_review__first_flag_kept(repo):
    saved = await repo.save(_credential())
    await repo.flag_for_review(saved.uid, T0)
    await repo.flag_for_review(saved.uid, T0 + timedelta(days=1))
    assert (await repo.find_by_uid(saved.uid)).flagged_at == T0


# ------------------------ rename / revoke ------------------------------------

@pytest.mark.anyio
async def test_rename__sanitized(repo):
    saved = await repo.save(_credential())
    await repo.rename(saved.uid, "  Work \n phone  ")
    assert (await repo.find_by_uid(saved.uid)).label == "Work phone"
    await repo.rename(saved.uid, "x" * 300)
    assert len((await repo.find_by_uid(saved.uid)).label) == 128


@pytest.mark.anyio
async def test_revoke__first_actor_wins(repo):
    saved = await repo.save(_credential())
    await repo.revoke(saved.uid, 99, at=T0)
    await repo.revoke(saved.uid, 1, at=T0 + timedelta(hours=1))

    stored = await repo.find_by_uid(saved.uid)
    assert stored.revoked_at == T0
    assert stored.revoked_by == 99
    assert await repo.count_active_for_user(1) == 0


@pytest.mark.anyio
async def test_save__never_clears_revocation(repo):
    saved = await repo.save(_credential())
    await repo.revoke(saved.uid, 99, at=T0)

    stale = await repo.find_by_uid(saved.uid)
    stale.revoked_at = None
    stale.revoked_by = None
    stale.label = "Renamed"
    await repo.save(stale)

    stored = await repo.find_by_uid(saved.uid)
    assert stored.revoked_at == T0
    assert stored.revoked_by == 99
    assert stored.label == "Renamed"


@pytest.mark.anyio
async def test_revoke_unless_last__keeps_final_active_credential(repo):
    first = await repo.save(_credential(cred_id=b"cred-1"))
    second = await repo.save(_credential(cred_id=b"cred-2"))
    await repo.save(_credential(user_ref=2, cred_id=b"cred-other"))

    assert await repo.revoke_unless_last(first.uid, 1, 1, at=T0) is True
    assert await repo.revoke_unless_last(second.uid, 1, 1, at=T0) is False

    assert (await repo.find_by_uid(first.uid)).revoked_by == 1
    assert not (await repo.find_by_uid(second.uid)).is_revoked
    assert await repo.count_active_for_user(1) == 1


@pytest.mark.anyio
async def test_revoke_unless_last__already_revoked_is_noop(repo):
    first = await repo.save(_credential(cred_id=b"cred-1"))
    await repo.save(_credential(cred_id=b"cred-2"))
    await repo.revoke(first.uid, 99, at=T0)

    assert await repo.revoke_unless_last(first.uid, 1, 1) is True
    assert (await repo.find_by_uid(first.uid)).revoked_by == 99
    assert await repo.count_active_for_user(1) == 1
