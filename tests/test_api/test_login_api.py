# tests/test_api/test_login_api.py

import pytest

from passkeys.core.exceptions import InfrastructureError
from tests.fixtures.app import make_policy
from tests.utils.api import API, login, login_options
from tests.utils.authenticator import SoftwareAuthenticator

GENERIC = "Authentication failed"


@pytest.mark.anyio
async def test_login__full_ceremony(async_client, enroll, alice, authenticator, credential_repo):
    cred = await enroll(alice, authenticator)

    r = await login_options(async_client, "Alice")
    assert r.status_code == 200, r.text
    body = r.json()
    assert r.headers["cache-control"] == "no-store"
    assert [d["id"] for d in body["options"]["allowCredentials"]] == [cred.credential_id_b64]
    assert body["challengeToken"]

    assertion = authenticator.get(body["options"])
    r = await async_client.post(
        f"{API}/login/verify",
        json={"username": "alice", "assertion": assertion, "challengeToken": body["challengeToken"]},
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"status": "ok", "userRef": alice.user_ref}
    assert r.headers["cache-control"] == "no-store"
    assert (await credential_repo.find_by_uid(cred.uid)).sign_count == 1


@pytest.mark.anyio
async def test_login__username_required_without_discoverable(async_client):
    r = await login_options(async_client, "   ")
    assert r.status_code == 400
    assert r.json()["detail"] == "Username is required"


@pytest.mark.anyio
async def test_login__discoverable(async_client, services, enroll, alice, authenticator):
    services.policy = make_policy(discoverable_login=True)
    await enroll(alice, authenticator)

    r = await login_options(async_client, None)
    assert r.status_code == 200, r.text
    assert r.json()["options"]["allowCredentials"] == []

    r = await login(async_client, authenticator, None)
    assert r.status_code == 200, r.text
    assert r.json()["userRef"] == alice.user_ref


@pytest.mark.anyio
async def test_login__unknown_and_credential_less_users_look_alike(async_client, bob):
    unknown = await login_options(async_client, "nobody")
    empty = await login_options(async_client, bob.username)

    assert unknown.status_code == empty.status_code == 401
    assert unknown.json()["detail"] == empty.json()["detail"] == GENERIC
    assert unknown.headers["cache-control"] == "no-store"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "get_kwargs",
    [
        {"tamper_signature": True},
        {"origin": "https://evil.test"},
        {"type_": "webauthn.create"},
    ],
)
async def test_login__verification_failures_are_generic(async_client, enroll, alice, authenticator, get_kwargs):
    await enroll(alice, authenticator)
    r = await login(async_client, authenticator, **get_kwargs)
    assert r.status_code == 401
    assert r.json()["detail"] == GENERIC
    assert r.headers["cache-control"] == "no-store"


@pytest.mark.anyio
async def test_login__foreign_credential_is_generic_failure(async_client, enroll, alice, bob, authenticator):
    await enroll(alice, authenticator)
    bobs_device = SoftwareAuthenticator(origin=authenticator.origin)
    await enroll(bob, bobs_device)

    r = await login(async_client, bobs_device, "alice")
    assert r.status_code == 401
    assert r.json()["detail"] == GENERIC


@pytest.mark.anyio
async def test_login__replayed_token(async_client, enroll, alice, authenticator):
    await enroll(alice, authenticator)
    body = (await login_options(async_client, "alice")).json()
    payload = {"username": "alice", "assertion": authenticator.get(body["options"]), "challengeToken": body["challengeToken"]}

    assert (await async_client.post(f"{API}/login/verify", json=payload)).status_code == 200
    r = await async_client.post(f"{API}/login/verify", json=payload)
    assert r.status_code == 401
    assert r.json()["detail"] == GENERIC


@pytest.mark.anyio
async def test_login__lockout_answers_429(async_client, enroll, alice, authenticator):
    await enroll(alice, authenticator)
    for _ in range(3):
        r = await login(async_client, authenticator, tamper_signature=True)
        assert r.status_code == 401

    r = await login_options(async_client, "alice")
    assert r.status_code == 429
    assert r.json()["detail"] == "Too many requests"
    assert r.headers["retry-after"] == "900"

    # a different client address is still served
    r = await login_options(async_client, "alice", headers={"X-Forwarded-For": "198.51.100.1"})
    assert r.status_code == 200


@pytest.mark.anyio
async def test_login__lockout_on_verify(async_client, services, enroll, alice, authenticator):
    await enroll(alice, authenticator)
    body = (await login_options(async_client, "alice")).json()
    for _ in range(3):
        await services.lockout.record_failure("alice", "127.0.0.1")

    r = await async_client.post(
        f"{API}/login/verify",
        json={"username": "alice", "assertion": authenticator.get(body["options"]), "challengeToken": body["challengeToken"]},
    )
    assert r.status_code == 429
    assert int(r.headers["retry-after"]) > 0


@pytest.mark.anyio
async def test_login__store_outage_is_503(async_client, services, enroll, alice, authenticator, monkeypatch):
    await enroll(alice, authenticator)

    async def _down(*args, **kwargs):
        raise InfrastructureError(message="challenge store unavailable")

    monkeypatch.setattr(services.challenges, "issue", _down)
    r = await login_options(async_client, "alice")
    assert r.status_code == 503
    assert r.headers["retry-after"] == "5"
    assert await services.lockout.failure_count("alice", "127.0.0.1") == 0


@pytest.mark.anyio
async def test_login__verify_outage_is_503_and_not_counted(async_client, services, enroll, alice, authenticator, monkeypatch):
    await enroll(alice, authenticator)
    body = (await login_options(async_client, "alice")).json()

    async def _down(*args, **kwargs):
        raise InfrastructureError(message="challenge store unavailable")

    monkeypatch.setattr(services.challenges, "consume", _down)
    r = await async_client.post(
        f"{API}/login/verify",
        json={"username": "alice", "assertion": authenticator.get(body["options"]), "challengeToken": body["challengeToken"]},
    )
    assert r.status_code == 503
    assert await services.lockout.failure_count("alice", "127.0.0.1") == 0


@pytest.mark.anyio
async def test_login__malformed_body_is_422_without_values(async_client):
    r = await async_client.post(f"{API}/login/verify", json={"username": "alice", "challengeToken": "secret-token"})
    assert r.status_code == 422
    assert r.headers["content-type"].startswith("application/problem+json")
    assert "secret-token" not in r.text


@pytest.mark.anyio
async def test_login__rate_limited_per_client(ratelimit_on, async_client, services):
    limit = services.policy.rate_limit_max_attempts
    for _ in range(limit):
        r = await login_options(async_client, None)
        assert r.status_code == 400

    r = await login_options(async_client, None)
    assert r.status_code == 429
