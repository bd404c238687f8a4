# tests/test_core/test_policy.py

import pytest

from passkeys.core.config import Settings
from passkeys.core.policy import RelyingPartyPolicy, parse_algorithms


# ------------------------ normalization --------------------------------------

@pytest.mark.parametrize("raw", ["bogus", "", None, "REQUIRED ", "sometimes"])
def test_policy__unknown_user_verification_falls_back_to_required(raw):
    policy = RelyingPartyPolicy(user_verification=raw)
    assert policy.user_verification == "required"
    assert policy.user_verification_required is True


@pytest.mark.parametrize("value", ["preferred", "discouraged"])
def test_policy__known_user_verification_kept(value):
    policy = RelyingPartyPolicy(user_verification=value.upper())
    assert policy.user_verification == value
    assert policy.user_verification_required is False


def test_policy__algorithms_keep_declaration_order():
    policy = RelyingPartyPolicy(allowed_algorithms=" RS256, ES256 ,EdDSA")
    assert policy.allowed_algorithms == ("RS256", "ES256", "EdDSA")
    assert policy.allowed_algorithm_ids == (-257, -7, -8)


def test_policy__unknown_algorithm_names_skipped():
    policy = RelyingPartyPolicy(allowed_algorithms=("ES256", "ROT13", "ES256"))
    assert policy.allowed_algorithm_ids == (-7,)


def test_parse_algorithms__empty_inputs():
    assert parse_algorithms(None) == ()
    assert parse_algorithms(" , ") == ()


def test_policy__is_immutable():
    policy = RelyingPartyPolicy()
    with pytest.raises(Exception):
        policy.rp_id = "evil.example"  # type: ignore[misc]


# ------------------------ request-derived rp id / origin ---------------------

def test_for_request__fills_empty_values_from_host():
    policy = RelyingPartyPolicy().for_request("Login.Example.COM", "https", 443)
    assert policy.rp_id == "login.example.com"
    assert policy.origin == "https://login.example.com"


def test_for_request__keeps_non_default_port_in_origin_only():
    policy = RelyingPartyPolicy().for_request("localhost", "http", 8000)
    assert policy.rp_id == "localhost"
    assert policy.origin == "http://localhost:8000"


def test_for_request__configured_values_win():
    policy = RelyingPartyPolicy(rp_id="example.com", origin="https://example.com/")
    derived = policy.for_request("attacker.test", "https", None)
    assert derived is policy
    assert derived.origin == "https://example.com"


# ------------------------ settings → policy ----------------------------------

def test_from_settings__maps_every_knob():
    settings = Settings(
        PASSKEY_RP_ID="Example.com",
        PASSKEY_ORIGIN="https://example.com/",
        PASSKEY_CHALLENGE_TTL_SECONDS=60,
        PASSKEY_USER_VERIFICATION="preferred",
        PASSKEY_DISCOVERABLE_LOGIN=True,
        PASSKEY_DISABLE_PASSWORD_LOGIN=True,
        PASSKEY_ALLOWED_ALGORITHMS="ES256,RS256",
        PASSKEY_LOCKOUT_THRESHOLD=7,
        PASSKEY_LOCKOUT_DURATION_SECONDS=60,
        PASSKEY_RATE_LIMIT_MAX_ATTEMPTS=4,
        PASSKEY_RATE_LIMIT_WINDOW_SECONDS=30,
        PASSKEY_USER_HANDLE_SECRET="s3cret",
    )
    policy = RelyingPartyPolicy.from_settings(settings)

    assert policy.rp_id == "example.com"
    assert policy.origin == "https://example.com"
    assert policy.challenge_ttl_seconds == 60
    assert policy.user_verification == "preferred"
    assert policy.discoverable_login is True
    assert policy.disable_password_login is True
    assert policy.allowed_algorithm_ids == (-7, -257)
    assert policy.lockout_threshold == 7
    assert policy.lockout_duration_seconds == 60
    assert policy.rate_limit_max_attempts == 4
    assert policy.rate_limit_window_seconds == 30
    assert policy.user_handle_secret == b"s3cret"


def test_policy__secret_not_in_repr():
    policy = RelyingPartyPolicy(user_handle_secret=b"top-secret")
    assert "top-secret" not in repr(policy)
