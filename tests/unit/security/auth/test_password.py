import pytest

from campus_auth.security.auth.password import (
    InvalidHashFormat,
    PasswordHasher,
    PolicyViolation,
    is_valid_password,
)


def make_hasher(pepper: bytes | None = None) -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, pepper=pepper)


@pytest.fixture(autouse=True)
def _no_env_pepper(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CAMPUS_AUTH_PW_PEPPER", raising=False)


@pytest.mark.parametrize(
    "pw, expect",
    [
        ("password", True),
        ("short", False),
        ("x" * 256, True),
        ("x" * 257, False),
        (None, False),
        (12345678, False),
    ],
)
def test_is_valid_password(pw: object, expect: bool) -> None:
    assert is_valid_password(pw) is expect


def test_hash_and_verify() -> None:
    hasher = make_hasher()
    hashed = hasher.hash_password("correct horse")
    assert hashed.startswith("$argon2id$")
    assert hasher.verify_password("correct horse", hashed) is True
    assert hasher.verify_password("wrong horse", hashed) is False


def test_hash_rejects_policy_violation() -> None:
    with pytest.raises(PolicyViolation):
        make_hasher().hash_password("short")


def test_verify_oversized_or_non_string() -> None:
    hasher = make_hasher()
    hashed = hasher.hash_password("correct horse")
    assert hasher.verify_password("x" * 300, hashed) is False
    assert hasher.verify_password(None, hashed) is False  # type: ignore[arg-type]


def test_verify_malformed_hash() -> None:
    with pytest.raises(InvalidHashFormat):
        make_hasher().verify_password("correct horse", "not-a-hash")


def test_pepper_changes_hash_input() -> None:
    peppered = make_hasher(pepper=b"pepper-1")
    hashed = peppered.hash_password("correct horse")
    assert peppered.verify_password("correct horse", hashed) is True
    assert make_hasher().verify_password("correct horse", hashed) is False
    assert make_hasher(pepper=b"pepper-2").verify_password("correct horse", hashed) is False


def test_pepper_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CAMPUS_AUTH_PW_PEPPER", "env-pepper")
    hasher = make_hasher()
    assert hasher.pepper == b"env-pepper"
    assert hasher.export_policy()["pepper_configured"] is True


def test_needs_rehash_after_cost_change() -> None:
    hashed = make_hasher().hash_password("correct horse")
    assert make_hasher().needs_rehash(hashed) is False
    stronger = PasswordHasher(time_cost=2, memory_cost=8, parallelism=1)
    assert stronger.needs_rehash(hashed) is True


def test_export_policy() -> None:
    policy = make_hasher().export_policy()
    assert policy["algorithm"] == "argon2id"
    assert policy["min_length"] == 8
    assert policy["pepper_configured"] is False
