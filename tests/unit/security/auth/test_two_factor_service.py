import threading
from types import SimpleNamespace
from typing import Any, Dict

import pytest

import campus_auth.security.auth.second_method.totp as totp_mod
from campus_auth.config import Settings
from campus_auth.security.accounts import AccountRecord, InMemoryAccountStore
from campus_auth.security.audit import AuditAction, AuditLogger, AuditQuery, ClientInfo
from campus_auth.security.auth.password import PasswordHasher
from campus_auth.security.auth.rate_limiter import RateLimiter
from campus_auth.security.auth.roles import Role
from campus_auth.security.auth.second_method.code import verify_backup_code
from campus_auth.security.auth.second_method.totp import generate_code
from campus_auth.security.auth.two_factor_service import (
    AccountNotFound,
    InvalidPassword,
    MalformedToken,
    RateLimited,
    TotpInvalidCode,
    TotpSecretMissing,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorService,
    TwoFactorState,
)

T0 = 30 * 56_666_666 + 3
PASSWORD = "correct horse"


class Clock:
    def __init__(self, t: float) -> None:
        self.t = t

    def step(self) -> int:
        return int(self.t // 30)

    def advance(self, seconds: float = 30) -> None:
        self.t += seconds


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> Clock:
    c = Clock(T0)
    monkeypatch.setattr(totp_mod, "time", SimpleNamespace(time=lambda: c.t))
    return c


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, pepper=b"")


@pytest.fixture
def store(hasher: PasswordHasher) -> InMemoryAccountStore:
    s = InMemoryAccountStore()
    s.put(
        AccountRecord(
            user_id="u1",
            email="learner@campus.test",
            password_hash=hasher.hash_password(PASSWORD),
        )
    )
    s.put(AccountRecord(user_id="nopw", email="nopw@campus.test"))
    return s


def make_service(store: InMemoryAccountStore, hasher: PasswordHasher, **kwargs: Any) -> TwoFactorService:
    kwargs.setdefault("rate_limiter", RateLimiter(configs={}))
    return TwoFactorService(
        store,
        audit=AuditLogger(),
        hasher=hasher,
        settings=Settings(secret="svc-secret", issuer="Campus", backup_code_count=4),
        **kwargs,
    )


@pytest.fixture
def service(store: InMemoryAccountStore, hasher: PasswordHasher) -> TwoFactorService:
    return make_service(store, hasher)


def enable_user(service: TwoFactorService, clock: Clock, user_id: str = "u1") -> Dict[str, Any]:
    setup = service.begin_setup(user_id)
    service.enable(user_id, generate_code(setup.secret, clock.step()))
    return {"secret": setup.secret, "codes": setup.backup_codes}


def actions(service: TwoFactorService, user_id: str = "u1") -> list:
    page = service.audit.query(AuditQuery(user_id=user_id), actor_role=Role.ADMIN)
    return [r.action for r in reversed(page.records)]


def test_begin_setup_returns_enrollment_material(service: TwoFactorService, store) -> None:
    assert service.get_status("u1") is TwoFactorState.DISABLED
    setup = service.begin_setup("u1")

    assert len(setup.secret) == 20
    assert len(setup.backup_codes) == 4
    assert setup.otpauth_url.startswith("otpauth://totp/Campus:learner%40campus.test?")
    assert f"secret={setup.secret}" in setup.otpauth_url
    assert setup.qr_code_url.startswith("https://api.qrserver.com/v1/create-qr-code/?size=200x200")
    assert "secret" not in repr(setup)

    record = store.get("u1")
    assert record.two_factor_secret == setup.secret
    assert record.two_factor_enabled is False
    assert len(record.backup_code_hashes) == 4
    assert not set(setup.backup_codes) & set(record.backup_code_hashes)
    assert service.get_status("u1") is TwoFactorState.PENDING


def test_begin_setup_again_replaces_pending_secret(service: TwoFactorService) -> None:
    first = service.begin_setup("u1")
    second = service.begin_setup("u1")
    assert first.secret != second.secret


def test_render_setup_qr(service: TwoFactorService) -> None:
    png = service.render_setup_qr(service.begin_setup("u1"))
    assert png.startswith(b"\x89PNG")


def test_enable_requires_setup(service: TwoFactorService, clock: Clock) -> None:
    with pytest.raises(TotpSecretMissing):
        service.enable("u1", "123456")


@pytest.mark.parametrize("token", ["12345", "1234567", 123456, None])
def test_enable_rejects_malformed_token(service: TwoFactorService, token: Any) -> None:
    service.begin_setup("u1")
    with pytest.raises(MalformedToken):
        service.enable("u1", token)


def test_enable_wrong_code(service: TwoFactorService, clock: Clock) -> None:
    setup = service.begin_setup("u1")
    with pytest.raises(TotpInvalidCode):
        service.enable("u1", generate_code(setup.secret, clock.step() + 5))
    assert service.get_status("u1") is TwoFactorState.PENDING
    assert actions(service) == [AuditAction.TWO_FACTOR_FAILED]


def test_enable_then_already_enabled(service: TwoFactorService, clock: Clock, store) -> None:
    enable_user(service, clock)
    assert service.get_status("u1") is TwoFactorState.ENABLED
    assert store.get("u1").last_totp_counter == clock.step()
    assert actions(service) == [AuditAction.TWO_FACTOR_ENABLED]

    with pytest.raises(TwoFactorAlreadyEnabled):
        service.begin_setup("u1")
    with pytest.raises(TwoFactorAlreadyEnabled):
        service.enable("u1", "123456")


def test_unknown_user(service: TwoFactorService) -> None:
    with pytest.raises(AccountNotFound) as exc_info:
        service.begin_setup("ghost")
    assert exc_info.value.status_code == 404
    with pytest.raises(AccountNotFound):
        service.verify("ghost", "123456")


def test_verify_requires_enabled(service: TwoFactorService) -> None:
    service.begin_setup("u1")
    with pytest.raises(TwoFactorNotEnabled):
        service.verify("u1", "123456")
    with pytest.raises(MalformedToken):
        service.verify("u1", "")


@pytest.mark.parametrize("token", ["\u0661\u0662\u0663\u0664\u0665\u0666", "12345\u00b2"])
def test_non_ascii_digit_tokens_are_rejected(
    service: TwoFactorService, clock: Clock, token: str
) -> None:
    setup = service.begin_setup("u1")
    with pytest.raises(TotpInvalidCode):
        service.enable("u1", token)
    service.enable("u1", generate_code(setup.secret, clock.step()))
    assert service.verify("u1", token) is False
    with pytest.raises(TotpInvalidCode):
        service.disable("u1", PASSWORD, token)
    with pytest.raises(TotpInvalidCode):
        service.regenerate_backup_codes("u1", token)


def test_verify_totp_rejects_replay(service: TwoFactorService, clock: Clock) -> None:
    secret = enable_user(service, clock)["secret"]
    assert service.verify("u1", generate_code(secret, clock.step())) is False

    clock.advance()
    code = generate_code(secret, clock.step())
    assert service.verify("u1", code) is True
    assert service.verify("u1", code) is False
    assert actions(service)[-3:] == [
        AuditAction.TWO_FACTOR_FAILED,
        AuditAction.TWO_FACTOR_VERIFIED,
        AuditAction.TWO_FACTOR_FAILED,
    ]


def test_verify_backup_code_is_single_use(service: TwoFactorService, clock: Clock) -> None:
    codes = enable_user(service, clock)["codes"]
    assert service.remaining_backup_codes("u1") == 4

    assert service.verify("u1", codes[2].lower(), is_backup_code=True) is True
    assert service.remaining_backup_codes("u1") == 3
    assert service.verify("u1", codes[2], is_backup_code=True) is False
    assert service.verify("u1", "0000-0000", is_backup_code=True) is False
    assert service.remaining_backup_codes("u1") == 3


def test_backup_code_concurrent_use(service: TwoFactorService, clock: Clock) -> None:
    code = enable_user(service, clock)["codes"][0]
    results: list = []

    def attempt() -> None:
        results.append(service.verify("u1", code, is_backup_code=True))

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert service.remaining_backup_codes("u1") == 3


def test_disable(service: TwoFactorService, clock: Clock, store) -> None:
    enabled = enable_user(service, clock)
    clock.advance()
    code = generate_code(enabled["secret"], clock.step())

    with pytest.raises(InvalidPassword):
        service.disable("u1", "wrong horse", code)
    with pytest.raises(MalformedToken):
        service.disable("u1", PASSWORD, "")

    service.disable("u1", PASSWORD, code, client={"X-Forwarded-For": "203.0.113.9"})
    record = store.get("u1")
    assert service.get_status("u1") is TwoFactorState.DISABLED
    assert record.two_factor_secret is None
    assert record.backup_code_hashes == []
    assert record.last_totp_counter is None

    page = service.audit.query(
        AuditQuery(action=AuditAction.TWO_FACTOR_DISABLED), actor_role=Role.ADMIN
    )
    assert page.total == 1
    assert page.records[0].ip_address == "203.0.113.9"

    with pytest.raises(TwoFactorNotEnabled):
        service.verify("u1", enabled["codes"][0], is_backup_code=True)
    with pytest.raises(TwoFactorNotEnabled):
        service.disable("u1", PASSWORD, code)


def test_disable_wrong_code(service: TwoFactorService, clock: Clock) -> None:
    secret = enable_user(service, clock)["secret"]
    with pytest.raises(TotpInvalidCode):
        service.disable("u1", PASSWORD, generate_code(secret, clock.step() + 5))
    assert service.get_status("u1") is TwoFactorState.ENABLED


def test_disable_without_password_hash(service: TwoFactorService, clock: Clock) -> None:
    secret = enable_user(service, clock, user_id="nopw")["secret"]
    clock.advance()
    with pytest.raises(InvalidPassword):
        service.disable("nopw", PASSWORD, generate_code(secret, clock.step()))


def test_regenerate_backup_codes(service: TwoFactorService, clock: Clock) -> None:
    enabled = enable_user(service, clock)
    clock.advance()
    new_codes = service.regenerate_backup_codes(
        "u1", generate_code(enabled["secret"], clock.step())
    )
    assert len(new_codes) == 4
    assert not set(new_codes) & set(enabled["codes"])
    assert service.verify("u1", enabled["codes"][0], is_backup_code=True) is False
    assert service.verify("u1", new_codes[0], is_backup_code=True) is True
    assert AuditAction.TWO_FACTOR_BACKUP_CODES_REGENERATED in actions(service)

    with pytest.raises(TotpInvalidCode):
        service.regenerate_backup_codes("u1", generate_code(enabled["secret"], clock.step()))


def test_rate_limited_verify(store, hasher: PasswordHasher, clock: Clock) -> None:
    service = make_service(store, hasher, rate_limiter=RateLimiter())
    enable_user(service, clock)
    client = ClientInfo(ip_address="198.51.100.1")
    for _ in range(5):
        service.verify("u1", "000000", client=client)
    with pytest.raises(RateLimited) as exc_info:
        service.verify("u1", "000000", client=client)
    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after >= 1

    other = ClientInfo(ip_address="198.51.100.2")
    assert service.verify("u1", "0000-0000", is_backup_code=True, client=other) is False


def test_backup_codes_hashed_with_application_secret(service: TwoFactorService, store) -> None:
    codes = service.begin_setup("u1").backup_codes
    hashes = store.get("u1").backup_code_hashes
    assert verify_backup_code(codes[0], hashes, "svc-secret").valid is True
    assert verify_backup_code(codes[0], hashes, "other-secret").valid is False
