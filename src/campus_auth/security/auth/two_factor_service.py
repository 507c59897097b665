# -*- coding: utf-8 -*-
"""
Module: campus_auth/security/auth/two_factor_service.py

Account-level two-factor authentication flows:
- Start setup (secret + backup codes + enrollment URI), 2FA still off
- Enable after the first valid code
- Login-time challenge with a TOTP or a single-use backup code
- Disable with password + code
- Regenerate backup codes

Lifecycle: DISABLED -> PENDING -> ENABLED -> DISABLED. Only ENABLED accounts
get login challenges. Attempts on the verify/enable/disable endpoints are
rate-limited per client and every outcome is written to the audit trail.

Reading, checking and writing an account happen under one service lock, so
a backup code cannot be spent twice by concurrent requests.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

from campus_auth.config import Settings, get_settings
from campus_auth.security.accounts import AccountRecord, AccountStore
from campus_auth.security.audit import AuditLogger, ClientInfo
from campus_auth.security.auth.password import InvalidHashFormat, PasswordHasher
from campus_auth.security.auth.rate_limiter import RateLimiter
from campus_auth.security.auth.second_method.code import BackupCodeFactor
from campus_auth.security.auth.second_method.totp import (
    DEFAULT_DIGITS,
    TotpFactor,
    qr_code_url,
    render_qr_png,
)

__all__ = [
    "AccountNotFound",
    "InvalidPassword",
    "MalformedToken",
    "RateLimited",
    "TotpInvalidCode",
    "TotpSecretMissing",
    "TwoFactorAlreadyEnabled",
    "TwoFactorError",
    "TwoFactorNotEnabled",
    "TwoFactorService",
    "TwoFactorSetup",
    "TwoFactorState",
]

_logger = logging.getLogger(__name__)

ENDPOINT_ENABLE = "/api/auth/2fa/enable"
ENDPOINT_VERIFY = "/api/auth/2fa/verify"
ENDPOINT_DISABLE = "/api/auth/2fa/disable"


# ---- Domain Exceptions ----
class TwoFactorError(RuntimeError):
    status_code = 400


class AccountNotFound(TwoFactorError):
    status_code = 404


class TwoFactorAlreadyEnabled(TwoFactorError):
    pass


class TwoFactorNotEnabled(TwoFactorError):
    pass


class TotpSecretMissing(TwoFactorError):
    """Setup was not started, so there is no secret to confirm."""


class TotpInvalidCode(TwoFactorError):
    pass


class InvalidPassword(TwoFactorError):
    status_code = 401


class MalformedToken(TwoFactorError):
    pass


class RateLimited(TwoFactorError):
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Too many attempts, retry in {retry_after} seconds")
        self.retry_after = retry_after


class TwoFactorState(str, Enum):
    DISABLED = "disabled"
    PENDING = "pending"
    ENABLED = "enabled"


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str = field(repr=False)
    backup_codes: List[str] = field(repr=False)
    otpauth_url: str = field(repr=False)
    qr_code_url: str = field(repr=False)


ClientLike = Union[ClientInfo, Mapping[str, str], None]


def _client_info(client: ClientLike) -> ClientInfo:
    if isinstance(client, ClientInfo):
        return client
    return ClientInfo.from_headers(client)


def state_of(record: AccountRecord) -> TwoFactorState:
    if record.two_factor_enabled:
        return TwoFactorState.ENABLED
    if record.two_factor_secret:
        return TwoFactorState.PENDING
    return TwoFactorState.DISABLED


class TwoFactorService:
    """
    Example:
        >>> service = TwoFactorService(store, secret="app-secret")
        >>> setup = service.begin_setup("u1")
        >>> service.enable("u1", current_code(setup.secret))
        >>> service.get_status("u1")
        <TwoFactorState.ENABLED: 'enabled'>
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        audit: Optional[AuditLogger] = None,
        rate_limiter: Optional[RateLimiter] = None,
        hasher: Optional[PasswordHasher] = None,
        settings: Optional[Settings] = None,
        secret: Optional[str] = None,
    ) -> None:
        self.store = store
        self.settings = settings if settings is not None else get_settings()
        self.audit = audit if audit is not None else AuditLogger(
            retention_days=self.settings.audit_retention_days
        )
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.hasher = hasher if hasher is not None else PasswordHasher()
        self._totp = TotpFactor(valid_window=self.settings.valid_window)
        self._codes = BackupCodeFactor(
            secret=secret if secret is not None else self.settings.require_secret()
        )
        self._lock = threading.RLock()

    # ---- Internal helpers ----
    def _load(self, user_id: str) -> AccountRecord:
        record = self.store.get(user_id)
        if record is None:
            raise AccountNotFound("User not found")
        return record

    def _check_rate(self, client: ClientInfo, endpoint: str) -> None:
        identifier = client.ip_address or "unknown"
        result = self.rate_limiter.check(identifier, endpoint)
        if not result.allowed:
            raise RateLimited(max(result.retry_after, 1))

    def _check_totp(self, record: AccountRecord, token: Any) -> Optional[int]:
        """Verify ``token`` for ``record``; returns the new anti-replay counter or None."""
        state = {
            "secret": record.two_factor_secret,
            "last_used_counter": record.last_totp_counter,
        }
        if not self._totp.verify(record.user_id, token, state):
            return None
        return state["last_used_counter"]

    # ---- Public API ----
    def get_status(self, user_id: str) -> TwoFactorState:
        return state_of(self._load(user_id))

    def begin_setup(self, user_id: str) -> TwoFactorSetup:
        """
        Generate and store a new secret and backup codes; 2FA stays off until
        :meth:`enable` confirms a code. Calling again replaces unconfirmed material.

        Raises:
            AccountNotFound, TwoFactorAlreadyEnabled
        """
        with self._lock:
            record = self._load(user_id)
            if record.two_factor_enabled:
                raise TwoFactorAlreadyEnabled("Two-factor authentication is already enabled")

            totp_state = self._totp.setup(
                user_id,
                account=record.email,
                issuer=self.settings.issuer,
                secret_length=self.settings.secret_length,
            )
            codes, code_state = self._codes.setup(user_id, count=self.settings.backup_code_count)
            self.store.put(
                record.with_changes(
                    two_factor_secret=totp_state["secret"],
                    backup_code_hashes=list(code_state["hashes"]),
                    last_totp_counter=None,
                )
            )

        otpauth = self._totp.get_provisioning_uri(totp_state)
        _logger.info("2FA setup started: user=%s", user_id)
        return TwoFactorSetup(
            secret=totp_state["secret"],
            backup_codes=codes,
            otpauth_url=otpauth,
            qr_code_url=qr_code_url(
                otpauth, self.settings.qr_size, self.settings.qr_service_url
            ),
        )

    def render_setup_qr(self, setup: TwoFactorSetup) -> bytes:
        """PNG image of the enrollment URI for apps that cannot use the QR service."""
        return render_qr_png(setup.otpauth_url)

    def enable(self, user_id: str, token: Any, client: ClientLike = None) -> None:
        """
        Confirm setup with the first valid code.

        Raises:
            RateLimited, MalformedToken, AccountNotFound, TwoFactorAlreadyEnabled,
            TotpSecretMissing, TotpInvalidCode
        """
        info = _client_info(client)
        self._check_rate(info, ENDPOINT_ENABLE)
        if not isinstance(token, str) or len(token) != DEFAULT_DIGITS:
            raise MalformedToken("Invalid verification code")

        with self._lock:
            record = self._load(user_id)
            if record.two_factor_enabled:
                raise TwoFactorAlreadyEnabled("Two-factor authentication is already enabled")
            if not record.two_factor_secret:
                raise TotpSecretMissing("Generate a two-factor secret first")

            counter = self._check_totp(record, token)
            if counter is None:
                self.audit.two_factor_verified(user_id, info, success=False)
                raise TotpInvalidCode("Incorrect verification code")

            self.store.put(record.with_changes(two_factor_enabled=True, last_totp_counter=counter))

        self.audit.two_factor_enabled(user_id, info)
        _logger.info("2FA enabled: user=%s", user_id)

    def verify(
        self,
        user_id: str,
        token: Any,
        *,
        is_backup_code: bool = False,
        client: ClientLike = None,
    ) -> bool:
        """
        Login challenge. A backup code is consumed on success.

        Returns:
            True when the code is accepted

        Raises:
            RateLimited, MalformedToken, AccountNotFound, TwoFactorNotEnabled
        """
        info = _client_info(client)
        self._check_rate(info, ENDPOINT_VERIFY)
        if not user_id or not token:
            raise MalformedToken("Missing user or code")

        with self._lock:
            record = self._load(user_id)
            if not record.two_factor_enabled or not record.two_factor_secret:
                raise TwoFactorNotEnabled("Two-factor authentication is not enabled for this user")

            if is_backup_code:
                code_state = {"hashes": list(record.backup_code_hashes)}
                valid = self._codes.verify(user_id, token, code_state)
                if valid:
                    self.store.put(record.with_changes(backup_code_hashes=code_state["hashes"]))
            else:
                counter = self._check_totp(record, token)
                valid = counter is not None
                if valid:
                    self.store.put(record.with_changes(last_totp_counter=counter))

        self.audit.two_factor_verified(user_id, info, success=valid)
        return valid

    def disable(self, user_id: str, password: str, token: Any, client: ClientLike = None) -> None:
        """
        Turn 2FA off; requires the account password and a current code.

        Raises:
            RateLimited, MalformedToken, AccountNotFound, TwoFactorNotEnabled,
            InvalidPassword, TotpSecretMissing, TotpInvalidCode
        """
        info = _client_info(client)
        self._check_rate(info, ENDPOINT_DISABLE)
        if not password or not token:
            raise MalformedToken("Password and two-factor code are required")

        with self._lock:
            record = self._load(user_id)
            if not record.two_factor_enabled:
                raise TwoFactorNotEnabled("Two-factor authentication is not enabled")
            if not self._password_ok(record, password):
                raise InvalidPassword("Incorrect password")
            if not record.two_factor_secret:
                raise TotpSecretMissing("Invalid two-factor configuration")

            if self._check_totp(record, token) is None:
                self.audit.two_factor_verified(user_id, info, success=False)
                raise TotpInvalidCode("Incorrect verification code")

            self.store.put(
                record.with_changes(
                    two_factor_enabled=False,
                    two_factor_secret=None,
                    backup_code_hashes=[],
                    last_totp_counter=None,
                )
            )

        self.audit.two_factor_disabled(user_id, info)
        _logger.warning("2FA disabled: user=%s", user_id)

    def regenerate_backup_codes(
        self, user_id: str, token: Any, client: ClientLike = None
    ) -> List[str]:
        """
        Replace all backup codes after a valid TOTP code; old codes stop working.

        Raises:
            RateLimited, AccountNotFound, TwoFactorNotEnabled, TotpInvalidCode
        """
        info = _client_info(client)
        self._check_rate(info, ENDPOINT_VERIFY)
        with self._lock:
            record = self._load(user_id)
            if not record.two_factor_enabled or not record.two_factor_secret:
                raise TwoFactorNotEnabled("Two-factor authentication is not enabled")
            counter = self._check_totp(record, token)
            if counter is None:
                self.audit.two_factor_verified(user_id, info, success=False)
                raise TotpInvalidCode("Incorrect verification code")
            codes, code_state = self._codes.setup(user_id, count=self.settings.backup_code_count)
            self.store.put(
                record.with_changes(
                    backup_code_hashes=list(code_state["hashes"]), last_totp_counter=counter
                )
            )
        self.audit.backup_codes_regenerated(user_id, info)
        return codes

    def remaining_backup_codes(self, user_id: str) -> int:
        return len(self._load(user_id).backup_code_hashes)

    def _password_ok(self, record: AccountRecord, password: str) -> bool:
        if not record.password_hash:
            return False
        try:
            return self.hasher.verify_password(password, record.password_hash)
        except InvalidHashFormat:
            return False
