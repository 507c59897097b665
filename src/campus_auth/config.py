# -*- coding: utf-8 -*-
"""
Runtime configuration for campus-auth.

Settings are read once from ``CAMPUS_AUTH_*`` environment variables and can be
overridden programmatically with :func:`configure` (tests, embedding apps).

Examples:
    >>> configure(secret="test-secret", valid_window=2)
    >>> get_settings().valid_window
    2
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Final, Mapping, Optional

__all__ = [
    "ConfigurationError",
    "Settings",
    "configure",
    "get_settings",
    "reset_settings",
]

ENV_PREFIX: Final[str] = "CAMPUS_AUTH_"

DEFAULT_ISSUER: Final[str] = "Erythix Campus"
DEFAULT_VALID_WINDOW: Final[int] = 1
DEFAULT_SECRET_LENGTH: Final[int] = 20
DEFAULT_BACKUP_CODE_COUNT: Final[int] = 10
DEFAULT_QR_SERVICE_URL: Final[str] = "https://api.qrserver.com/v1/create-qr-code/"
DEFAULT_QR_SIZE: Final[int] = 200
DEFAULT_AUDIT_RETENTION_DAYS: Final[int] = 90


class ConfigurationError(RuntimeError):
    """Required setting is missing or has an invalid value."""


@dataclass(frozen=True)
class Settings:
    """
    Effective settings.

    Attributes:
        issuer: Service name shown in authenticator apps.
        secret: Application-wide key for backup-code HMACs.
        valid_window: Accepted TOTP steps on each side of the current one.
        secret_length: Symbols in a freshly generated TOTP secret.
        backup_code_count: Codes issued per batch.
        qr_service_url: External QR image endpoint.
        qr_size: QR image edge in pixels.
        audit_retention_days: Age after which audit records are purged.
        store_path: Encrypted account store file, if file persistence is used.
        store_key: Hex-encoded 32-byte AES key for the account store.
    """

    issuer: str = DEFAULT_ISSUER
    secret: Optional[str] = None
    valid_window: int = DEFAULT_VALID_WINDOW
    secret_length: int = DEFAULT_SECRET_LENGTH
    backup_code_count: int = DEFAULT_BACKUP_CODE_COUNT
    qr_service_url: str = DEFAULT_QR_SERVICE_URL
    qr_size: int = DEFAULT_QR_SIZE
    audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
    store_path: Optional[str] = None
    store_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.valid_window < 0:
            raise ConfigurationError("valid_window must be >= 0")
        if self.secret_length < 16:
            raise ConfigurationError("secret_length must be >= 16")
        if not 1 <= self.backup_code_count <= 50:
            raise ConfigurationError("backup_code_count must be between 1 and 50")
        if self.qr_size < 50:
            raise ConfigurationError("qr_size must be >= 50")
        if self.audit_retention_days < 1:
            raise ConfigurationError("audit_retention_days must be >= 1")

    def require_secret(self) -> bytes:
        """Return the application secret as bytes or fail loudly."""
        if not self.secret:
            raise ConfigurationError(
                f"{ENV_PREFIX}SECRET is not set; backup codes cannot be hashed"
            )
        return self.secret.encode("utf-8")

    def require_store_key(self) -> bytes:
        if not self.store_key:
            raise ConfigurationError(f"{ENV_PREFIX}STORE_KEY is not set")
        try:
            key = bytes.fromhex(self.store_key)
        except ValueError as exc:
            raise ConfigurationError("store_key must be hex-encoded") from exc
        if len(key) != 32:
            raise ConfigurationError("store_key must encode exactly 32 bytes")
        return key

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        def _int(name: str, default: int) -> int:
            raw = _get(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer") from exc

        return cls(
            issuer=_get("ISSUER") or DEFAULT_ISSUER,
            secret=_get("SECRET"),
            valid_window=_int("VALID_WINDOW", DEFAULT_VALID_WINDOW),
            secret_length=_int("SECRET_LENGTH", DEFAULT_SECRET_LENGTH),
            backup_code_count=_int("BACKUP_CODE_COUNT", DEFAULT_BACKUP_CODE_COUNT),
            qr_service_url=_get("QR_SERVICE_URL") or DEFAULT_QR_SERVICE_URL,
            qr_size=_int("QR_SIZE", DEFAULT_QR_SIZE),
            audit_retention_days=_int("AUDIT_RETENTION_DAYS", DEFAULT_AUDIT_RETENTION_DAYS),
            store_path=_get("STORE_PATH"),
            store_key=_get("STORE_KEY"),
        )


_lock = threading.RLock()
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return current settings, loading them from the environment on first use."""
    global _settings
    with _lock:
        if _settings is None:
            _settings = Settings.from_env()
        return _settings


def configure(**overrides: Any) -> Settings:
    """
    Override individual settings on top of the current ones.

    Unknown keys raise ``ConfigurationError``.
    """
    global _settings
    with _lock:
        known: Dict[str, Any] = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(known) - set(Settings.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        _settings = replace(get_settings(), **known)
        return _settings


def reset_settings() -> None:
    """Drop cached settings; the next access reloads the environment."""
    global _settings
    with _lock:
        _settings = None
