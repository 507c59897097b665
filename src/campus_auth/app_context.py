from typing import Any, Dict, Optional

from campus_auth.config import Settings, get_settings
from campus_auth.security.accounts import (
    AccountStore,
    EncryptedFileAccountStore,
    InMemoryAccountStore,
)
from campus_auth.security.audit import AuditLogger, AuditStore
from campus_auth.security.auth.password import PasswordHasher
from campus_auth.security.auth.rate_limiter import RateLimiter, RateLimitStore
from campus_auth.security.auth.two_factor_service import TwoFactorService


class AppContext:
    """
    Dependency Injection context for campus-auth.
    Built once by the application entry point and passed to request handlers;
    nothing here is a process-wide singleton.
    """

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        audit: AuditLogger,
        rate_limiter: RateLimiter,
        hasher: PasswordHasher,
    ) -> None:
        self.settings = settings
        self.store = store
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.hasher = hasher

        # Core service: account-level two-factor flows
        self.two_factor: TwoFactorService = TwoFactorService(
            store,
            audit=audit,
            rate_limiter=rate_limiter,
            hasher=hasher,
            settings=settings,
        )

        # Extendable services dictionary for embedding applications
        self.services: Dict[str, Any] = {}

    def register_service(self, name: str, service: Any) -> None:
        """Register a service by name (extendable)."""
        self.services[name] = service

    def get_service(self, name: str) -> Any:
        """Retrieve a registered service by name."""
        return self.services[name]

    def cleanup(self) -> Dict[str, int]:
        """Periodic maintenance: expire rate-limit rows and old audit records."""
        return {
            "rate_limits": self.rate_limiter.cleanup(),
            "audit": self.audit.cleanup(),
        }


def _default_store(settings: Settings) -> AccountStore:
    if settings.store_path:
        return EncryptedFileAccountStore(settings.store_path, settings.require_store_key())
    return InMemoryAccountStore()


def create_app_context(
    settings: Optional[Settings] = None,
    store: Optional[AccountStore] = None,
    audit_store: Optional[AuditStore] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
    hasher: Optional[PasswordHasher] = None,
) -> AppContext:
    """
    Wire all services from settings. The account store is an encrypted file
    when ``store_path`` is configured, in-memory otherwise.

    Raises:
        ConfigurationError: Application secret or store key missing
    """
    settings = settings if settings is not None else get_settings()
    return AppContext(
        settings=settings,
        store=store if store is not None else _default_store(settings),
        audit=AuditLogger(audit_store, retention_days=settings.audit_retention_days),
        rate_limiter=RateLimiter(rate_limit_store),
        hasher=hasher if hasher is not None else PasswordHasher(),
    )
