# -*- coding: utf-8 -*-
"""
Per-client, per-endpoint attempt limiting for authentication endpoints.

Fixed window counter: an identifier may make ``max_attempts`` requests within
``window``; the next one blocks it for ``block_duration``. State lives in a
pluggable store (in-memory by default). Store failures never reject a
request: they are logged and the request is allowed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Protocol, Tuple

__all__ = [
    "DEFAULT_CONFIG",
    "ENDPOINT_CONFIGS",
    "InMemoryRateLimitStore",
    "RateLimitAttempt",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitStore",
    "RateLimiter",
    "client_identifier",
]

_logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(hours=24)


@dataclass(frozen=True)
class RateLimitConfig:
    window: timedelta
    max_attempts: int
    block_duration: timedelta


DEFAULT_CONFIG = RateLimitConfig(
    window=timedelta(minutes=15),
    max_attempts=100,
    block_duration=timedelta(hours=1),
)

ENDPOINT_CONFIGS: Dict[str, RateLimitConfig] = {
    "/api/auth/login": RateLimitConfig(timedelta(minutes=15), 5, timedelta(minutes=30)),
    "/api/auth/register": RateLimitConfig(timedelta(hours=1), 3, timedelta(hours=1)),
    "/api/auth/2fa/verify": RateLimitConfig(timedelta(minutes=15), 5, timedelta(minutes=30)),
}


@dataclass(frozen=True)
class RateLimitAttempt:
    identifier: str
    endpoint: str
    attempts: int
    first_attempt: datetime
    last_attempt: datetime
    blocked: bool = False
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: Optional[datetime]

    @property
    def retry_after(self) -> int:
        """Whole seconds until ``reset_at`` (0 when unknown or past)."""
        if self.reset_at is None:
            return 0
        return max(0, int((self.reset_at - _now()).total_seconds() + 0.999))


class RateLimitStore(Protocol):
    def get(self, identifier: str, endpoint: str) -> Optional[RateLimitAttempt]: ...
    def put(self, attempt: RateLimitAttempt) -> None: ...
    def delete(self, identifier: str, endpoint: str) -> None: ...
    def delete_stale(self, last_attempt_before: datetime, blocked_until_before: datetime) -> int: ...


class InMemoryRateLimitStore:
    """Dict-backed store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], RateLimitAttempt] = {}
        self._lock = threading.Lock()

    def get(self, identifier: str, endpoint: str) -> Optional[RateLimitAttempt]:
        with self._lock:
            return self._rows.get((identifier, endpoint))

    def put(self, attempt: RateLimitAttempt) -> None:
        with self._lock:
            self._rows[(attempt.identifier, attempt.endpoint)] = attempt

    def delete(self, identifier: str, endpoint: str) -> None:
        with self._lock:
            self._rows.pop((identifier, endpoint), None)

    def delete_stale(self, last_attempt_before: datetime, blocked_until_before: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, row in self._rows.items()
                if row.last_attempt < last_attempt_before
                or (row.blocked_until is not None and row.blocked_until < blocked_until_before)
            ]
            for key in stale:
                del self._rows[key]
            return len(stale)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def client_identifier(headers: Mapping[str, str]) -> str:
    """First address of ``X-Forwarded-For``, or ``"unknown"``."""
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return "unknown"


class RateLimiter:
    """
    Example:
        >>> limiter = RateLimiter()
        >>> limiter.check("203.0.113.7", "/api/auth/2fa/verify").allowed
        True
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        configs: Optional[Mapping[str, RateLimitConfig]] = None,
        default: RateLimitConfig = DEFAULT_CONFIG,
    ) -> None:
        self.store: RateLimitStore = store if store is not None else InMemoryRateLimitStore()
        self._configs: Dict[str, RateLimitConfig] = dict(
            ENDPOINT_CONFIGS if configs is None else configs
        )
        self._default = default
        self._lock = threading.RLock()

    def config_for(self, endpoint: str) -> RateLimitConfig:
        return self._configs.get(endpoint, self._default)

    def check(
        self, identifier: str, endpoint: str, now: Optional[datetime] = None
    ) -> RateLimitResult:
        """Count one attempt and say whether it may proceed."""
        now = now or _now()
        cfg = self.config_for(endpoint)
        with self._lock:
            try:
                return self._check(identifier, endpoint, cfg, now)
            except Exception as exc:
                _logger.error(
                    "Rate limit check failed for endpoint=%s: %s",
                    endpoint,
                    exc.__class__.__name__,
                )
                return RateLimitResult(allowed=True, remaining=-1, reset_at=None)

    def _check(
        self, identifier: str, endpoint: str, cfg: RateLimitConfig, now: datetime
    ) -> RateLimitResult:
        existing = self.store.get(identifier, endpoint)

        if existing is not None and existing.blocked and existing.blocked_until:
            if existing.blocked_until > now:
                return RateLimitResult(False, 0, existing.blocked_until)
            self.store.delete(identifier, endpoint)
            existing = None

        if existing is not None and not existing.blocked:
            if existing.first_attempt > now - cfg.window:
                if existing.attempts >= cfg.max_attempts:
                    blocked_until = now + cfg.block_duration
                    self.store.put(
                        replace(existing, blocked=True, blocked_until=blocked_until, last_attempt=now)
                    )
                    _logger.warning(
                        "Rate limit exceeded: endpoint=%s identifier=%s", endpoint, identifier
                    )
                    return RateLimitResult(False, 0, blocked_until)
                self.store.put(replace(existing, attempts=existing.attempts + 1, last_attempt=now))
                return RateLimitResult(
                    True,
                    cfg.max_attempts - existing.attempts - 1,
                    existing.first_attempt + cfg.window,
                )

        self.store.put(
            RateLimitAttempt(
                identifier=identifier,
                endpoint=endpoint,
                attempts=1,
                first_attempt=now,
                last_attempt=now,
            )
        )
        return RateLimitResult(True, cfg.max_attempts - 1, now + cfg.window)

    def reset(self, identifier: str, endpoint: str) -> None:
        try:
            self.store.delete(identifier, endpoint)
        except Exception as exc:
            _logger.error("Rate limit reset failed: %s", exc.__class__.__name__)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop rows idle for 24h and blocks that have expired."""
        now = now or _now()
        removed = self.store.delete_stale(now - STALE_AFTER, now)
        _logger.info("Rate limit cleanup removed %d rows", removed)
        return removed
