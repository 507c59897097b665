# -*- coding: utf-8 -*-
"""
Security audit trail.

Records who did what to which entity, from where. Writing an audit record
must never break the operation being audited: store errors are logged and
swallowed in :meth:`AuditLogger.log`. Reading the trail is restricted to roles
holding ``Permission.VIEW_AUDIT_LOGS``.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from campus_auth.security.auth.rate_limiter import client_identifier
from campus_auth.security.auth.roles import Permission, Role, require_permission

__all__ = [
    "AuditAction",
    "AuditLogger",
    "AuditPage",
    "AuditQuery",
    "AuditRecord",
    "AuditStore",
    "ClientInfo",
    "EntityType",
    "InMemoryAuditStore",
]

_logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    TWO_FACTOR_ENABLED = "2FA_ENABLED"
    TWO_FACTOR_DISABLED = "2FA_DISABLED"
    TWO_FACTOR_VERIFIED = "2FA_VERIFIED"
    TWO_FACTOR_FAILED = "2FA_FAILED"
    TWO_FACTOR_BACKUP_CODES_REGENERATED = "2FA_BACKUP_CODES_REGENERATED"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    COURSE_CREATE = "COURSE_CREATE"
    COURSE_UPDATE = "COURSE_UPDATE"
    COURSE_DELETE = "COURSE_DELETE"
    COURSE_PUBLISH = "COURSE_PUBLISH"
    ENROLLMENT_CREATE = "ENROLLMENT_CREATE"
    ENROLLMENT_CANCEL = "ENROLLMENT_CANCEL"
    QUIZ_SUBMIT = "QUIZ_SUBMIT"
    CERTIFICATE_ISSUED = "CERTIFICATE_ISSUED"
    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_ROLE_CHANGE = "USER_ROLE_CHANGE"
    EXPORT_DATA = "EXPORT_DATA"
    ADMIN_ACTION = "ADMIN_ACTION"


class EntityType(str, Enum):
    USER = "USER"
    COURSE = "COURSE"
    MODULE = "MODULE"
    LESSON = "LESSON"
    ENROLLMENT = "ENROLLMENT"
    QUIZ = "QUIZ"
    CERTIFICATE = "CERTIFICATE"
    BADGE = "BADGE"
    FORUM_POST = "FORUM_POST"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, str]]) -> "ClientInfo":
        if not headers:
            return cls()
        ip = client_identifier(headers)
        user_agent = {k.lower(): v for k, v in headers.items()}.get("user-agent")
        return cls(ip_address=None if ip == "unknown" else ip, user_agent=user_agent)


@dataclass(frozen=True)
class AuditRecord:
    id: int
    user_id: str
    action: AuditAction
    entity_type: EntityType
    entity_id: Optional[str]
    details: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    def details_dict(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.details) if self.details else None


@dataclass(frozen=True)
class AuditQuery:
    user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0

    def matches(self, rec: AuditRecord) -> bool:
        if self.user_id and rec.user_id != self.user_id:
            return False
        if self.action and rec.action is not self.action:
            return False
        if self.entity_type and rec.entity_type is not self.entity_type:
            return False
        if self.entity_id and rec.entity_id != self.entity_id:
            return False
        if self.start_date and rec.created_at < self.start_date:
            return False
        if self.end_date and rec.created_at > self.end_date:
            return False
        return True


@dataclass(frozen=True)
class AuditPage:
    records: List[AuditRecord] = field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


class AuditStore(Protocol):
    def add(
        self,
        user_id: str,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: Optional[str],
        details: Optional[str],
        client: ClientInfo,
        created_at: datetime,
    ) -> AuditRecord: ...

    def find(self, query: AuditQuery) -> Tuple[List[AuditRecord], int]: ...
    def delete_before(self, cutoff: datetime) -> int: ...


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._records: List[AuditRecord] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(
        self,
        user_id: str,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: Optional[str],
        details: Optional[str],
        client: ClientInfo,
        created_at: datetime,
    ) -> AuditRecord:
        with self._lock:
            rec = AuditRecord(
                id=next(self._ids),
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                created_at=created_at,
            )
            self._records.append(rec)
            return rec

    def find(self, query: AuditQuery) -> Tuple[List[AuditRecord], int]:
        with self._lock:
            hits = [r for r in self._records if query.matches(r)]
        hits.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return hits[query.offset : query.offset + query.limit], len(hits)

    def delete_before(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.created_at >= cutoff]
            return before - len(self._records)


def _now() -> datetime:
    return datetime.now(timezone.utc)


ClientLike = Union[ClientInfo, Mapping[str, str], None]


def _client(client: ClientLike) -> ClientInfo:
    if isinstance(client, ClientInfo):
        return client
    return ClientInfo.from_headers(client)


class AuditLogger:
    """
    Example:
        >>> audit = AuditLogger()
        >>> audit.two_factor_enabled("u1", {"user-agent": "pytest"})
        >>> audit.query(AuditQuery(user_id="u1"), actor_role=Role.ADMIN).total
        1
    """

    def __init__(self, store: Optional[AuditStore] = None, retention_days: int = 90) -> None:
        self.store: AuditStore = store if store is not None else InMemoryAuditStore()
        self.retention_days = retention_days

    def log(
        self,
        user_id: str,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        client: ClientLike = None,
    ) -> Optional[AuditRecord]:
        """Write one record; returns None when the store failed."""
        try:
            return self.store.add(
                user_id,
                action,
                entity_type,
                entity_id,
                json.dumps(details, default=str, sort_keys=True) if details else None,
                _client(client),
                _now(),
            )
        except Exception as exc:
            _logger.error(
                "Failed to create audit log action=%s: %s", action.value, exc.__class__.__name__
            )
            return None

    # ---- Convenience events ----
    def login(self, user_id: str, client: ClientLike = None, success: bool = True) -> None:
        action = AuditAction.LOGIN if success else AuditAction.LOGIN_FAILED
        self.log(user_id, action, EntityType.USER, user_id, client=client)

    def logout(self, user_id: str, client: ClientLike = None) -> None:
        self.log(user_id, AuditAction.LOGOUT, EntityType.USER, user_id, client=client)

    def register(self, user_id: str, email: str, client: ClientLike = None) -> None:
        self.log(user_id, AuditAction.REGISTER, EntityType.USER, user_id, {"email": email}, client)

    def two_factor_enabled(self, user_id: str, client: ClientLike = None) -> None:
        self.log(user_id, AuditAction.TWO_FACTOR_ENABLED, EntityType.USER, user_id, client=client)

    def two_factor_disabled(self, user_id: str, client: ClientLike = None) -> None:
        self.log(user_id, AuditAction.TWO_FACTOR_DISABLED, EntityType.USER, user_id, client=client)

    def two_factor_verified(
        self, user_id: str, client: ClientLike = None, success: bool = True
    ) -> None:
        action = AuditAction.TWO_FACTOR_VERIFIED if success else AuditAction.TWO_FACTOR_FAILED
        self.log(user_id, action, EntityType.USER, user_id, client=client)

    def backup_codes_regenerated(self, user_id: str, client: ClientLike = None) -> None:
        self.log(
            user_id,
            AuditAction.TWO_FACTOR_BACKUP_CODES_REGENERATED,
            EntityType.USER,
            user_id,
            client=client,
        )

    def course_created(
        self, user_id: str, course_id: str, course_title: str, client: ClientLike = None
    ) -> None:
        self.log(
            user_id, AuditAction.COURSE_CREATE, EntityType.COURSE, course_id,
            {"courseTitle": course_title}, client,
        )

    def course_updated(
        self, user_id: str, course_id: str, changes: Dict[str, Any], client: ClientLike = None
    ) -> None:
        self.log(
            user_id, AuditAction.COURSE_UPDATE, EntityType.COURSE, course_id,
            {"changes": changes}, client,
        )

    def course_deleted(
        self, user_id: str, course_id: str, course_title: str, client: ClientLike = None
    ) -> None:
        self.log(
            user_id, AuditAction.COURSE_DELETE, EntityType.COURSE, course_id,
            {"courseTitle": course_title}, client,
        )

    def enrollment_created(self, user_id: str, course_id: str, client: ClientLike = None) -> None:
        self.log(user_id, AuditAction.ENROLLMENT_CREATE, EntityType.ENROLLMENT, course_id, client=client)

    def certificate_issued(
        self, user_id: str, certificate_id: str, course_id: str, client: ClientLike = None
    ) -> None:
        self.log(
            user_id, AuditAction.CERTIFICATE_ISSUED, EntityType.CERTIFICATE, certificate_id,
            {"courseId": course_id}, client,
        )

    def user_role_changed(
        self,
        admin_id: str,
        target_user_id: str,
        old_role: Role,
        new_role: Role,
        client: ClientLike = None,
    ) -> None:
        self.log(
            admin_id, AuditAction.USER_ROLE_CHANGE, EntityType.USER, target_user_id,
            {"oldRole": old_role.value, "newRole": new_role.value}, client,
        )

    def data_exported(
        self,
        user_id: str,
        export_type: str,
        filters: Optional[Dict[str, Any]] = None,
        client: ClientLike = None,
    ) -> None:
        self.log(
            user_id, AuditAction.EXPORT_DATA, EntityType.SYSTEM, None,
            {"exportType": export_type, "filters": filters}, client,
        )

    # ---- Reading / maintenance ----
    def query(self, query: AuditQuery, actor_role: Union[Role, str]) -> AuditPage:
        """
        Page through the trail, newest first.

        Raises:
            PermissionDenied: ``actor_role`` may not read audit logs
        """
        require_permission(actor_role, Permission.VIEW_AUDIT_LOGS)
        if query.limit < 1 or query.offset < 0:
            raise ValueError("limit must be >= 1 and offset >= 0")
        records, total = self.store.find(query)
        return AuditPage(records=records, total=total, limit=query.limit, offset=query.offset)

    def cleanup(self, days_to_keep: Optional[int] = None) -> int:
        """Delete records older than ``days_to_keep`` days; returns the count."""
        days = self.retention_days if days_to_keep is None else days_to_keep
        removed = self.store.delete_before(_now() - timedelta(days=days))
        _logger.info("Audit cleanup removed %d records older than %d days", removed, days)
        return removed
