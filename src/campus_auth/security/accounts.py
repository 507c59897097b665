# -*- coding: utf-8 -*-
"""
Account record storage.

Components receive an :class:`AccountStore` explicitly; the application entry
point owns its lifecycle. Two backends:

- ``InMemoryAccountStore``: development and tests.
- ``EncryptedFileAccountStore``: one JSON document per account, each
  encrypted with AES-256-GCM, kept in a single file that is rewritten
  atomically (temp file + ``os.replace``) with 0600 permissions.

On-disk format: ``{"<user_id>": {"v": 1, "n": "<b64 nonce>", "c": "<b64 ct||tag>"}}``.
The user id is bound to each record as AEAD associated data.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import stat
import tempfile
import threading
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Final, Iterator, List, Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from campus_auth.security.auth.roles import Role, parse_role

__all__ = [
    "AccountRecord",
    "AccountStore",
    "EncryptedFileAccountStore",
    "InMemoryAccountStore",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
]

_LOGGER: Final = logging.getLogger(__name__)

_FORMAT_VERSION: Final[int] = 1
_NONCE_LEN: Final[int] = 12


class StorageError(RuntimeError):
    """Base class for account storage failures."""


class StorageReadError(StorageError):
    """Stored data cannot be read or decrypted."""


class StorageWriteError(StorageError):
    """Data could not be persisted."""


@dataclass(frozen=True)
class AccountRecord:
    """
    Persisted account fields relevant to authentication.

    ``two_factor_secret`` set with ``two_factor_enabled`` False means setup
    was started but not confirmed.
    """

    user_id: str
    email: str
    role: Role = Role.LEARNER
    password_hash: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = field(default=None, repr=False)
    backup_code_hashes: List[str] = field(default_factory=list, repr=False)
    last_totp_counter: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountRecord":
        return cls(
            user_id=str(data["user_id"]),
            email=str(data["email"]),
            role=parse_role(data.get("role", Role.LEARNER.value)),
            password_hash=data.get("password_hash"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=data.get("two_factor_secret"),
            backup_code_hashes=list(data.get("backup_code_hashes") or []),
            last_totp_counter=data.get("last_totp_counter"),
        )

    def with_changes(self, **changes: Any) -> "AccountRecord":
        return replace(self, **changes)


class AccountStore(Protocol):
    """Protocol for account persistence backends."""

    def get(self, user_id: str) -> Optional[AccountRecord]: ...
    def put(self, record: AccountRecord) -> None: ...
    def delete(self, user_id: str) -> None: ...
    def user_ids(self) -> List[str]: ...


class InMemoryAccountStore:
    """Simple in-memory account storage for development/testing."""

    def __init__(self) -> None:
        self._records: Dict[str, AccountRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[AccountRecord]:
        with self._lock:
            return self._records.get(user_id)

    def put(self, record: AccountRecord) -> None:
        with self._lock:
            self._records[record.user_id] = record

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._records.pop(user_id, None)

    def user_ids(self) -> List[str]:
        with self._lock:
            return list(self._records)


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


class EncryptedFileAccountStore:
    """
    AES-256-GCM encrypted file store.

    Args:
        filepath: Store file (created on first write)
        key: 32-byte AES key, kept outside the file

    Raises:
        StorageError: Invalid path or key
    """

    def __init__(self, filepath: str, key: bytes) -> None:
        if not filepath:
            raise StorageError("Invalid store path")
        if not isinstance(key, (bytes, bytearray)) or len(key) != 32:
            raise StorageError("Store key must be 32 bytes")
        self._path = Path(filepath).resolve()
        self._aead = AESGCM(bytes(key))
        self._lock = threading.RLock()

    def get(self, user_id: str) -> Optional[AccountRecord]:
        with self._lock:
            db = self._read_db()
            rec = db.get(user_id)
            if rec is None:
                return None
            return AccountRecord.from_dict(self._decrypt(user_id, rec))

    def put(self, record: AccountRecord) -> None:
        with self._lock:
            db = self._read_db()
            db[record.user_id] = self._encrypt(record.user_id, record.to_dict())
            self._write_db(db)
        _LOGGER.debug("Account '%s' saved.", record.user_id)

    def delete(self, user_id: str) -> None:
        with self._lock:
            db = self._read_db()
            if db.pop(user_id, None) is not None:
                self._write_db(db)
                _LOGGER.info("Account '%s' deleted.", user_id)

    def user_ids(self) -> List[str]:
        with self._lock:
            return list(self._read_db())

    def __iter__(self) -> Iterator[AccountRecord]:
        for user_id in self.user_ids():
            rec = self.get(user_id)
            if rec is not None:
                yield rec

    # Internals

    def _encrypt(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        nonce = secrets.token_bytes(_NONCE_LEN)
        plaintext = json.dumps(payload, sort_keys=True).encode("utf-8")
        combined = self._aead.encrypt(nonce, plaintext, user_id.encode("utf-8"))
        return {"v": _FORMAT_VERSION, "n": _b64e(nonce), "c": _b64e(combined)}

    def _decrypt(self, user_id: str, rec: Dict[str, Any]) -> Dict[str, Any]:
        if rec.get("v", 0) > _FORMAT_VERSION:
            raise StorageReadError(f"Unsupported record version: {rec.get('v')}")
        try:
            plaintext = self._aead.decrypt(
                _b64d(rec["n"]), _b64d(rec["c"]), user_id.encode("utf-8")
            )
            data = json.loads(plaintext.decode("utf-8"))
        except InvalidTag as exc:
            _LOGGER.error("Account record '%s' failed authentication", user_id)
            raise StorageReadError("Record authentication failed") from exc
        except (KeyError, ValueError) as exc:
            _LOGGER.error("Malformed account record '%s'", user_id)
            raise StorageReadError("Malformed account record") from exc
        if not isinstance(data, dict):
            raise StorageReadError("Malformed account record")
        return data

    def _read_db(self) -> Dict[str, Dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            obj = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            _LOGGER.error("Account store read error: %s", exc.__class__.__name__)
            raise StorageReadError("Invalid account store file") from exc
        if not isinstance(obj, dict) or not all(
            isinstance(v, dict) and "n" in v and "c" in v for v in obj.values()
        ):
            raise StorageReadError("Invalid account store format")
        return obj

    def _write_db(self, db: Dict[str, Dict[str, Any]]) -> None:
        data = json.dumps(db, sort_keys=True, separators=(",", ":"))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=".accounts-", suffix=".tmp", dir=str(self._path.parent), text=True
            )
            with os.fdopen(fd, "w", encoding="utf-8") as tmp_f:
                tmp_f.write(data)
                tmp_f.flush()
                os.fsync(tmp_f.fileno())
            os.replace(tmp_path, self._path)
            tmp_path = None
        except OSError as exc:
            _LOGGER.error("Account store write error: %s", exc.__class__.__name__)
            raise StorageWriteError("Failed to write account store") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        try:
            os.chmod(self._path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as exc:
            _LOGGER.warning("Could not set strict permissions for %s: %s", self._path, exc)
