# -*- coding: utf-8 -*-
"""
Module: campus_auth/security/auth/second_method/code.py

Single-use backup (recovery) codes for accounts with 2FA.

Codes are shown to the user once, formatted ``XXXX-XXXX``; only keyed
HMAC-SHA-256 digests are stored. A verified code is removed from the stored
list so it cannot be used again.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Final, List, NamedTuple, Sequence, Tuple, Union

from campus_auth.config import get_settings

__all__ = [
    "BackupCodeFactor",
    "BackupCodeMatch",
    "DEFAULT_COUNT",
    "format_code",
    "generate_backup_codes",
    "hash_backup_code",
    "normalize_backup_code",
    "verify_backup_code",
]

_logger = logging.getLogger(__name__)

# ---- Constants ----
CODE_BYTES: Final[int] = 4
BLOCK_SIZE: Final[int] = 4
DEFAULT_COUNT: Final[int] = 10

SecretLike = Union[str, bytes, None]


class BackupCodeMatch(NamedTuple):
    valid: bool
    index: int


def _now_str() -> str:
    return datetime.now(timezone.utc).isoformat()


def _key(secret: SecretLike) -> bytes:
    if secret is None:
        return get_settings().require_secret()
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return bytes(secret)


def format_code(raw_hex: str, block_size: int = BLOCK_SIZE) -> str:
    """
    Split a hex string into dash-separated blocks.

    Example:
        >>> format_code("A1B2C3D4")
        'A1B2-C3D4'
    """
    return "-".join(raw_hex[i : i + block_size] for i in range(0, len(raw_hex), block_size))


def generate_backup_codes(count: int = DEFAULT_COUNT) -> List[str]:
    """
    Generate ``count`` distinct codes like ``3F9A-0C71``.

    Each code carries 32 random bits; a duplicate within the batch is drawn again.
    """
    if count < 1:
        raise ValueError("count must be positive")
    codes: List[str] = []
    seen = set()
    while len(codes) < count:
        code = format_code(secrets.token_hex(CODE_BYTES).upper())
        if code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


def normalize_backup_code(code: str) -> str:
    """Uppercase and drop hyphens/spaces, so ``abcd-1234`` equals ``ABCD1234``."""
    return code.upper().replace("-", "").replace(" ", "")


def hash_backup_code(code: str, secret: SecretLike = None) -> str:
    """
    Keyed digest of a normalized code for storage.

    Args:
        code: Code as typed by the user
        secret: HMAC key; the configured application secret if None

    Raises:
        ConfigurationError: No key given and none configured
    """
    return hmac.new(_key(secret), normalize_backup_code(code).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_backup_code(
    code: Any, hashes: Sequence[str], secret: SecretLike = None
) -> BackupCodeMatch:
    """
    Look up a code in a stored hash list.

    The caller removes ``hashes[index]`` from persisted storage on success.

    Example:
        >>> codes = generate_backup_codes(5)
        >>> stored = [hash_backup_code(c, "k") for c in codes]
        >>> verify_backup_code(codes[0], stored, "k")
        BackupCodeMatch(valid=True, index=0)
    """
    if not hashes or not isinstance(code, str) or not code.strip():
        return BackupCodeMatch(False, -1)
    candidate = hash_backup_code(code, secret)
    index = -1
    for i, stored in enumerate(hashes):
        if hmac.compare_digest(stored, candidate) and index == -1:
            index = i
    return BackupCodeMatch(index != -1, index)


class BackupCodeFactor:
    """
    Backup code second factor working on a hash-only state dict.

    Example:
        >>> factor = BackupCodeFactor(secret="k")
        >>> codes, state = factor.setup("user123", count=5)
        >>> factor.verify("user123", codes[0], state)
        True
        >>> factor.remaining(state)
        4
    """

    def __init__(self, secret: SecretLike = None) -> None:
        self._secret = secret

    def setup(
        self, user_id: str, count: int = DEFAULT_COUNT
    ) -> Tuple[List[str], Dict[str, Any]]:
        """
        Issue a fresh batch.

        Returns:
            (plaintext codes for one-time display, state with hashes only)
        """
        codes = generate_backup_codes(count)
        state: Dict[str, Any] = {
            "hashes": [hash_backup_code(c, self._secret) for c in codes],
            "issued": count,
            "created_at": _now_str(),
            "audit": [],
        }
        _logger.info("Backup codes issued: user=%s count=%d", user_id, count)
        return codes, state

    def verify(self, user_id: str, code: Any, state: Dict[str, Any]) -> bool:
        """Verify and consume a code. Returns False when it does not match."""
        hashes: List[str] = state.setdefault("hashes", [])
        audit = state.setdefault("audit", [])
        match = verify_backup_code(code, hashes, self._secret)
        if not match.valid:
            audit.append({"timestamp": _now_str(), "result": "fail"})
            return False
        del hashes[match.index]
        audit.append({"timestamp": _now_str(), "result": "success"})
        _logger.info("Backup code consumed: user=%s remaining=%d", user_id, len(hashes))
        return True

    def remaining(self, state: Dict[str, Any]) -> int:
        return len(state.get("hashes", []))

    def remove(self, user_id: str, state: Dict[str, Any]) -> None:
        state["hashes"] = []
        state.setdefault("audit", []).append(
            {"action": "remove", "timestamp": _now_str(), "user_id": user_id}
        )

    def export_policy(self, deterministic: bool = True) -> Dict[str, Any]:
        data = {
            "code_bits": CODE_BYTES * 8,
            "block_size": BLOCK_SIZE,
            "default_count": DEFAULT_COUNT,
            "hash": "HMAC-SHA256",
            "format_example": format_code("A" * CODE_BYTES * 2),
        }
        if deterministic:
            return OrderedDict(sorted(data.items(), key=lambda kv: kv[0]))
        return data
