# -*- coding: utf-8 -*-
"""
Argon2id password hashing for campus accounts.

Wraps ``argon2.PasswordHasher`` with an optional pepper read from
``CAMPUS_AUTH_PW_PEPPER``. The pepper is mixed in with HMAC-SHA-256 before
hashing so its length does not leak into the Argon2 input.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Final, Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import exceptions as argon2_exc

__all__ = [
    "InvalidHashFormat",
    "PasswordHasher",
    "PolicyViolation",
    "is_valid_password",
]

_LOG = logging.getLogger(__name__)

_PEPPER_ENV_VAR: Final[str] = "CAMPUS_AUTH_PW_PEPPER"
_MIN_PASSWORD_LENGTH: Final[int] = 8
_MAX_PASSWORD_LENGTH: Final[int] = 256


class PolicyViolation(ValueError):
    """Password does not meet the length policy."""


class InvalidHashFormat(ValueError):
    """Stored hash is not an Argon2 hash."""


def is_valid_password(password: Any) -> bool:
    return (
        isinstance(password, str)
        and _MIN_PASSWORD_LENGTH <= len(password) <= _MAX_PASSWORD_LENGTH
    )


def get_pepper(env_var: str = _PEPPER_ENV_VAR) -> Optional[bytes]:
    value = os.environ.get(env_var)
    return value.encode("utf-8") if value else None


@dataclass(frozen=True)
class PasswordHasher:
    time_cost: int = 2
    memory_cost: int = 65536
    parallelism: int = 2
    pepper: Optional[bytes] = None

    _ph: Any = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.pepper is None:
            object.__setattr__(self, "pepper", get_pepper())
        object.__setattr__(
            self,
            "_ph",
            _Argon2Hasher(
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
            ),
        )

    def _mix(self, password: str) -> str:
        if not self.pepper:
            return password
        return hmac.new(self.pepper, password.encode("utf-8"), hashlib.sha256).hexdigest()

    def hash_password(self, password: str) -> str:
        if not is_valid_password(password):
            raise PolicyViolation(
                f"Password must be {_MIN_PASSWORD_LENGTH}-{_MAX_PASSWORD_LENGTH} characters"
            )
        return str(self._ph.hash(self._mix(password)))

    def verify_password(self, password: str, hashed: str) -> bool:
        """
        Check a password against a stored hash.

        Raises:
            InvalidHashFormat: ``hashed`` is not an Argon2 hash
        """
        if not isinstance(password, str) or len(password) > _MAX_PASSWORD_LENGTH:
            return False
        try:
            return bool(self._ph.verify(hashed, self._mix(password)))
        except argon2_exc.VerificationError:
            return False
        except argon2_exc.InvalidHashError as exc:
            _LOG.error("Stored password hash is malformed")
            raise InvalidHashFormat("Malformed password hash") from exc

    def needs_rehash(self, hashed: str) -> bool:
        return bool(self._ph.check_needs_rehash(hashed))

    def export_policy(self) -> Dict[str, Any]:
        return {
            "algorithm": "argon2id",
            "time_cost": self.time_cost,
            "memory_cost": self.memory_cost,
            "parallelism": self.parallelism,
            "min_length": _MIN_PASSWORD_LENGTH,
            "max_length": _MAX_PASSWORD_LENGTH,
            "pepper_configured": self.pepper is not None,
        }
