# -*- coding: utf-8 -*-
"""
Module: campus_auth/security/auth/second_method/totp.py

TOTP (RFC 6238) second factor for Erythix Campus accounts.

Secret generation, base32 decoding, HOTP code derivation (RFC 4226), clock-drift
tolerant verification, otpauth:// enrollment URIs and QR rendering. Compatible
with Google Authenticator, Authy, FreeOTP and other standard OTP apps.
"""

from __future__ import annotations

import base64
import io
import logging
import secrets
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Final, List, Optional
from urllib.parse import quote

import pyotp
import qrcode
from pyotp.utils import strings_equal
from qrcode.constants import ERROR_CORRECT_M

__all__ = [
    "ALPHABET",
    "DEFAULT_DIGITS",
    "DEFAULT_INTERVAL",
    "DEFAULT_ISSUER",
    "VALID_WINDOW",
    "TotpError",
    "TotpFactor",
    "TotpSecretInvalid",
    "TotpSecretMissing",
    "TotpVerificationFailed",
    "base32_decode",
    "build_otpauth_uri",
    "current_code",
    "generate_code",
    "generate_secret",
    "hotp",
    "qr_code_url",
    "render_qr_png",
    "time_counter",
    "verify_code",
]

_logger = logging.getLogger(__name__)

# ---- Constants ----
ALPHABET: Final[str] = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
DEFAULT_ISSUER: Final[str] = "Erythix Campus"
DEFAULT_DIGITS: Final[int] = 6
DEFAULT_INTERVAL: Final[int] = 30  # seconds
DEFAULT_SECRET_LENGTH: Final[int] = 20
VALID_WINDOW: Final[int] = 1  # accept codes ±1 time step
ALGORITHM: Final[str] = "SHA1"

QR_SERVICE_URL: Final[str] = "https://api.qrserver.com/v1/create-qr-code/"
QR_BOX_SIZE: Final[int] = 6
QR_BORDER: Final[int] = 2

# Characters encodeURIComponent leaves unescaped.
_URI_SAFE: Final[str] = "-_.!~*'()"
_ALPHABET_INDEX: Final[Dict[str, int]] = {ch: i for i, ch in enumerate(ALPHABET)}
# Cosmetic characters tolerated even in strict decoding.
_IGNORABLE: Final[frozenset] = frozenset("= -")


# ---- Exceptions ----
class TotpError(RuntimeError):
    """Base class for TOTP failures."""


class TotpSecretMissing(TotpError):
    """TOTP secret not configured for user."""


class TotpSecretInvalid(TotpError):
    """Secret contains characters outside the base32 alphabet."""


class TotpVerificationFailed(TotpError):
    """TOTP code verification failed."""


# ---- Helpers ----
def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_str() -> str:
    return _now().isoformat()


def _mask(otp: str) -> str:
    return otp[:2] + "****" if len(otp) >= 2 else "****"


# ---- Core algorithm ----
def generate_secret(length: int = DEFAULT_SECRET_LENGTH) -> str:
    """
    Generate a random secret over the base32 alphabet.

    Each byte from the CSPRNG selects one symbol (``byte % 32``); 256 is a
    multiple of 32, so the mapping is uniform.

    Example:
        >>> len(generate_secret())
        20
    """
    if length < 1:
        raise ValueError("length must be positive")
    return "".join(ALPHABET[b % 32] for b in secrets.token_bytes(length))


def base32_decode(encoded: str, *, strict: bool = False) -> bytes:
    """
    Decode a base32 secret into key bytes.

    Input is upper-cased and need not be a multiple of 8 symbols; trailing
    bits that do not fill a byte are discarded. By default characters outside
    ``A-Z2-7`` are skipped. With ``strict=True`` they raise
    ``TotpSecretInvalid`` (padding, spaces and hyphens are still ignored).

    Example:
        >>> base32_decode("JBSWY3DPEHPK3PXP")
        b'Hello!\\xde\\xad\\xbe\\xef'
    """
    out = bytearray()
    value = 0
    bits = 0
    for ch in encoded.upper():
        idx = _ALPHABET_INDEX.get(ch)
        if idx is None:
            if strict and ch not in _IGNORABLE:
                raise TotpSecretInvalid("Secret is not valid base32")
            continue
        value = ((value << 5) | idx) & 0xFFFF
        bits += 5
        if bits >= 8:
            out.append((value >> (bits - 8)) & 0xFF)
            bits -= 8
    return bytes(out)


def hotp(key: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    """
    Compute an RFC 4226 HOTP value.

    Args:
        key: Decoded shared secret
        counter: Moving factor, 0 <= counter < 2**64
        digits: Output length

    Returns:
        Zero-padded decimal code
    """
    if not 0 <= counter < 2**64:
        raise ValueError("counter out of range")
    return pyotp.HOTP(base64.b32encode(key).decode("ascii"), digits=digits).at(counter)


def time_counter(at: Optional[float] = None, interval: int = DEFAULT_INTERVAL) -> int:
    """Return the TOTP step for unix time ``at`` (now if omitted)."""
    ts = time.time() if at is None else at
    return int(ts // interval)


def generate_code(secret: str, counter: int) -> str:
    """Derive the 6-digit code of a base32 secret for a given counter."""
    return hotp(base32_decode(secret), counter)


def current_code(secret: str, at: Optional[float] = None) -> str:
    """Code for the current time step (testing/display only)."""
    return generate_code(secret, time_counter(at))


def _match_counter(
    secret: str,
    code: Any,
    window: int,
    at: Optional[float],
    interval: int,
    digits: int = DEFAULT_DIGITS,
) -> Optional[int]:
    """
    Return the matching counter or None.

    Every candidate in the window is computed and compared in constant time;
    the loop never exits early.
    """
    if window < 0:
        raise ValueError("window must be >= 0")
    if not isinstance(code, str) or len(code) != digits:
        return None
    if not (code.isascii() and code.isdigit()):
        return None
    key = base32_decode(secret)
    current = time_counter(at, interval)
    matched: Optional[int] = None
    for counter in range(current - window, current + window + 1):
        if counter < 0:
            continue
        if strings_equal(hotp(key, counter, digits), code) and matched is None:
            matched = counter
    return matched


def verify_code(
    secret: str,
    code: Any,
    window: int = VALID_WINDOW,
    *,
    at: Optional[float] = None,
    interval: int = DEFAULT_INTERVAL,
) -> bool:
    """
    Check ``code`` against the steps ``[current - window, current + window]``.

    Malformed codes (wrong length, non-numeric, non-string) are simply
    rejected. Does not reveal which offset matched.

    Example:
        >>> verify_code("JBSWY3DPEHPK3PXP", "12ab56")
        False
    """
    return _match_counter(secret, code, window, at, interval) is not None


def build_otpauth_uri(secret: str, account: str, issuer: str = DEFAULT_ISSUER) -> str:
    """
    Build the otpauth:// enrollment URI.

    Example:
        >>> build_otpauth_uri("JBSWY3DPEHPK3PXP", "test@example.com", "Campus")
        'otpauth://totp/Campus:test%40example.com?secret=JBSWY3DPEHPK3PXP&issuer=Campus&algorithm=SHA1&digits=6&period=30'
    """
    enc_issuer = quote(issuer, safe=_URI_SAFE)
    enc_account = quote(account, safe=_URI_SAFE)
    return (
        f"otpauth://totp/{enc_issuer}:{enc_account}"
        f"?secret={secret}&issuer={enc_issuer}"
        f"&algorithm={ALGORITHM}&digits={DEFAULT_DIGITS}&period={DEFAULT_INTERVAL}"
    )


def qr_code_url(data: str, size: int = 200, service_url: str = QR_SERVICE_URL) -> str:
    """URL of an externally rendered QR image for ``data``."""
    return f"{service_url}?size={size}x{size}&data={quote(data, safe=_URI_SAFE)}"


def render_qr_png(data: str) -> bytes:
    """Render ``data`` as a PNG QR code locally."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=QR_BOX_SIZE,
        border=QR_BORDER,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


class TotpFactor:
    """
    TOTP second factor operating on a per-account state dict.

    Features:
    - Compatible with Google Authenticator, Authy, FreeOTP, etc.
    - Enrollment URI generation
    - Anti-replay protection (a time step is accepted once)
    - Configurable verification window
    - Audit trail of verification attempts

    Example:
        >>> factor = TotpFactor()
        >>> state = factor.setup("user123", account="alice@example.com")
        >>> uri = factor.get_provisioning_uri(state)
        >>> factor.verify("user123", factor.get_current_code(state), state)
        True
    """

    def __init__(self, valid_window: int = VALID_WINDOW) -> None:
        if valid_window < 0:
            raise ValueError("valid_window must be >= 0")
        self.valid_window = valid_window

    def setup(
        self,
        user_id: str,
        secret: Optional[str] = None,
        account: str = "",
        issuer: str = DEFAULT_ISSUER,
        secret_length: int = DEFAULT_SECRET_LENGTH,
    ) -> Dict[str, Any]:
        """
        Initialize TOTP state for a user.

        Args:
            user_id: User identifier
            secret: Base32 secret (generated if None)
            account: Label shown in the authenticator app (usually the email)
            issuer: Service name shown in the authenticator app
            secret_length: Length of a generated secret

        Returns:
            State dict with secret, metadata and audit list
        """
        return {
            "secret": secret or generate_secret(secret_length),
            "created_at": _now_str(),
            "account": account or user_id,
            "issuer": issuer,
            "last_used_counter": None,
            "audit": [],
        }

    def remove(self, user_id: str, state: Dict[str, Any]) -> None:
        """Delete the secret and record the removal."""
        state.setdefault("audit", []).append(
            {"action": "remove", "timestamp": _now_str(), "user_id": user_id}
        )
        state.pop("secret", None)
        state["last_used_counter"] = None

    def verify(
        self,
        user_id: str,
        otp: Any,
        state: Dict[str, Any],
        *,
        enable_anti_replay: bool = True,
        at: Optional[float] = None,
    ) -> bool:
        """
        Verify a code against the state's secret.

        Returns False for wrong, malformed or replayed codes.

        Raises:
            TotpSecretMissing: No secret configured
        """
        if not self.is_secret_configured(state):
            raise TotpSecretMissing("TOTP secret not configured")

        audit = state.setdefault("audit", [])
        now_str = _now_str()
        shown = _mask(otp) if isinstance(otp, str) else "****"

        matched = _match_counter(state["secret"], otp, self.valid_window, at, DEFAULT_INTERVAL)
        if matched is None:
            audit.append({"timestamp": now_str, "result": "fail", "otp": shown})
            _logger.debug("TOTP rejected for user=%s", user_id)
            return False

        last_used = state.get("last_used_counter")
        if enable_anti_replay and last_used is not None and matched <= last_used:
            audit.append({"timestamp": now_str, "result": "replay_detected", "otp": shown})
            _logger.warning("TOTP replay detected for user=%s", user_id)
            return False

        if enable_anti_replay:
            state["last_used_counter"] = matched
        state["last_success_at"] = now_str
        audit.append({"timestamp": now_str, "result": "success", "otp": shown})
        return True

    def is_secret_configured(self, state: Dict[str, Any]) -> bool:
        return bool(state.get("secret"))

    def get_provisioning_uri(self, state: Dict[str, Any]) -> str:
        """
        Raises:
            TotpSecretMissing: No secret configured
        """
        if not self.is_secret_configured(state):
            raise TotpSecretMissing("TOTP secret not configured")
        return build_otpauth_uri(
            state["secret"],
            state.get("account", "user"),
            state.get("issuer", DEFAULT_ISSUER),
        )

    def rotate_secret(self, state: Dict[str, Any], new_secret: Optional[str] = None) -> str:
        """Replace the secret, reset anti-replay and record the rotation."""
        new_secret = new_secret or generate_secret()
        now_str = _now_str()
        state["secret"] = new_secret
        state["rotated_at"] = now_str
        state["last_used_counter"] = None
        state.setdefault("audit", []).append({"action": "secret_rotated", "timestamp": now_str})
        return new_secret

    def get_current_code(self, state: Dict[str, Any], at: Optional[float] = None) -> str:
        """
        Current code for the state's secret.

        Warning:
            Use only in development/testing. Never expose in production UI.
        """
        if not self.is_secret_configured(state):
            raise TotpSecretMissing("TOTP secret not configured")
        return current_code(state["secret"], at)

    def get_audit_log(self, state: Dict[str, Any]) -> List[Dict[str, Any]]:
        return list(state.get("audit", []))

    def export_policy(self, deterministic: bool = True) -> Dict[str, Any]:
        data = {
            "algorithm": ALGORITHM,
            "anti_replay_enabled": True,
            "default_issuer": DEFAULT_ISSUER,
            "digits": DEFAULT_DIGITS,
            "interval": DEFAULT_INTERVAL,
            "rfc_standard": "RFC 6238",
            "secret_length": DEFAULT_SECRET_LENGTH,
            "valid_window": self.valid_window,
        }
        if deterministic:
            return OrderedDict(sorted(data.items(), key=lambda kv: kv[0]))
        return data
