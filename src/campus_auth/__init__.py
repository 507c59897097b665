"""
campus_auth
===========

Authentication building blocks for the campus learning platform:

    - TOTP (RFC 6238) and HOTP (RFC 4226) codes, enrollment URIs and QR images
    - Single-use backup codes stored as keyed hashes
    - Two-factor lifecycle per account (setup, enable, verify, disable)
    - Per-endpoint rate limiting and an audit trail
    - Role-based permissions and Argon2id passwords

Example:
    >>> from campus_auth.app_context import create_app_context
    >>> from campus_auth.config import Settings
    >>> ctx = create_app_context(Settings(secret="app-secret"))
    >>> setup = ctx.two_factor.begin_setup("u1")
"""

__version__ = "0.1.0"
