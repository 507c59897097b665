#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Demo script for the two-factor lifecycle.

Usage:
    python demo_two_factor.py
"""

from __future__ import annotations

import sys
from pathlib import Path

# Add src to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root / "src"))

from campus_auth.app_context import create_app_context
from campus_auth.config import Settings
from campus_auth.security.accounts import AccountRecord
from campus_auth.security.audit import AuditQuery
from campus_auth.security.auth.second_method.totp import current_code


def print_banner(text: str) -> None:
    """Print section banner."""
    print()
    print("=" * 70)
    print(f"  {text}")
    print("=" * 70)


def print_success(text: str) -> None:
    print(f"✅ {text}")


def print_info(text: str) -> None:
    print(f"ℹ️  {text}")


def main() -> int:
    ctx = create_app_context(Settings(secret="demo-only-secret"))
    ctx.store.put(
        AccountRecord(
            user_id="demo",
            email="demo@campus.test",
            password_hash=ctx.hasher.hash_password("demo password"),
        )
    )
    service = ctx.two_factor

    print_banner("Setup")
    setup = service.begin_setup("demo")
    print_info(f"Secret: {setup.secret}")
    print_info(f"Enrollment URI: {setup.otpauth_url}")
    print_info(f"QR image: {setup.qr_code_url}")
    for code in setup.backup_codes:
        print(f"   {code}")
    print_info(f"Status: {service.get_status('demo').value}")

    print_banner("Enable")
    service.enable("demo", current_code(setup.secret))
    print_success(f"Status: {service.get_status('demo').value}")

    print_banner("Login with a backup code")
    ok = service.verify("demo", setup.backup_codes[0], is_backup_code=True)
    print_success(f"Accepted: {ok}, remaining: {service.remaining_backup_codes('demo')}")
    again = service.verify("demo", setup.backup_codes[0], is_backup_code=True)
    print_info(f"Same code again accepted: {again}")

    print_banner("Audit trail")
    page = ctx.audit.query(AuditQuery(), actor_role="ADMIN")
    for rec in page.records:
        print(f"   {rec.created_at:%H:%M:%S} {rec.action.value:<30} {rec.user_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
