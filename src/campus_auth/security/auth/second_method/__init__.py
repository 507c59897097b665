"""
Second-factor methods for campus accounts.
- TOTP (Time-Based One-Time Password)
- Backup code (single-use)
"""
