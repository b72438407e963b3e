"""
auth.py
Authentication utilities (bcrypt hashing, verify, login, change password, staff users).

This avoids passlib's bcrypt backend auto-detection issues on some Python 3.13 Windows setups.
"""

from __future__ import annotations

import logging
from datetime import datetime

import bcrypt

import db
from models import USER_ROLES

logger = logging.getLogger(__name__)


def _to_bcrypt_secret(password: str) -> bytes:
    """
    bcrypt only uses the first 72 BYTES of the password.
    We truncate to 72 bytes to avoid ValueError and to make behavior explicit.
    """
    pw = password.encode("utf-8")
    if len(pw) > 72:
        pw = pw[:72]
    return pw


def hash_password(password: str) -> str:
    """
    Returns a bcrypt hash as a UTF-8 string (stored in SQLite).
    """
    secret = _to_bcrypt_secret(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(secret, salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    secret = _to_bcrypt_secret(password)
    stored = password_hash.encode("utf-8")
    return bcrypt.checkpw(secret, stored)


def get_user_by_username(username: str):
    return db.fetch_one("SELECT * FROM users WHERE username = ?", (username,))


def login(username: str, password: str) -> bool:
    user = get_user_by_username(username)
    if not user or not user["is_active"]:
        logger.warning("Login rejected for %r", username)
        return False
    if not verify_password(password, user["password_hash"]):
        logger.warning("Login rejected for %r", username)
        return False
    db.execute(
        "UPDATE users SET last_login_at = ? WHERE id = ?",
        (datetime.utcnow().isoformat(timespec="seconds"), user["id"]),
    )
    return True


def add_user(username: str, password: str, full_name: str, role: str = "staff") -> int:
    if role not in USER_ROLES:
        raise ValueError(f"Unknown role: {role}")
    if get_user_by_username(username):
        raise ValueError("Username already exists. Please choose a different username.")
    return db.execute(
        "INSERT INTO users(username, password_hash, full_name, role, created_at) VALUES(?,?,?,?,?)",
        (username, hash_password(password), full_name, role, datetime.utcnow().isoformat(timespec="seconds")),
    )


def change_password(username: str, new_password: str) -> None:
    new_hash = hash_password(new_password)
    db.execute(
        "UPDATE users SET password_hash = ? WHERE username = ?",
        (new_hash, username),
    )
    db.clear_force_password_change()
