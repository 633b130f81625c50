from __future__ import annotations

import datetime as dt
import re

import bcrypt
import jwt

from directrent.config import jwt_exp_days, jwt_secret

_GH_LOCAL = re.compile(r"^0(\d{9})$")
_GH_INTL = re.compile(r"^(?:\+|00)?233(\d{9})$")


def normalize_phone(raw: str) -> str:
    """
    Canonical Ghana mobile number (+233XXXXXXXXX), or "" if it doesn't look like one.

    Accepts local (024 123 4567), international (+233 24 123 4567 / 00233...) forms.
    """
    digits = re.sub(r"[^\d+]", "", raw or "")
    m = _GH_LOCAL.match(digits) or _GH_INTL.match(digits)
    if not m:
        return ""
    return f"+233{m.group(1)}"


def hash_password(password: str) -> str:
    # bcrypt stores algorithm + cost + salt in the resulting hash string.
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Invalid hash format.
        return False


def create_access_token(*, user_id: int, role: str) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(days=jwt_exp_days())).timestamp()),
    }
    return jwt.encode(payload, jwt_secret(), algorithm="HS256")


def decode_access_token(token: str) -> dict:
    """Raises jwt.ExpiredSignatureError / jwt.InvalidTokenError."""
    return jwt.decode(token, jwt_secret(), algorithms=["HS256"])
