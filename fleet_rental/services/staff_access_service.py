from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import StaffUser


SESSION_TTL_SECONDS = 60 * 60 * 12
DEFAULT_ROLE = "Operation"

RIGHTS_BY_ROLE = {
    "Super Admin": {
        "manageJobs": True,
        "processPickupReturn": True,
        "approveExtensions": True,
    },
    "Operation": {
        "manageJobs": False,
        "processPickupReturn": True,
        "approveExtensions": True,
    },
    "Customer Care": {
        "manageJobs": False,
        "processPickupReturn": False,
        "approveExtensions": True,
    },
}

_LOCK = threading.Lock()
_SESSIONS: dict[str, dict[str, Any]] = {}
_REVOKED_TOKENS: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    if role in RIGHTS_BY_ROLE:
        return role
    return DEFAULT_ROLE


def rights_for_role(role: str | None) -> dict[str, bool]:
    return dict(RIGHTS_BY_ROLE[normalize_role(role)])


def is_staff_role(session: dict[str, Any] | None, right: str | None = None) -> bool:
    if not isinstance(session, dict):
        return False
    role = str(session.get("role") or "").strip()
    if role not in RIGHTS_BY_ROLE:
        return False
    if right is None:
        return True
    return bool(RIGHTS_BY_ROLE[role].get(right))


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def get_staff_user(db: Session, username: str) -> StaffUser | None:
    key = (username or "").strip().lower()
    if not key:
        return None
    return db.execute(select(StaffUser).where(StaffUser.Username == key)).scalars().first()


def upsert_staff_user(
    db: Session,
    username: str,
    *,
    role: str | None = None,
    display_name: str | None = None,
    password: str | None = None,
) -> StaffUser:
    key = (username or "").strip().lower()
    if not key:
        raise ValueError("Username is required.")
    if role is not None and role.strip() not in RIGHTS_BY_ROLE:
        raise ValueError(f"Role must be one of {sorted(RIGHTS_BY_ROLE)}.")

    user = get_staff_user(db, key)
    if user is None:
        user = StaffUser(Username=key, Role=normalize_role(role), IsActive=True, CreatedAt=datetime.now())
        db.add(user)
    elif role is not None:
        user.Role = normalize_role(role)
    if display_name is not None:
        user.DisplayName = display_name.strip() or None

    if password is not None:
        trimmed = str(password).strip()
        if len(trimmed) < 4:
            raise ValueError("Password must be at least 4 characters.")
        salt = secrets.token_hex(16)
        user.PasswordSalt = salt
        user.PasswordHash = _password_hash(trimmed, salt)
    user.UpdatedAt = datetime.now()
    db.commit()
    return user


def verify_staff_password(db: Session, username: str, password: str) -> StaffUser | None:
    user = get_staff_user(db, username)
    if user is None or not user.IsActive:
        return None
    if not user.PasswordHash or not user.PasswordSalt:
        return None
    candidate = _password_hash((password or "").strip(), user.PasswordSalt)
    if not hmac.compare_digest(candidate, user.PasswordHash):
        return None
    return user


def build_session_payload(user: StaffUser) -> dict[str, Any]:
    role = normalize_role(user.Role)
    return {
        "staffUserID": user.StaffUserID,
        "username": user.Username,
        "displayName": user.DisplayName or user.Username,
        "role": role,
        "rights": rights_for_role(role),
    }


def create_session(payload: dict[str, Any]) -> str:
    expires_at = time.time() + SESSION_TTL_SECONDS
    session_payload = dict(payload)
    session_payload["expiresAt"] = expires_at
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    encoded_sig = base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")
    token = f"{encoded}.{encoded_sig}"
    with _LOCK:
        _SESSIONS[token] = session_payload
    return token


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        supplied_sig = base64.urlsafe_b64decode(encoded_sig + "=" * (-len(encoded_sig) % 4))
        if not hmac.compare_digest(expected_sig, supplied_sig):
            return None
        payload_raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        decoded_session = json.loads(payload_raw.decode("utf-8"))
    except ValueError:
        # binascii.Error, JSONDecodeError and unicode errors all derive from ValueError.
        return None

    if not isinstance(decoded_session, dict):
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED_TOKENS.items()):
            if now >= revoked_exp:
                _REVOKED_TOKENS.pop(revoked_token, None)
        for cached_token, cached in list(_SESSIONS.items()):
            if now >= float(cached.get("expiresAt") or 0.0):
                _SESSIONS.pop(cached_token, None)
        if now >= expires_at or token in _REVOKED_TOKENS:
            _SESSIONS.pop(token, None)
            return None
        _SESSIONS[token] = decoded_session
        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    with _LOCK:
        session = _SESSIONS.pop(token, None)
        expires_at = float((session or {}).get("expiresAt") or time.time() + SESSION_TTL_SECONDS)
        if expires_at > time.time():
            _REVOKED_TOKENS[token] = expires_at
