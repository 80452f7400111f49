# Overview: Service-layer operations for bearer sessions; supplies the acting user to every request.

"""
Session Token Management Service

WHY: The order and ledger services trust the caller's identity and role.
Routes obtain that identity from a bearer token issued here. Login and
registration live outside this service; tokens are issued to existing users
(see `flask users issue-token`).

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute timeout of SESSION_TTL_HOURS
- Revocable; deactivated users lose their sessions on next use
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..errors import NotFoundError
from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow


@dataclass
class SessionContext:
    """Identity handed to routes by require_auth."""
    user: User
    session: SessionToken

    @property
    def role(self) -> str:
        return self.user.role


def generate_token() -> str:
    """
    Generate cryptographically secure random token.

    Returns 64-character hex string (32 bytes of entropy).
    This is the plaintext token sent to client (never stored).
    """
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    Tokens are already high-entropy, so a fast hash is sufficient.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(user_id: str, ttl_hours: int | None = None) -> tuple[SessionToken, str]:
    """
    Create new session token for an active user.

    Returns (session_record, plaintext_token).
    Client receives plaintext_token, database stores only the hash.
    """
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise NotFoundError(f"User {user_id} not found")

    if ttl_hours is None:
        ttl_hours = current_app.config.get("SESSION_TTL_HOURS", 24)

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> SessionContext | None:
    """
    Validate session token and return SessionContext if valid.

    Returns None if:
    - Token is invalid, expired, or revoked
    - User account is deactivated (the session is revoked as well)

    Updates last_used_at on successful validation.
    """
    now = utcnow()

    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return None

    if session.expires_at < now:
        return None

    user = session.user
    if not user or not user.is_active:
        session.is_revoked = True
        session.revoked_at = now
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(user=user, session=session)


def revoke_session(token: str) -> bool:
    """
    Revoke session token.

    Returns True if session was revoked, False if not found.
    """
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return False

    session.is_revoked = True
    session.revoked_at = utcnow()
    db.session.commit()
    return True
