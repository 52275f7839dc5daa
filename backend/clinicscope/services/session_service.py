# Overview: Service-layer operations for sessions; the bundled identity resolver.

"""
Session Token Management Service with Multi-Tenant Support

WHY: Secure session management with automatic timeout and revocation.
Tokens are cryptographically secure, hashed in database, and time-limited.

MULTI-TENANT: Sessions capture tenant_id at creation time. Resolving a
token into a Principal re-reads the user and its branch assignments, so a
user moved or deactivated after login loses access on the next request.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage
- 24-hour absolute timeout, 2-hour idle timeout
- Revoked on logout, user deactivation or tenant deactivation
- A session whose tenant no longer matches its user's tenant is revoked
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import request

from ..extensions import db
from ..isolation.query_filters import internal_unfiltered
from ..isolation.scope import Principal
from ..models import SessionToken, Tenant, User, UserBranch
from ..time_utils import utcnow


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)
SESSION_IDLE_TIMEOUT = timedelta(hours=2)


@dataclass
class SessionContext:
    """User and session record returned by validate_session."""
    user: User
    session: SessionToken
    tenant_id: int | None


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy). Sent to the client, never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    SHA-256 of the token for storage.

    Tokens are already high-entropy, so a fast hash is sufficient.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Create new session token for user with tenant context.

    Returns (session_record, plaintext_token).

    Raises ValueError if the user does not exist or its tenant is inactive.
    """
    with internal_unfiltered("session creation"):
        user = db.session.query(User).filter_by(id=user_id).first()
        if not user or not user.is_active:
            raise ValueError("User not found")

        if user.tenant_id is not None:
            tenant = db.session.query(Tenant).filter_by(id=user.tenant_id).first()
            if not tenant or not tenant.is_active:
                raise ValueError("Tenant is not active")

        plaintext_token = generate_token()
        now = utcnow()

        session = SessionToken(
            user_id=user.id,
            tenant_id=user.tenant_id,
            token_hash=hash_token(plaintext_token),
            created_at=now,
            last_used_at=now,
            expires_at=now + SESSION_ABSOLUTE_TIMEOUT,
            user_agent=user_agent,
            ip_address=ip_address,
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
    - User account is deactivated
    - Tenant is deactivated
    - The user's tenant differs from the tenant captured at login

    Updates last_used_at on success.
    """
    now = utcnow()

    with internal_unfiltered("session validation"):
        session = db.session.query(SessionToken).filter_by(
            token_hash=hash_token(token),
            is_revoked=False,
        ).first()

        if not session:
            return None

        if session.expires_at < now:
            return None

        if now - session.last_used_at > SESSION_IDLE_TIMEOUT:
            _revoke(session, "Idle timeout")
            db.session.commit()
            return None

        user = db.session.query(User).filter_by(id=session.user_id).first()
        if not user or not user.is_active:
            _revoke(session, "User account deactivated")
            db.session.commit()
            return None

        if user.tenant_id != session.tenant_id:
            _revoke(session, "Tenant changed")
            db.session.commit()
            return None

        session.last_used_at = now
        db.session.commit()

    return SessionContext(user=user, session=session, tenant_id=session.tenant_id)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Revoke session token. Returns False if no active session matches."""
    with internal_unfiltered("session revocation"):
        session = db.session.query(SessionToken).filter_by(
            token_hash=hash_token(token),
            is_revoked=False,
        ).first()

        if not session:
            return False

        _revoke(session, reason)
        db.session.commit()
    return True


def revoke_all_user_sessions(user_id: int, reason: str = "Revoke all sessions") -> int:
    """Revoke all active sessions for a user. Returns count revoked."""
    with internal_unfiltered("session revocation"):
        sessions = db.session.query(SessionToken).filter_by(
            user_id=user_id,
            is_revoked=False,
        ).all()
        for session in sessions:
            _revoke(session, reason)
        db.session.commit()
    return len(sessions)


def principal_for_user(user: User) -> Principal:
    """Build the request Principal from a stored user and its branch assignments."""
    with internal_unfiltered("principal assembly"):
        assigned = db.session.query(UserBranch.branch_id).filter_by(user_id=user.id).all()
    return Principal(
        user_id=user.id,
        role=user.role,
        tenant_id=user.tenant_id,
        company_id=user.company_id,
        primary_branch_id=user.primary_branch_id,
        assigned_branch_ids=frozenset(row[0] for row in assigned),
    )


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def resolve_request_principal() -> Principal | None:
    """
    Identity resolver for bearer session tokens.

    Returns None when the request carries no usable credentials.
    """
    token = bearer_token()
    if not token:
        return None
    context = validate_session(token)
    if not context:
        return None
    return principal_for_user(context.user)
