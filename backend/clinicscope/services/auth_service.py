# Overview: Service-layer operations for auth; password hashing, authentication and user creation.

"""
Authentication Service with Multi-Tenant Support

WHY: Every action must be attributable. Uses bcrypt for password hashing
and validates password strength.

MULTI-TENANT: Users belong to exactly one tenant (tenant_id), except
SUPER_ADMIN platform principals (tenant_id NULL). Username/email uniqueness
is tenant-scoped. Login runs before any scope exists, so user lookups here
go through the isolation core's internal lookup path.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, upper, lower, digit and special character
- Session tokens managed separately (see session_service.py)
- Authentication fails for users of inactive tenants
"""

import re

import bcrypt

from ..extensions import db
from ..isolation.query_filters import internal_unfiltered
from ..isolation.scope import ROLE_SUPER_ADMIN, VALID_ROLES, ROLE_BRANCH_USER
from ..models import Branch, Company, Tenant, User, UserBranch
from ..time_utils import utcnow
from . import tenant_service


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash password using bcrypt. Password strength is validated first."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() compares in constant time. A malformed hash is a
    failed verification, not an error.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    email: str,
    password: str,
    role: str = ROLE_BRANCH_USER,
    tenant_id: int | None = None,
    company_id: int | None = None,
    primary_branch_id: int | None = None,
    assigned_branch_ids: list[int] | None = None,
    password_rounds: int = 12,
) -> User:
    """
    Create a user with bcrypt password hashing.

    MULTI-TENANT:
    - SUPER_ADMIN users have no tenant; every other role requires one
    - company and branches must belong to the user's tenant
    - the tenant's max_users license limit applies

    Raises:
        ValueError: unknown role, hierarchy mismatch, duplicate or limit reached
        PasswordValidationError: weak password
    """
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role {role}")

    if role == ROLE_SUPER_ADMIN:
        tenant_id = company_id = primary_branch_id = None
        assigned_branch_ids = None
    elif tenant_id is None:
        raise ValueError("Non-platform users must belong to a tenant")

    password_hash = hash_password(password, rounds=password_rounds)

    with internal_unfiltered("user provisioning"):
        if tenant_id is not None:
            tenant = db.session.query(Tenant).filter_by(id=tenant_id).first()
            if not tenant or not tenant.is_active:
                raise ValueError("Tenant not found or inactive")
            if not tenant_service.can_create_user(tenant_id):
                raise ValueError("Tenant user limit reached")

        if company_id is not None:
            company = db.session.query(Company).filter_by(id=company_id).first()
            if not company or company.tenant_id != tenant_id:
                raise ValueError("Company does not belong to this tenant")

        branch_ids = set(assigned_branch_ids or [])
        if primary_branch_id is not None:
            branch_ids.add(primary_branch_id)
        for branch_id in branch_ids:
            row = (
                db.session.query(Company.tenant_id)
                .join(Branch, Branch.company_id == Company.id)
                .filter(Branch.id == branch_id)
                .first()
            )
            if row is None or row[0] != tenant_id:
                raise ValueError("Branch does not belong to this tenant")

        existing = db.session.query(User).filter(
            User.tenant_id.is_(None) if tenant_id is None else User.tenant_id == tenant_id,
            db.or_(User.username == username, User.email == email),
        ).first()
        if existing:
            raise ValueError("Username or email already exists in this tenant")

        user = User(
            tenant_id=tenant_id,
            company_id=company_id,
            primary_branch_id=primary_branch_id,
            role=role,
            username=username,
            email=email,
            password_hash=password_hash,
        )
        db.session.add(user)
        db.session.flush()

        for branch_id in sorted(set(assigned_branch_ids or [])):
            db.session.add(UserBranch(user_id=user.id, branch_id=branch_id))

        db.session.commit()
    return user


def authenticate(username: str, password: str, tenant_code: str | None = None) -> User | None:
    """
    Authenticate user with username (or email) and password.

    MULTI-TENANT: usernames are unique per tenant, so `tenant_code` picks the
    tenant. Without it only platform principals (tenant_id NULL) match.

    Returns User if credentials valid and the tenant is active, None otherwise.
    Updates last_login_at on success.
    """
    with internal_unfiltered("authentication"):
        query = db.session.query(User).filter(
            db.or_(User.username == username, User.email == username),
            User.is_active.is_(True),
        )

        tenant = None
        if tenant_code:
            tenant = db.session.query(Tenant).filter_by(code=tenant_code).first()
            if not tenant or not tenant.is_active:
                return None
            query = query.filter(User.tenant_id == tenant.id)
        else:
            query = query.filter(User.tenant_id.is_(None))

        user = query.first()
        if not user:
            return None

        if not verify_password(password, user.password_hash):
            return None

        user.last_login_at = utcnow()
        db.session.commit()
    return user
