"""
Pytest fixtures for ClinicScope backend tests.

Provides test database setup, a two-tenant hierarchy, users for every role
and a test client.

Hierarchy:
    tenant_a
      company_a   -> branch_a1, branch_a2
      company_a2  -> branch_a3
    tenant_b
      company_b   -> branch_b1

Fixtures write while holding a platform administrator scope; tests then
switch to the scope they want to exercise with the `as_user` and
`platform` fixtures.
"""

from contextlib import contextmanager

import pytest

from clinicscope import create_app
from clinicscope.extensions import db
from clinicscope.isolation.accessor import clear, scope_override
from clinicscope.isolation.middleware import resolve_scope
from clinicscope.isolation.scope import (
    AccessScope,
    ROLE_BRANCH_USER,
    ROLE_COMPANY_ADMIN,
    ROLE_SUPER_ADMIN,
    ROLE_TENANT_ADMIN,
)
from clinicscope.models import Branch, Company, Patient, Tenant, User, UserBranch
from clinicscope.services.auth_service import hash_password
from clinicscope.services.session_service import principal_for_user

PASSWORD = "Password123!"
PLATFORM_SCOPE = AccessScope.create(is_super_admin=True, user_id="test-platform")


def _platform():
    """Hold a platform administrator scope for the enclosed block."""
    return scope_override(PLATFORM_SCOPE)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        clear()
        # Core deletes are not ORM statements, so scope criteria never apply
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()
        clear()


@pytest.fixture(scope='function')
def as_user(db_session):
    """Context manager factory: hold the scope a stored user resolves to."""
    @contextmanager
    def _as_user(user):
        principal = principal_for_user(user)
        with scope_override(resolve_scope(principal)) as scope:
            yield scope
    return _as_user


def _add(db_session, obj):
    with _platform():
        db_session.add(obj)
        db_session.commit()
    return obj


# =============================================================================
# HIERARCHY
# =============================================================================

@pytest.fixture(scope='function')
def tenant_a(db_session):
    return _add(db_session, Tenant(name="Tenant A - Acme Health", code="ACME", max_companies=3, max_users=10))


@pytest.fixture(scope='function')
def tenant_b(db_session):
    return _add(db_session, Tenant(name="Tenant B - Beta Care", code="BETA", max_companies=1, max_users=2))


@pytest.fixture(scope='function')
def company_a(db_session, tenant_a):
    return _add(db_session, Company(tenant_id=tenant_a.id, name="Acme Clinics", code="A-C1"))


@pytest.fixture(scope='function')
def company_a2(db_session, tenant_a):
    return _add(db_session, Company(tenant_id=tenant_a.id, name="Acme Dental", code="A-C2"))


@pytest.fixture(scope='function')
def company_b(db_session, tenant_b):
    return _add(db_session, Company(tenant_id=tenant_b.id, name="Beta Clinics", code="B-C1"))


@pytest.fixture(scope='function')
def branch_a1(db_session, company_a):
    return _add(db_session, Branch(company_id=company_a.id, name="Acme Downtown", code="A1"))


@pytest.fixture(scope='function')
def branch_a2(db_session, company_a):
    return _add(db_session, Branch(company_id=company_a.id, name="Acme Uptown", code="A2"))


@pytest.fixture(scope='function')
def branch_a3(db_session, company_a2):
    return _add(db_session, Branch(company_id=company_a2.id, name="Acme Dental Central", code="A3"))


@pytest.fixture(scope='function')
def branch_b1(db_session, company_b):
    return _add(db_session, Branch(company_id=company_b.id, name="Beta Main", code="B1"))


# =============================================================================
# USERS
# =============================================================================

def _user(db_session, username, role, tenant=None, company=None, primary=None, assigned=()):
    user = User(
        tenant_id=tenant.id if tenant else None,
        company_id=company.id if company else None,
        primary_branch_id=primary.id if primary else None,
        role=role,
        username=username,
        email=f"{username}@example.test",
        password_hash=hash_password(PASSWORD, rounds=4),
    )
    _add(db_session, user)
    for branch in assigned:
        _add(db_session, UserBranch(user_id=user.id, branch_id=branch.id))
    return user


@pytest.fixture(scope='function')
def super_admin(db_session):
    return _user(db_session, "platform", ROLE_SUPER_ADMIN)


@pytest.fixture(scope='function')
def tenant_admin_a(db_session, tenant_a):
    return _user(db_session, "acme_admin", ROLE_TENANT_ADMIN, tenant=tenant_a)


@pytest.fixture(scope='function')
def company_admin_a(db_session, tenant_a, company_a, branch_a1):
    return _user(db_session, "acme_manager", ROLE_COMPANY_ADMIN,
                 tenant=tenant_a, company=company_a, primary=branch_a1)


@pytest.fixture(scope='function')
def branch_user_a(db_session, tenant_a, company_a, branch_a1, branch_a2):
    """Works at branch_a1, also assigned to branch_a2."""
    return _user(db_session, "acme_nurse", ROLE_BRANCH_USER,
                 tenant=tenant_a, company=company_a, primary=branch_a1, assigned=[branch_a2])


@pytest.fixture(scope='function')
def branch_user_b(db_session, tenant_b, company_b, branch_b1):
    return _user(db_session, "beta_nurse", ROLE_BRANCH_USER,
                 tenant=tenant_b, company=company_b, primary=branch_b1)


# =============================================================================
# CLINICAL DATA
# =============================================================================

def _patient(db_session, branch, national_id, name):
    return _add(db_session, Patient(branch_id=branch.id, national_id=national_id, full_name=name))


@pytest.fixture(scope='function')
def patient_a1(db_session, branch_a1):
    return _patient(db_session, branch_a1, "A1-0001", "Alice Downtown")


@pytest.fixture(scope='function')
def patient_a2(db_session, branch_a2):
    return _patient(db_session, branch_a2, "A2-0001", "Aaron Uptown")


@pytest.fixture(scope='function')
def patient_a3(db_session, branch_a3):
    return _patient(db_session, branch_a3, "A3-0001", "Ada Dental")


@pytest.fixture(scope='function')
def patient_b1(db_session, branch_b1):
    return _patient(db_session, branch_b1, "B1-0001", "Bob Beta")


def get_auth_token(client, username: str, password: str = PASSWORD, tenant_code: str | None = None) -> str:
    """Helper to get auth token for a user."""
    payload = {'username': username, 'password': password}
    if tenant_code:
        payload['tenant_code'] = tenant_code
    response = client.post('/api/auth/login', json=payload)
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str, **extra) -> dict:
    """Helper to create Authorization headers."""
    headers = {'Authorization': f'Bearer {token}'}
    headers.update(extra)
    return headers


@pytest.fixture(scope='function')
def platform(db_session):
    """Context manager factory: hold a platform administrator scope."""
    return _platform


@pytest.fixture(scope='function')
def login(client):
    """Log a fixture user in over HTTP and return its Authorization headers."""
    def _login(user, tenant_code: str | None = None, **extra) -> dict:
        token = get_auth_token(client, user.username, tenant_code=tenant_code)
        assert token, f"login failed for {user.username}"
        return auth_headers(token, **extra)
    return _login
