# Overview: Flask CLI command groups for bootstrap, inspection, and isolation audits.

# backend/clinicscope/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to clinicscope (PowerShell: $env:FLASK_APP="clinicscope"); create_app() is found automatically.
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system seed-demo
#   Two tenants with companies, branches, users and patients.
#
# Tenant inspection:
# - python -m flask tenants list
#   List all tenants with license usage.
#
# Isolation checks:
# - python -m flask isolation verify
#   Check every mapped model declares a valid scoping descriptor.
# - python -m flask isolation audit Patient
#   Per-tenant record distribution for one entity type.
#
# Commands run as the platform operator: they hold a super admin scope for
# their whole duration and release it on exit.

from functools import wraps

import click
from flask.cli import with_appcontext

from .extensions import db
from .isolation.accessor import scope_override
from .isolation.descriptors import mapped_models, verify_scoping_descriptors
from .isolation.errors import ScopingConfigurationError
from .isolation.scope import (
    AccessScope,
    ROLE_BRANCH_USER,
    ROLE_COMPANY_ADMIN,
    ROLE_SUPER_ADMIN,
    ROLE_TENANT_ADMIN,
)
from .models import Branch, Company, Patient, Tenant
from .services import isolation_service, tenant_service
from .services.auth_service import PasswordValidationError, create_user

OPERATOR_SCOPE = AccessScope.create(is_super_admin=True, user_id="cli")


def as_operator(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        with scope_override(OPERATOR_SCOPE):
            return f(*args, **kwargs)
    return decorated


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('seed-demo')
@click.option('--password', default='Password123!', help='Password for every demo user')
@with_appcontext
@as_operator
def seed_demo(password):
    """
    Seed two tenants for trying out isolation.

    Creates per tenant: one company, two branches, a tenant admin, a company
    admin, a branch user and two patients. Also creates a platform admin.
    """
    if db.session.query(Tenant).filter_by(code="NORTH").first():
        click.echo("WARN  Demo data already present, skipping")
        return

    click.echo("START Seeding demo tenants...")
    try:
        create_user("platform", "platform@clinicscope.local", password, role=ROLE_SUPER_ADMIN)

        for code, name in (("NORTH", "North Health"), ("SOUTH", "South Care")):
            tenant = Tenant(name=name, code=code, max_companies=3, max_users=10)
            db.session.add(tenant)
            db.session.flush()

            company = Company(tenant_id=tenant.id, name=f"{name} Clinics", code=f"{code}-C1")
            db.session.add(company)
            db.session.flush()

            branches = []
            for idx in (1, 2):
                branch = Branch(company_id=company.id, name=f"{name} Branch {idx}", code=f"{code}-B{idx}")
                db.session.add(branch)
                branches.append(branch)
            db.session.flush()

            for idx, branch in enumerate(branches, start=1):
                db.session.add(Patient(
                    branch_id=branch.id,
                    national_id=f"{code}-{idx:04d}",
                    full_name=f"{name} Patient {idx}",
                ))
            db.session.commit()

            slug = code.lower()
            create_user(f"{slug}-admin", f"admin@{slug}.local", password,
                        role=ROLE_TENANT_ADMIN, tenant_id=tenant.id)
            create_user(f"{slug}-manager", f"manager@{slug}.local", password,
                        role=ROLE_COMPANY_ADMIN, tenant_id=tenant.id, company_id=company.id,
                        primary_branch_id=branches[0].id)
            create_user(f"{slug}-nurse", f"nurse@{slug}.local", password,
                        role=ROLE_BRANCH_USER, tenant_id=tenant.id, company_id=company.id,
                        primary_branch_id=branches[0].id)
            click.echo(f"PASS Tenant {name} (ID: {tenant.id}, Code: {code})")
    except PasswordValidationError as e:
        db.session.rollback()
        click.echo(f"FAIL Password validation failed: {e}")
        return

    click.echo("DONE Demo data seeded. Log in with tenant_code NORTH or SOUTH.")


@click.group('tenants')
def tenants_group():
    """Tenant inspection commands."""


@tenants_group.command('list')
@with_appcontext
@as_operator
def list_tenants():
    """List all tenants with license usage."""
    tenants = db.session.query(Tenant).order_by(Tenant.id).all()
    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<10} {'Active':<8} {'Companies':<11} {'Users'}")
    click.echo("="*80)
    for tenant in tenants:
        companies = tenant_service.count_companies(tenant.id)
        users = tenant_service.count_active_users(tenant.id)
        active_str = "Yes" if tenant.is_active else "No"
        click.echo(
            f"{tenant.id:<5} {tenant.name:<30} {tenant.code or '-':<10} {active_str:<8} "
            f"{companies}/{tenant.max_companies:<9} {users}/{tenant.max_users}"
        )
    click.echo("="*80 + "\n")


@click.group('isolation')
def isolation_group():
    """Tenant isolation checks."""


@isolation_group.command('verify')
@with_appcontext
def verify_descriptors():
    """Check every mapped model declares a usable scoping descriptor."""
    try:
        verify_scoping_descriptors()
    except ScopingConfigurationError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS {len(mapped_models())} models declare scoping descriptors")


@isolation_group.command('audit')
@click.argument('entity')
@with_appcontext
@as_operator
def audit_entity(entity):
    """Per-tenant record distribution for ENTITY (model name)."""
    model = next((m for m in mapped_models() if m.__name__.lower() == entity.lower()), None)
    if model is None:
        click.echo(f"FAIL Unknown entity type '{entity}'")
        raise SystemExit(1)

    report = isolation_service.audit_entity_isolation(model)
    click.echo(f"Entity:        {report.entity_type}")
    click.echo(f"Has branch id: {'Yes' if report.has_branch_id else 'No'}")
    click.echo(f"Total records: {report.total_records}")
    for tenant_id, count in sorted(report.tenant_distribution.items()):
        click.echo(f"  tenant {tenant_id:<5} {count}")
    if report.notes:
        click.echo(f"Notes:         {report.notes}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)
    app.cli.add_command(isolation_group)
