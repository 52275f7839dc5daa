# Overview: Pytest coverage for the operator CLI commands.

from clinicscope.isolation import accessor
from clinicscope.isolation.scope import NO_ACCESS
from clinicscope.models import Patient, Tenant


def test_isolation_verify(app, db_session):
    result = app.test_cli_runner().invoke(args=["isolation", "verify"])
    assert result.exit_code == 0
    assert "PASS" in result.output


def test_tenants_list(app, db_session, tenant_a, tenant_b, company_a):
    result = app.test_cli_runner().invoke(args=["tenants", "list"])
    assert result.exit_code == 0
    assert "ACME" in result.output
    assert "BETA" in result.output
    assert "1/3" in result.output


def test_isolation_audit(app, db_session, tenant_a, patient_a1, patient_a2, patient_b1):
    result = app.test_cli_runner().invoke(args=["isolation", "audit", "patient"])
    assert result.exit_code == 0
    assert "Total records: 3" in result.output
    assert f"tenant {tenant_a.id:<5} 2" in result.output


def test_isolation_audit_unknown_entity(app, db_session):
    result = app.test_cli_runner().invoke(args=["isolation", "audit", "invoice"])
    assert result.exit_code == 1
    assert "Unknown entity type" in result.output


def test_operator_scope_released_after_command(app, db_session, tenant_a):
    app.test_cli_runner().invoke(args=["tenants", "list"])
    assert accessor.current_scope() is NO_ACCESS


def test_seed_demo(app, db_session, platform):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "seed-demo"])
    assert result.exit_code == 0
    assert "DONE" in result.output

    with platform():
        assert db_session.query(Tenant).count() == 2
        assert db_session.query(Patient).count() == 4

    again = runner.invoke(args=["system", "seed-demo"])
    assert "already present" in again.output
