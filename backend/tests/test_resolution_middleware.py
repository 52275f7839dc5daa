# Overview: Pytest coverage for per-request scope resolution and the HTTP surface.

"""
Scope Resolution Middleware Tests

SECURITY TESTS: Prove that every non-public request resolves a scope
before the view runs and drops it afterwards:
1. Public endpoints never hold a scope; everything else needs credentials
2. Claims are checked against the stored hierarchy (inactive tenant -> 403)
3. Denials carry a generic body; the cause is audit-logged
4. The scope is released after every request, including failed ones
5. Views only ever see rows of the caller's scope
"""

import inspect
import threading
import warnings

import pytest
from flask import Flask, g, jsonify, request

from clinicscope.decorators import public_endpoint
from clinicscope.isolation import accessor, middleware
from clinicscope.isolation.middleware import (
    ACTIVE_BRANCH_HEADER,
    RESOLVED,
    ScopeResolver,
    TORN_DOWN,
    UNRESOLVED,
)
from clinicscope.isolation.scope import AccessScope, NO_ACCESS, Principal, ROLE_SUPER_ADMIN, ROLE_TENANT_ADMIN
from clinicscope.models import SecurityEvent, SessionToken
from clinicscope.services import audit_service


def _events(db_session, platform, event_type):
    with platform():
        return (
            db_session.query(SecurityEvent)
            .filter_by(event_type=event_type)
            .order_by(SecurityEvent.id)
            .all()
        )


class TestPublicAndAnonymous:

    def test_health_is_public(self, client, db_session):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.json['checks']['database']['status'] == 'healthy'

    def test_missing_token_is_401(self, client, db_session, platform):
        response = client.get('/api/patients')
        assert response.status_code == 401
        assert response.json == {'error': 'Authentication required'}
        assert len(_events(db_session, platform, audit_service.SCOPE_RESOLUTION_DENIED)) == 1

    def test_invalid_token_is_401(self, client, db_session):
        response = client.get('/api/patients', headers={'Authorization': 'Bearer not-a-real-token'})
        assert response.status_code == 401

    def test_unknown_route_is_plain_404(self, client, db_session):
        assert client.get('/api/does-not-exist').status_code == 404

    def test_scope_released_after_request(self, client, db_session, login, branch_user_a, patient_a1):
        headers = login(branch_user_a, tenant_code='ACME')
        assert client.get('/api/patients', headers=headers).status_code == 200
        assert accessor.current_scope() is NO_ACCESS


class TestLogin:

    def test_tenant_user_needs_tenant_code(self, client, db_session, branch_user_a):
        response = client.post('/api/auth/login', json={
            'username': 'acme_nurse', 'password': 'Password123!',
        })
        assert response.status_code == 401

    def test_wrong_tenant_code(self, client, db_session, branch_user_a, tenant_b):
        response = client.post('/api/auth/login', json={
            'username': 'acme_nurse', 'password': 'Password123!', 'tenant_code': 'BETA',
        })
        assert response.status_code == 401

    def test_login_returns_token_and_session(self, client, db_session, branch_user_a, tenant_a):
        response = client.post('/api/auth/login', json={
            'username': 'acme_nurse', 'password': 'Password123!', 'tenant_code': 'ACME',
        })
        assert response.status_code == 200
        assert len(response.json['token']) == 64
        assert response.json['session']['tenant_id'] == tenant_a.id
        assert response.json['user']['role'] == 'BRANCH_USER'

    def test_missing_fields(self, client, db_session):
        assert client.post('/api/auth/login', json={'username': 'x'}).status_code == 400

    def test_logout_revokes_token(self, client, db_session, login, branch_user_a):
        headers = login(branch_user_a, tenant_code='ACME')
        assert client.post('/api/auth/logout', headers=headers).status_code == 200
        assert client.get('/api/context', headers=headers).status_code == 401
        assert client.post('/api/auth/logout', headers=headers).status_code == 401


class TestResolutionDenied:

    def test_inactive_tenant_denied_with_generic_body(
        self, client, db_session, platform, login, tenant_a, branch_user_a
    ):
        headers = login(branch_user_a, tenant_code='ACME')
        with platform():
            tenant_a.is_active = False
            db_session.commit()

        response = client.get('/api/patients', headers=headers)

        assert response.status_code == 403
        assert response.json == {'error': 'Access denied'}
        event = _events(db_session, platform, audit_service.SCOPE_RESOLUTION_DENIED)[-1]
        assert event.tenant_id == tenant_a.id
        assert event.user_id == str(branch_user_a.id)
        assert 'inactive' in event.reason

    def test_inactive_branch_denied(self, client, db_session, platform, login, branch_a1, branch_user_a):
        headers = login(branch_user_a, tenant_code='ACME')
        with platform():
            branch_a1.is_active = False
            db_session.commit()

        assert client.get('/api/patients', headers=headers).status_code == 403

    def test_denial_status_is_configurable(self, app, client, db_session, platform, login, tenant_a, branch_user_a):
        headers = login(branch_user_a, tenant_code='ACME')
        with platform():
            tenant_a.is_active = False
            db_session.commit()

        app.config['TENANCY_DENIAL_STATUS'] = 404
        try:
            response = client.get('/api/patients', headers=headers)
        finally:
            app.config['TENANCY_DENIAL_STATUS'] = 403
        assert response.status_code == 404
        assert response.json == {'error': 'Access denied'}

    def test_deactivated_tenant_sessions_are_revoked(
        self, client, db_session, login, super_admin, tenant_b, branch_user_b
    ):
        tenant_headers = login(branch_user_b, tenant_code='BETA')
        admin_headers = login(super_admin)

        response = client.post(
            f'/api/admin/tenants/{tenant_b.id}/deactivate',
            headers=admin_headers,
            json={'reason': 'contract ended'},
        )

        assert response.status_code == 200
        assert response.json['is_active'] is False
        assert client.get('/api/patients', headers=tenant_headers).status_code == 401


class TestRequestLifecycle:
    """Exercised on a bare Flask app with a fixed identity."""

    @pytest.fixture
    def bare_app(self):
        accessor.clear()
        app = Flask(__name__)
        seen = {}

        @app.teardown_request
        def record_state(exc=None):
            # Registered before the resolver, so it runs after the resolver's teardown
            seen['final_state'] = g.get('scope_state')

        ScopeResolver(app, identity_resolver=lambda: Principal(user_id=1, role=ROLE_SUPER_ADMIN))

        @app.get('/public')
        @public_endpoint
        def public_view():
            seen['state'] = g.scope_state
            return jsonify({'scoped': accessor.is_context_set()})

        @app.get('/private')
        def private_view():
            seen['state'] = g.scope_state
            return jsonify({'super': accessor.current_scope().is_super_admin})

        @app.get('/boom')
        def boom():
            raise RuntimeError("view failed")

        app.config['PROPAGATE_EXCEPTIONS'] = False
        app.seen = seen
        yield app
        accessor.clear()

    def test_public_endpoint_holds_no_scope(self, bare_app):
        response = bare_app.test_client().get('/public')
        assert response.json == {'scoped': False}
        assert bare_app.seen['state'] == UNRESOLVED
        assert bare_app.seen['final_state'] == UNRESOLVED

    def test_private_endpoint_resolved_then_torn_down(self, bare_app):
        response = bare_app.test_client().get('/private')
        assert response.json == {'super': True}
        assert bare_app.seen['state'] == RESOLVED
        assert bare_app.seen['final_state'] == TORN_DOWN
        assert accessor.current_scope() is NO_ACCESS

    def test_scope_released_when_view_raises(self, bare_app):
        response = bare_app.test_client().get('/boom')
        assert response.status_code == 500
        assert bare_app.seen['final_state'] == TORN_DOWN
        assert accessor.current_scope() is NO_ACCESS


class TestConcurrentRequests:
    """Two requests for different tenants in flight at the same time."""

    @pytest.fixture
    def tenant_app(self, monkeypatch):
        accessor.clear()
        monkeypatch.setattr(
            middleware, "resolve_scope",
            lambda principal: AccessScope.create(tenant_id=principal.tenant_id, user_id=principal.user_id),
        )
        app = Flask(__name__)
        barrier = threading.Barrier(2)

        def identity():
            tenant_id = int(request.headers['X-Tenant'])
            return Principal(user_id=tenant_id, role=ROLE_TENANT_ADMIN, tenant_id=tenant_id)

        ScopeResolver(app, identity_resolver=identity)

        @app.get('/whoami')
        def whoami():
            before = accessor.current_scope().tenant_id
            # Both requests hold their scope before either one reads it again
            barrier.wait(timeout=5)
            return jsonify({'before': before, 'after': accessor.current_scope().tenant_id})

        yield app
        accessor.clear()

    def test_requests_keep_their_own_tenant(self, tenant_app):
        results = {}
        errors = []

        def call(tenant_id):
            try:
                response = tenant_app.test_client().get('/whoami', headers={'X-Tenant': str(tenant_id)})
                results[tenant_id] = (response.json, accessor.current_scope() is NO_ACCESS)
            except Exception as exc:  # collected and asserted in the main thread
                errors.append(exc)

        threads = [threading.Thread(target=call, args=(tenant_id,)) for tenant_id in (1, 2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert results == {
            1: ({'before': 1, 'after': 1}, True),
            2: ({'before': 2, 'after': 2}, True),
        }
        assert accessor.current_scope() is NO_ACCESS


class TestActiveBranch:

    def test_header_switches_active_branch(self, client, db_session, login, branch_user_a, branch_a2):
        headers = login(branch_user_a, tenant_code='ACME', **{ACTIVE_BRANCH_HEADER: str(branch_a2.id)})
        response = client.get('/api/context', headers=headers)
        assert response.status_code == 200
        assert response.json['scope']['branch_id'] == branch_a2.id

    def test_header_with_foreign_branch_denied(
        self, client, db_session, platform, login, branch_user_a, branch_a3
    ):
        headers = login(branch_user_a, tenant_code='ACME', **{ACTIVE_BRANCH_HEADER: str(branch_a3.id)})
        response = client.get('/api/context', headers=headers)
        assert response.status_code == 403
        assert response.json == {'error': 'Access denied'}
        assert len(_events(db_session, platform, audit_service.SCOPE_RESOLUTION_DENIED)) == 1

    def test_malformed_header_denied(self, client, db_session, login, branch_user_a):
        headers = login(branch_user_a, tenant_code='ACME', **{ACTIVE_BRANCH_HEADER: 'downtown'})
        assert client.get('/api/context', headers=headers).status_code == 403

    def test_switch_endpoint(self, client, db_session, platform, login, branch_user_a, branch_a2, branch_b1):
        headers = login(branch_user_a, tenant_code='ACME')

        ok = client.post('/api/context/branch', headers=headers, json={'branch_id': branch_a2.id})
        assert ok.status_code == 200
        assert ok.json['scope']['branch_id'] == branch_a2.id
        assert ok.json['header'] == {ACTIVE_BRANCH_HEADER: str(branch_a2.id)}
        assert len(_events(db_session, platform, audit_service.BRANCH_SWITCHED)) == 1

        denied = client.post('/api/context/branch', headers=headers, json={'branch_id': branch_b1.id})
        assert denied.status_code == 403

    def test_switch_does_not_outlive_request(self, client, db_session, login, branch_user_a, branch_a1, branch_a2):
        headers = login(branch_user_a, tenant_code='ACME')
        client.post('/api/context/branch', headers=headers, json={'branch_id': branch_a2.id})
        response = client.get('/api/context', headers=headers)
        assert response.json['scope']['branch_id'] == branch_a1.id


class TestContextEndpoint:

    def test_tenant_admin_context(self, client, db_session, login, tenant_a, tenant_admin_a):
        response = client.get('/api/context', headers=login(tenant_admin_a, tenant_code='ACME'))
        assert response.status_code == 200
        assert response.json['role'] == 'TENANT_ADMIN'
        assert response.json['scope']['tenant_id'] == tenant_a.id
        assert response.json['scope']['accessible_branch_ids'] is None
        assert response.json['tenant']['code'] == 'ACME'

    def test_super_admin_context(self, client, db_session, login, super_admin):
        response = client.get('/api/context', headers=login(super_admin))
        assert response.json['scope']['is_super_admin'] is True
        assert response.json['tenant'] is None


class TestPatientApi:

    def test_list_is_scoped(self, client, db_session, login, branch_user_a, patient_a1, patient_a2, patient_a3, patient_b1):
        response = client.get('/api/patients', headers=login(branch_user_a, tenant_code='ACME'))
        assert response.status_code == 200
        assert response.json['count'] == 2
        assert sorted(p['full_name'] for p in response.json['patients']) == ["Aaron Uptown", "Alice Downtown"]

    def test_foreign_patient_is_404(self, client, db_session, login, branch_user_a, patient_b1):
        response = client.get(f'/api/patients/{patient_b1.id}', headers=login(branch_user_a, tenant_code='ACME'))
        assert response.status_code == 404

    def test_create_in_accessible_branch(self, client, db_session, login, branch_user_a, branch_a2):
        headers = login(branch_user_a, tenant_code='ACME')
        payload = {
            'branch_id': branch_a2.id,
            'national_id': 'A2-0100',
            'full_name': 'Anna New',
            'date_of_birth': '1990-04-01',
        }
        response = client.post('/api/patients', headers=headers, json=payload)
        assert response.status_code == 201
        assert response.json['branch_id'] == branch_a2.id

        duplicate = client.post('/api/patients', headers=headers, json=payload)
        assert duplicate.status_code == 409

    def test_create_in_foreign_branch_is_404(self, client, db_session, login, branch_user_a, branch_a3, branch_b1):
        headers = login(branch_user_a, tenant_code='ACME')
        for branch in (branch_a3, branch_b1):
            response = client.post('/api/patients', headers=headers, json={
                'branch_id': branch.id, 'national_id': 'X-1', 'full_name': 'Nope',
            })
            assert response.status_code == 404

    def test_transfer_within_company(self, client, db_session, login, branch_user_a, branch_a2, patient_a1):
        response = client.post(
            f'/api/patients/{patient_a1.id}/transfer',
            headers=login(branch_user_a, tenant_code='ACME'),
            json={'target_branch_id': branch_a2.id},
        )
        assert response.status_code == 200
        assert response.json['branch_id'] == branch_a2.id

    def test_cross_company_transfer_denied(self, client, db_session, login, tenant_admin_a, branch_a3, patient_a1):
        response = client.post(
            f'/api/patients/{patient_a1.id}/transfer',
            headers=login(tenant_admin_a, tenant_code='ACME'),
            json={'target_branch_id': branch_a3.id},
        )
        assert response.status_code == 403

    def test_cross_tenant_transfer_denied_and_audited(
        self, client, db_session, platform, login, tenant_a, tenant_b, super_admin, branch_b1, patient_a1
    ):
        response = client.post(
            f'/api/patients/{patient_a1.id}/transfer',
            headers=login(super_admin),
            json={'target_branch_id': branch_b1.id},
        )
        assert response.status_code == 403

        events = _events(db_session, platform, audit_service.CROSS_TENANT_RELATIONSHIP_DENIED)
        assert len(events) == 1
        assert "different tenants" in events[0].reason

    def test_delete_hides_patient(self, client, db_session, login, branch_user_a, patient_a1):
        headers = login(branch_user_a, tenant_code='ACME')
        assert client.delete(f'/api/patients/{patient_a1.id}', headers=headers).status_code == 200
        assert client.get(f'/api/patients/{patient_a1.id}', headers=headers).status_code == 404

        listed = client.get('/api/patients?include_deleted=true', headers=headers)
        assert [p['id'] for p in listed.json['patients']] == [patient_a1.id]

    def test_appointments(self, client, db_session, login, branch_user_a, branch_a1, branch_b1, patient_a1):
        headers = login(branch_user_a, tenant_code='ACME')
        url = f'/api/patients/{patient_a1.id}/appointments'

        booked = client.post(url, headers=headers, json={
            'branch_id': branch_a1.id, 'scheduled_at': '2026-11-02T09:30:00Z',
        })
        assert booked.status_code == 201
        assert booked.json['status'] == 'BOOKED'

        foreign = client.post(url, headers=headers, json={
            'branch_id': branch_b1.id, 'scheduled_at': '2026-11-02T09:30:00Z',
        })
        assert foreign.status_code == 404

        listed = client.get(url, headers=headers)
        assert [a['branch_id'] for a in listed.json['appointments']] == [branch_a1.id]


class TestAdminApi:

    def test_isolation_audit_for_super_admin(
        self, client, db_session, login, tenant_a, super_admin, patient_a1, patient_b1
    ):
        response = client.get('/api/admin/isolation-audit/patient', headers=login(super_admin))
        assert response.status_code == 200
        assert response.json['entity_type'] == 'Patient'
        assert response.json['total_records'] == 2
        assert response.json['tenant_distribution'][str(tenant_a.id)] == 1

    def test_isolation_audit_unknown_entity(self, client, db_session, login, super_admin):
        assert client.get('/api/admin/isolation-audit/invoices', headers=login(super_admin)).status_code == 404

    def test_isolation_audit_refused_for_tenant_admin(self, client, db_session, login, tenant_admin_a):
        response = client.get('/api/admin/isolation-audit/patient', headers=login(tenant_admin_a, tenant_code='ACME'))
        assert response.status_code == 403
        assert response.json == {'error': 'Access denied'}

    def test_tenant_limits_own_tenant_only(self, client, db_session, login, tenant_a, tenant_b, tenant_admin_a, company_a):
        headers = login(tenant_admin_a, tenant_code='ACME')

        own = client.get(f'/api/admin/tenants/{tenant_a.id}/limits', headers=headers)
        assert own.status_code == 200
        assert own.json['companies'] == 1
        assert own.json['can_create_company'] is True

        other = client.get(f'/api/admin/tenants/{tenant_b.id}/limits', headers=headers)
        assert other.status_code == 404

    def test_deactivate_requires_reason(self, client, db_session, login, super_admin, tenant_b):
        response = client.post(f'/api/admin/tenants/{tenant_b.id}/deactivate', headers=login(super_admin), json={})
        assert response.status_code == 400


class TestSessionRecords:

    def test_session_captures_tenant(self, client, db_session, platform, login, tenant_a, branch_user_a):
        login(branch_user_a, tenant_code='ACME')
        with platform():
            session = db_session.query(SessionToken).filter_by(user_id=branch_user_a.id).one()
        assert session.tenant_id == tenant_a.id
        assert session.is_revoked is False


def test_middleware_source_compiles_without_warnings():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(inspect.getsource(middleware), middleware.__file__, "exec")
