"""
Tests for the admission-gated onboarding endpoints.

Tests:
- Response envelopes and status codes
- The invite, validate and create-account flow
- Rate limiting and suspicious activity auditing
- Security headers and CORS preflight
"""

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select

from core.database import session_scope
from core.database_models import Account, Invitation, NotificationMessage, Profile
from core.errors import AccountProvisioningError, StoreUnavailable

EMAIL = 'agent@example.com'
PASSWORD = 'Sup3r$ecretPass'
GENERIC_ERROR = 'This invitation link has expired or is invalid'


@pytest.fixture
def services(app):
    return app.onboarding


@pytest.fixture
def invite(client, transport):
    """Send an invitation and return (invitation id, token from the emailed link)"""
    def send(email=EMAIL, **extra):
        response = client.post('/invite', json={'email': email, 'adminUserId': 'admin-1', **extra})
        body = response.get_json()
        assert body['success'] is True, body
        link = urlparse(_accept_link(transport.sent[-1].text))
        return body['invitationId'], parse_qs(link.query)['token'][0]
    return send


def _accept_link(text):
    for word in text.split():
        word = word.strip('()')
        if '/accept-invitation?' in word:
            return word
    raise AssertionError('No invitation link in message')


def _count(services, model):
    with session_scope(services.session_factory) as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


class TestInvite:

    def test_invite_sends_email(self, client, transport, services):
        response = client.post('/invite', json={'email': EMAIL, 'adminUserId': 'admin-1'})

        assert response.status_code == 200
        body = response.get_json()
        assert body['success'] is True
        assert body['emailDelivered'] is True
        assert transport.sent[0].recipients == [EMAIL]
        assert transport.sent[0].subject == "You've been invited to join Ireland Pay as a Sales Agent"

        invitation = services.tokens.get(body['invitationId'])
        link = urlparse(_accept_link(transport.sent[0].text))
        assert f"{link.scheme}://{link.netloc}{link.path}" == 'https://portal.example.com/accept-invitation'
        assert parse_qs(link.query) == {'token': [invitation.token], 'email': [EMAIL]}
        assert invitation.created_by == 'admin-1'

    def test_duplicate_invite_rejected(self, client, invite):
        invite()

        response = client.post('/invite', json={'email': EMAIL})

        assert response.status_code == 200
        assert response.get_json() == {
            'success': False,
            'error': 'An active invitation already exists for this email',
        }

    def test_invalid_email_is_bad_request(self, client):
        response = client.post('/invite', json={'email': 'not-an-email'})

        assert response.status_code == 400
        assert response.get_json() == {'success': False, 'error': 'Invalid email format'}

    def test_malformed_body_is_bad_request(self, client):
        response = client.post('/invite', data='{not json', content_type='application/json')

        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_undelivered_email_still_issues_invitation(self, client, transport, services):
        transport.default = False

        response = client.post('/invite', json={'email': EMAIL})

        body = response.get_json()
        assert body['success'] is True
        assert body['emailDelivered'] is False
        assert _count(services, Invitation) == 1
        assert _count(services, NotificationMessage) == 1

    def test_names_personalise_message(self, client, transport):
        client.post('/invite', json={'email': EMAIL, 'inviteeName': 'Jordan', 'inviterName': 'Alex'})

        assert 'Hello Jordan,' in transport.sent[0].text
        assert 'Alex has invited you' in transport.sent[0].text


class TestValidateToken:

    def test_valid_token(self, client, invite):
        _, token = invite()

        response = client.post('/validate-token', json={'token': token, 'email': EMAIL})

        assert response.status_code == 200
        assert response.get_json() == {'valid': True, 'email': EMAIL}

    def test_wrong_email_gets_generic_error(self, client, invite):
        _, token = invite()

        response = client.post('/validate-token', json={'token': token, 'email': 'other@example.com'})

        assert response.status_code == 200
        assert response.get_json() == {'valid': False, 'error': GENERIC_ERROR}

    def test_missing_fields(self, client):
        response = client.post('/validate-token', json={'token': 'abc'})

        assert response.status_code == 400
        assert response.get_json() == {'valid': False, 'error': 'Token and email are required'}

    def test_expired_token(self, client, invite, clock):
        _, token = invite()
        clock.advance(days=7)

        response = client.post('/validate-token', json={'token': token, 'email': EMAIL})

        assert response.get_json() == {'valid': False, 'error': GENERIC_ERROR}


class TestCreateAccount:

    def test_redeem_invitation(self, client, invite, services):
        invitation_id, token = invite()

        response = client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': PASSWORD})

        assert response.status_code == 200
        body = response.get_json()
        assert body['success'] is True
        assert body['user']['email'] == EMAIL
        assert body['user']['role'] == 'sales_agent'

        invitation = services.tokens.get(invitation_id)
        assert invitation.status == 'accepted'
        assert invitation.accepted_by_user_id == body['user']['id']

    def test_token_is_single_use(self, client, invite, services):
        _, token = invite()
        payload = {'token': token, 'email': EMAIL, 'password': PASSWORD}
        client.post('/create-account', json=payload)

        response = client.post('/create-account', json=payload)

        assert response.get_json() == {'success': False, 'error': GENERIC_ERROR}
        assert _count(services, Account) == 1

    def test_wrong_email_creates_nothing(self, client, invite, services):
        _, token = invite()

        response = client.post('/create-account', json={
            'token': token, 'email': 'intruder@example.com', 'password': PASSWORD})

        assert response.get_json() == {'success': False, 'error': GENERIC_ERROR}
        assert _count(services, Account) == 0

    def test_weak_password(self, client, invite):
        _, token = invite()

        response = client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': 'weak'})

        assert response.status_code == 400
        assert response.get_json() == {
            'success': False,
            'error': 'Password must be at least 12 characters long',
        }

    def test_missing_fields(self, client):
        response = client.post('/create-account', json={'email': EMAIL})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Token, email, and password are required'

    def test_profile_failure_rolls_back_account(self, client, invite, services, monkeypatch, audit_events):
        invitation_id, token = invite()

        def fail_profile(account, role='sales_agent'):
            raise AccountProvisioningError('profiles table unavailable')

        monkeypatch.setattr(services.accounts, 'create_profile', fail_profile)

        response = client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': PASSWORD})

        assert response.status_code == 200
        assert response.get_json() == {'success': False, 'error': 'Failed to create user profile'}
        assert _count(services, Account) == 0
        assert _count(services, Profile) == 0
        assert services.tokens.get(invitation_id).status == 'pending'

        failures = [e.payload for e in audit_events(services.session_factory, 'invitation_accepted')]
        assert len(failures) == 1
        assert failures[0]['error'] == 'Failed to create user profile'
        assert failures[0]['success'] is False

    def test_existing_account_rejected_without_store_detail(self, client, invite, services, audit_events):
        invitation_id, token = invite()
        services.accounts.create_account(EMAIL, 'An0ther$ecretPass')

        response = client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': PASSWORD})

        assert response.status_code == 200
        assert response.get_json() == {'success': False, 'error': 'A user with this email already exists'}
        assert b'INSERT' not in response.data
        assert _count(services, Account) == 1
        assert services.tokens.get(invitation_id).status == 'pending'

        [event] = audit_events(services.session_factory, 'invitation_accepted')
        assert event.payload['success'] is False
        assert 'INSERT' not in event.payload['error']

    def test_store_outage_during_account_insert(self, client, invite, services, monkeypatch):
        _, token = invite()

        def unavailable(email, password):
            raise StoreUnavailable('(sqlite3.OperationalError) database is locked [SQL: INSERT INTO accounts]')

        monkeypatch.setattr(services.accounts, 'create_account', unavailable)

        response = client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': PASSWORD})

        assert response.status_code == 503
        assert response.get_json() == {'success': False, 'error': 'Service temporarily unavailable'}


class TestCreateAccountAuditing:

    def _events(self, services, audit_events):
        return [e for e in audit_events(services.session_factory)
                if e.event_type in ('invitation_validated', 'invalid_invitation_attempt',
                                    'invitation_accepted')]

    def test_success_records_one_event(self, client, invite, services, audit_events):
        invitation_id, token = invite()

        client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': PASSWORD})

        [event] = self._events(services, audit_events)
        assert event.event_type == 'invitation_accepted'
        assert event.payload['success'] is True
        assert event.payload['invitationId'] == invitation_id

    def test_wrong_token_records_one_event(self, client, invite, services, audit_events):
        invite()

        client.post('/create-account', json={'token': 'f' * 64, 'email': EMAIL, 'password': PASSWORD})

        [event] = self._events(services, audit_events)
        assert event.event_type == 'invitation_accepted'
        assert event.payload == {'email': EMAIL, 'success': False, 'error': 'token_not_found'}

    def test_profile_rollback_records_one_event(self, client, invite, services, monkeypatch, audit_events):
        _, token = invite()

        def fail_profile(account, role='sales_agent'):
            raise AccountProvisioningError('Failed to create user profile')

        monkeypatch.setattr(services.accounts, 'create_profile', fail_profile)

        client.post('/create-account', json={'token': token, 'email': EMAIL, 'password': PASSWORD})

        [event] = self._events(services, audit_events)
        assert event.event_type == 'invitation_accepted'
        assert event.payload['success'] is False


class TestAdmissionControl:

    def test_sixth_account_attempt_denied(self, client, services, audit_events):
        payload = {'token': 'f' * 64, 'email': EMAIL, 'password': PASSWORD}
        for _ in range(5):
            assert client.post('/create-account', json=payload).get_json()['error'] == GENERIC_ERROR

        response = client.post('/create-account', json=payload)

        assert response.status_code == 200
        assert response.get_json() == {
            'success': False,
            'error': 'Too many attempts. Please try again later.',
        }
        assert 0 < int(response.headers['Retry-After']) <= 3600

        [event] = audit_events(services.session_factory, 'rate_limit_exceeded')
        assert event.payload['key'] == 'create_user:127.0.0.1'
        assert event.payload['email'] == EMAIL
        assert event.source_address == '127.0.0.1'

    def test_limit_resets_next_window(self, client, clock):
        payload = {'token': 'f' * 64, 'email': EMAIL}
        for _ in range(10):
            client.post('/validate-token', json=payload)
        assert client.post('/validate-token', json=payload).get_json()['error'].startswith('Too many')

        clock.advance(hours=1)

        assert client.post('/validate-token', json=payload).get_json()['error'] == GENERIC_ERROR

    def test_limit_checked_before_body_is_read(self, client):
        for _ in range(10):
            client.post('/validate-token', data='garbage', content_type='text/plain')

        response = client.post('/validate-token', data='garbage', content_type='text/plain')

        assert response.status_code == 200
        assert response.get_json()['valid'] is False
        assert response.get_json()['error'].startswith('Too many')

    def test_repeated_denials_flag_suspicious_activity(self, client, services, audit_events):
        payload = {'token': 'f' * 64, 'email': EMAIL}
        for _ in range(10 + 11):
            client.post('/validate-token', json=payload)

        [event] = audit_events(services.session_factory, 'suspicious_activity')
        assert event.source_address == '127.0.0.1'
        assert event.payload['denials'] == 11

    def test_forwarded_address_ignored_without_proxy(self, client, services, audit_events):
        for i in range(6):
            client.post('/create-account', json={}, headers={'X-Forwarded-For': f'10.0.0.{i}'})

        [event] = audit_events(services.session_factory, 'rate_limit_exceeded')
        assert event.payload['key'] == 'create_user:127.0.0.1'


class TestTransportLayer:

    def test_security_headers(self, client):
        response = client.post('/validate-token', json={'token': 'x', 'email': EMAIL})

        assert response.headers['X-Frame-Options'] == 'DENY'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert 'max-age=31536000' in response.headers['Strict-Transport-Security']
        assert "default-src 'self'" in response.headers['Content-Security-Policy']

    def test_preflight_does_not_consume_budget(self, client):
        for _ in range(25):
            response = client.options('/invite', headers={
                'Origin': 'https://portal.example.com',
                'Access-Control-Request-Method': 'POST',
                'Access-Control-Request-Headers': 'content-type',
            })
            assert response.status_code == 200
            assert response.headers.get('Access-Control-Allow-Origin')

        assert client.post('/invite', json={'email': EMAIL}).get_json()['success'] is True

    def test_get_not_allowed(self, client):
        response = client.get('/invite')

        assert response.status_code == 405

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'healthy'
        assert body['components'] == {'store': 'ok'}
