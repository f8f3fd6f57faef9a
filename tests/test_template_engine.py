"""
Tests for notification template rendering.
"""

import pytest

from core.template_engine import (
    NotificationTemplateEngine, TemplateKind, TemplateRenderingError, default_sender,
)

INVITE_URL = 'https://portal.example.com/accept-invitation?token=abc123&email=agent%40example.com'

REQUIRED = {
    TemplateKind.INVITE_SENT: {'invitation_url': INVITE_URL},
    TemplateKind.AGREEMENT_SIGNED: {
        'agent_name': 'Jordan Smith', 'agreement_title': 'Sales Agent Agreement',
        'signed_date': 'January 5, 2026', 'agreement_url': 'https://portal.example.com/agreements/1',
    },
    TemplateKind.AGENT_APPROVED: {
        'agent_name': 'Jordan Smith', 'dashboard_url': 'https://portal.example.com/dashboard',
    },
    TemplateKind.TRAINING_ASSIGNED: {
        'agent_name': 'Jordan Smith', 'training_title': 'Compliance 101',
        'training_url': 'https://portal.example.com/training/1',
    },
    TemplateKind.AGREEMENT_REMINDER: {
        'agent_name': 'Jordan Smith', 'agreement_title': 'Sales Agent Agreement',
        'agreement_url': 'https://portal.example.com/agreements/1',
    },
    TemplateKind.TRAINING_REMINDER: {
        'agent_name': 'Jordan Smith', 'training_url': 'https://portal.example.com/training',
    },
}


@pytest.fixture
def engine():
    return NotificationTemplateEngine(company_name='Ireland Pay',
                                      default_sender=default_sender('Onboarding', 'noreply@example.com'))


class TestInviteTemplate:

    def test_subject_and_link(self, engine):
        rendered = engine.render(TemplateKind.INVITE_SENT, {'invitation_url': INVITE_URL})

        assert rendered.kind == 'invite_sent'
        assert rendered.subject == "You've been invited to join Ireland Pay as a Sales Agent"
        assert 'href="https://portal.example.com/accept-invitation?token=abc123' in rendered.html
        assert INVITE_URL in rendered.text
        assert rendered.sender == 'Onboarding <noreply@example.com>'

    def test_optional_fields_fall_back(self, engine):
        rendered = engine.render('invite_sent', {'invitation_url': INVITE_URL})

        assert 'Hello there,' in rendered.text
        assert 'Ireland Pay has invited you' in rendered.text
        assert 'expire in 7 days' in rendered.text

    def test_optional_fields_used_when_given(self, engine):
        rendered = engine.render(TemplateKind.INVITE_SENT, {
            'invitation_url': INVITE_URL,
            'invitee_name': 'Jordan',
            'inviter_name': 'Alex',
            'residual_percent': 40,
            'expiration_date': 'January 12, 2026',
        })

        assert 'Hello Jordan,' in rendered.text
        assert 'Alex has invited you' in rendered.text
        assert 'residual percentage of 40%' in rendered.text
        assert 'expire on January 12, 2026' in rendered.text

    def test_css_is_inlined(self, engine):
        rendered = engine.render(TemplateKind.INVITE_SENT, {'invitation_url': INVITE_URL})

        assert '<style' not in rendered.html
        assert 'class=' not in rendered.html
        assert 'style="' in rendered.html

    def test_markup_in_data_is_neutralised(self, engine):
        rendered = engine.render(TemplateKind.INVITE_SENT, {
            'invitation_url': INVITE_URL,
            'invitee_name': '<script>alert(1)</script>',
        })

        assert '<script>' not in rendered.html

    def test_rendering_is_deterministic(self, engine):
        first = engine.render(TemplateKind.INVITE_SENT, {'invitation_url': INVITE_URL})
        second = engine.render(TemplateKind.INVITE_SENT, {'invitation_url': INVITE_URL})

        assert first == second


class TestTemplateCatalogue:

    @pytest.mark.parametrize('kind', list(TemplateKind))
    def test_every_kind_renders(self, engine, kind):
        rendered = engine.render(kind, REQUIRED[kind])

        assert rendered.subject
        assert rendered.html
        assert rendered.text
        assert '{{' not in rendered.subject

    def test_missing_required_variable(self, engine):
        with pytest.raises(TemplateRenderingError):
            engine.render(TemplateKind.INVITE_SENT, {})

    def test_unknown_kind(self, engine):
        with pytest.raises(TemplateRenderingError):
            engine.render('password_reset', {})

    def test_subject_uses_data(self, engine):
        rendered = engine.render(TemplateKind.TRAINING_ASSIGNED, REQUIRED[TemplateKind.TRAINING_ASSIGNED])

        assert rendered.subject == 'New Training Assigned: Compliance 101'
