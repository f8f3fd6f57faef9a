# core/template_engine.py
"""
Notification Template Engine
Renders transactional email for the onboarding flows. Rendering is a pure
function of template kind and data: Jinja2 with autoescaping, CSS inlined
for mail clients, HTML sanitised with bleach, and a plain-text alternative
derived from the HTML.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from email.utils import formataddr
from typing import Any, Dict, Optional

import bleach
import premailer
from bleach.css_sanitizer import CSSSanitizer
from bs4 import BeautifulSoup
from jinja2 import DictLoader, Environment, StrictUndefined, TemplateNotFound
from jinja2.exceptions import TemplateError, UndefinedError

from core.errors import OnboardingError

logger = logging.getLogger(__name__)


class TemplateKind(Enum):
    """Supported notification templates"""
    INVITE_SENT = "invite_sent"
    AGREEMENT_SIGNED = "agreement_signed"
    AGENT_APPROVED = "agent_approved"
    TRAINING_ASSIGNED = "training_assigned"
    AGREEMENT_REMINDER = "agreement_reminder"
    TRAINING_REMINDER = "training_reminder"


class TemplateRenderingError(OnboardingError):
    """Unknown template kind, missing variables or broken template"""
    pass


@dataclass
class RenderedTemplate:
    """Subject and bodies ready for the transport"""
    kind: str
    subject: str
    html: str
    text: str
    sender: Optional[str] = None


BASE_LAYOUT = """
<style>
  .container { font-family: Arial, sans-serif; line-height: 1.6; color: #333333; max-width: 600px; margin: 0 auto; padding: 20px; }
  .header { background-color: #f8f9fa; padding: 20px; text-align: center; }
  .content { padding: 20px 0; }
  .button { display: inline-block; background-color: #3182ce; color: #ffffff; text-decoration: none; padding: 12px 24px; font-weight: bold; }
  .footer { font-size: 12px; color: #718096; border-top: 1px solid #e2e8f0; padding-top: 20px; margin-top: 20px; }
</style>
<div class="container">
  <div class="header"><h1>{% block heading %}{% endblock %}</h1></div>
  <div class="content">
    {% block content %}{% endblock %}
  </div>
  <div class="footer">
    <p>{% block footer %}This is an automated notification from {{ company_name }}. Please do not reply to this email.{% endblock %}</p>
  </div>
</div>
"""

TEMPLATES = {
    'base.html': BASE_LAYOUT,

    'invite_sent.html': """{% extends 'base.html' %}
{% block heading %}Welcome to {{ company_name }}!{% endblock %}
{% block content %}
<p>Hello {{ invitee_name }},</p>
<p>{{ inviter_name }} has invited you to join {{ company_name }} as a Sales Agent{% if residual_percent %} with a residual percentage of {{ residual_percent }}%{% endif %}.</p>
<p>To accept this invitation and create your account, please click the button below:</p>
<p><a href="{{ invitation_url }}" class="button">Accept Invitation</a></p>
<p>If the button doesn't work, copy and paste this link into your browser: <a href="{{ invitation_url }}">{{ invitation_url }}</a></p>
<p>This invitation link will expire {% if expiration_date %}on {{ expiration_date }}{% else %}in 7 days{% endif %}.</p>
{% endblock %}
{% block footer %}If you didn't expect this invitation, please ignore this email.{% endblock %}
""",

    'agreement_signed.html': """{% extends 'base.html' %}
{% block heading %}Agreement Signed{% endblock %}
{% block content %}
<p>Hello,</p>
<p><strong>{{ agent_name }}</strong> has signed the <strong>{{ agreement_title }}</strong> agreement on {{ signed_date }}.</p>
<p><a href="{{ agreement_url }}" class="button">View Agreement</a></p>
{% if admin_dashboard_url %}
<p>Administrators can view all agreements on the dashboard:</p>
<p><a href="{{ admin_dashboard_url }}" class="button">Admin Dashboard</a></p>
{% endif %}
{% endblock %}
""",

    'agent_approved.html': """{% extends 'base.html' %}
{% block heading %}Account Approved!{% endblock %}
{% block content %}
<p>Hello {{ agent_name }},</p>
<p>Congratulations! Your agent account has been approved. You now have full access to the Agent Portal.</p>
<p><a href="{{ dashboard_url }}" class="button">Go to Dashboard</a></p>
<p>From your dashboard, you can:</p>
<ul>
  <li>View and sign agreements</li>
  <li>Complete required training</li>
  <li>Submit banking information</li>
  <li>Track your commissions</li>
</ul>
<p>If you have any questions, please contact us at <a href="mailto:{{ support_email }}">{{ support_email }}</a>.</p>
{% endblock %}
""",

    'training_assigned.html': """{% extends 'base.html' %}
{% block heading %}New Training Assigned{% endblock %}
{% block content %}
<p>Hello {{ agent_name }},</p>
<p>A new training module titled "{{ training_title }}" has been assigned to you{% if assigned_by %} by {{ assigned_by }}{% endif %}.</p>
{% if due_date %}<p><strong>Due Date:</strong> {{ due_date }}</p>{% endif %}
<p><a href="{{ training_url }}" class="button">Start Training</a></p>
{% endblock %}
""",

    'agreement_reminder.html': """{% extends 'base.html' %}
{% block heading %}Agreement Awaiting Signature{% endblock %}
{% block content %}
<p>Hello {{ agent_name }},</p>
<p>This is a friendly reminder that the <strong>{{ agreement_title }}</strong> agreement requires your signature.</p>
{% if due_date %}<p><strong>Please sign by:</strong> {{ due_date }}</p>{% endif %}
<p><a href="{{ agreement_url }}" class="button">Sign Agreement</a></p>
{% endblock %}
""",

    'training_reminder.html': """{% extends 'base.html' %}
{% block heading %}Training Reminder{% endblock %}
{% block content %}
<p>Hello {{ agent_name }},</p>
<p>This is a friendly reminder that you have {% if pending_count %}{{ pending_count }} {% endif %}training modules that need to be completed.</p>
<p><a href="{{ training_url }}" class="button">Continue Training</a></p>
{% endblock %}
""",
}

SUBJECTS = {
    TemplateKind.INVITE_SENT: "You've been invited to join {{ company_name }} as a Sales Agent",
    TemplateKind.AGREEMENT_SIGNED: "Agreement Signed: {{ agreement_title }}",
    TemplateKind.AGENT_APPROVED: "Your Agent Account Has Been Approved",
    TemplateKind.TRAINING_ASSIGNED: "New Training Assigned: {{ training_title }}",
    TemplateKind.AGREEMENT_REMINDER: "Reminder: {{ agreement_title }} is awaiting your signature",
    TemplateKind.TRAINING_REMINDER: "Reminder: complete your assigned training",
}

# Optional variables and their fallbacks; anything else is required
DEFAULTS = {
    TemplateKind.INVITE_SENT: {
        'invitee_name': 'there',
        'inviter_name': None,
        'residual_percent': None,
        'expiration_date': None,
    },
    TemplateKind.AGREEMENT_SIGNED: {'admin_dashboard_url': None},
    TemplateKind.AGENT_APPROVED: {'support_email': 'support@agent-agreement-nexus.com'},
    TemplateKind.TRAINING_ASSIGNED: {'due_date': None, 'assigned_by': None},
    TemplateKind.AGREEMENT_REMINDER: {'due_date': None},
    TemplateKind.TRAINING_REMINDER: {'pending_count': None},
}

EMAIL_SAFE_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u',
    'h1', 'h2', 'h3', 'ul', 'ol', 'li', 'a', 'img',
    'table', 'tbody', 'tr', 'td', 'div', 'span', 'hr'
]

EMAIL_SAFE_ATTRIBUTES = {
    '*': ['style', 'title', 'align'],
    'a': ['href', 'title', 'target'],
    'img': ['src', 'alt', 'width', 'height'],
}

EMAIL_SAFE_PROTOCOLS = ['http', 'https', 'mailto']


class NotificationTemplateEngine:
    """Deterministic renderer for the notification templates"""

    def __init__(self, company_name: str = 'Ireland Pay', default_sender: Optional[str] = None,
                 enable_css_inlining: bool = True):
        self.company_name = company_name
        self.default_sender = default_sender
        self.enable_css_inlining = enable_css_inlining

        self.env = Environment(
            loader=DictLoader(TEMPLATES),
            autoescape=True,
            undefined=StrictUndefined,  # Fail on undefined variables
            trim_blocks=True,
            lstrip_blocks=True,
        )
        # Subjects are headers, not markup
        self.subject_env = Environment(autoescape=False, undefined=StrictUndefined)

        self.html_cleaner = bleach.Cleaner(
            tags=EMAIL_SAFE_TAGS,
            attributes=EMAIL_SAFE_ATTRIBUTES,
            protocols=EMAIL_SAFE_PROTOCOLS,
            css_sanitizer=CSSSanitizer(allowed_css_properties=[
                'color', 'background-color', 'font-family', 'font-size', 'font-weight',
                'line-height', 'text-align', 'text-decoration', 'display',
                'margin', 'margin-top', 'padding', 'padding-top',
                'border-top', 'max-width',
            ]),
            strip=True,  # Strip disallowed tags instead of escaping
            strip_comments=True
        )

    def render(self, kind, data: Dict[str, Any]) -> RenderedTemplate:
        """
        Render subject, HTML and text for a template kind

        Args:
            kind: TemplateKind or its string value
            data: Template variables

        Returns:
            RenderedTemplate

        Raises:
            TemplateRenderingError: unknown kind or missing required variable
        """
        try:
            kind = TemplateKind(kind)
        except ValueError as e:
            raise TemplateRenderingError(f"Unknown template kind: {kind}") from e

        variables = {'company_name': self.company_name, **DEFAULTS[kind], **data}
        if variables.get('inviter_name') is None and 'inviter_name' in variables:
            variables['inviter_name'] = variables['company_name']

        try:
            subject = self.subject_env.from_string(SUBJECTS[kind]).render(**variables)
            html = self.env.get_template(f'{kind.value}.html').render(**variables)
        except UndefinedError as e:
            raise TemplateRenderingError(f"Template variable error: {e}") from e
        except (TemplateNotFound, TemplateError) as e:
            raise TemplateRenderingError(f"Template rendering failed: {e}") from e

        if self.enable_css_inlining:
            html = self._inline_css(html)
        html = self.html_cleaner.clean(html).strip()

        return RenderedTemplate(
            kind=kind.value,
            subject=' '.join(subject.split()),
            html=html,
            text=self._html_to_text(html),
            sender=self.default_sender,
        )

    def _inline_css(self, html_content: str) -> str:
        """Inline the layout stylesheet for mail clients"""
        p = premailer.Premailer(
            html_content,
            remove_classes=True,
            keep_style_tags=False,
            strip_important=False,
            allow_network=False,
            cssutils_logging_level=logging.CRITICAL,
        )
        return p.transform()

    def _html_to_text(self, html_content: str) -> str:
        """
        Convert HTML to plain text with proper formatting for email
        """
        soup = BeautifulSoup(html_content, 'html.parser')

        for br in soup.find_all('br'):
            br.replace_with('\n')

        for p in soup.find_all('p'):
            p.insert_after('\n\n')

        for header in soup.find_all(['h1', 'h2', 'h3']):
            header.insert_before('\n')
            header.insert_after('\n\n')

        for li in soup.find_all('li'):
            li.insert_before('- ')
            li.insert_after('\n')

        # Handle links
        for link in soup.find_all('a', href=True):
            link_text = link.get_text()
            href = link['href']
            if href != link_text and not href.startswith('mailto:'):
                link.replace_with(f"{link_text} ({href})")

        text = soup.get_text()

        text = re.sub(r'[ \t]+', ' ', text)      # Normalize spaces
        text = re.sub(r' *\n *', '\n', text)
        text = re.sub(r'\n{3,}', '\n\n', text)   # Collapse empty lines
        return text.strip()


def default_sender(from_name: str, from_address: str) -> str:
    return formataddr((from_name, from_address))
