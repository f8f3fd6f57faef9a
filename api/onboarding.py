# api/onboarding.py
"""
Admission-gated onboarding endpoints

    POST /invite          issue an invitation and email it
    POST /validate-token  check a (token, email) pair without consuming it
    POST /create-account  redeem an invitation into an account

Every endpoint is rate limited before its body is read. Logical rejections
answer 200 with a uniform envelope; 4xx/5xx are reserved for malformed
input and unhandled faults.
"""

from flask import Blueprint, current_app, g, jsonify, request
from urllib.parse import urlencode
import logging

from core.audit_logger import AuditEventType
from core.errors import (
    AccountProvisioningError, AdmissionDenied, AlreadyRegistered, Conflict,
    InvalidOrExpired, StoreUnavailable, ValidationError,
)
from core.security import sanitize_input, validate_email_address, validate_password
from core.template_engine import TemplateKind
from middleware.security import admission_gate

onboarding_bp = Blueprint('onboarding', __name__)
logger = logging.getLogger(__name__)


def _envelope(ok: bool, status: int = 200, **fields):
    body = {g.get('envelope_flag', 'success'): ok}
    body.update(fields)
    return jsonify(body), status


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _required(data: dict, *names: str, message: str) -> list:
    values = [data.get(name) for name in names]
    if any(not isinstance(value, str) or not value.strip() for value in values):
        raise ValidationError(message)
    return values


def invitation_url(base_url: str, token: str, email: str) -> str:
    query = urlencode({'token': token, 'email': email})
    return f"{base_url.rstrip('/')}/accept-invitation?{query}"


@onboarding_bp.route('/invite', methods=['POST'])
@admission_gate('send_invite')
def send_invite():
    """
    Issue an invitation and send the invite_sent notification

    Body: {"email": str, "adminUserId": str?, "inviteeName": str?, "inviterName": str?}
    """
    services = current_app.onboarding
    data = _json_body()
    (raw_email,) = _required(data, 'email', message='Email is required')
    email = validate_email_address(sanitize_input(raw_email))
    admin_user_id = data.get('adminUserId')

    invitation = services.tokens.issue(email, created_by=admin_user_id, context=g.audit_context)

    template_data = {
        'invitation_url': invitation_url(current_app.config['PUBLIC_APP_URL'],
                                         invitation.token, email),
        'expiration_date': invitation.expires_at.strftime('%B %d, %Y'),
    }
    for field, variable in (('inviteeName', 'invitee_name'), ('inviterName', 'inviter_name')):
        if isinstance(data.get(field), str) and sanitize_input(data[field]):
            template_data[variable] = sanitize_input(data[field])

    template = services.templates.render(TemplateKind.INVITE_SENT, template_data)
    delivered = services.dispatcher.send(email, template)
    if not delivered:
        logger.warning(f"Invitation {invitation.id} issued but email queued for recovery")

    return _envelope(True, invitationId=invitation.id, emailDelivered=delivered)


@onboarding_bp.route('/validate-token', methods=['POST'])
@admission_gate('validate_token', flag='valid')
def validate_token():
    services = current_app.onboarding
    data = _json_body()
    token, raw_email = _required(data, 'token', 'email', message='Token and email are required')
    email = validate_email_address(sanitize_input(raw_email))

    services.tokens.validate(sanitize_input(token), email, context=g.audit_context)
    return _envelope(True, email=email)


@onboarding_bp.route('/create-account', methods=['POST'])
@admission_gate('create_user')
def create_account():
    """
    Redeem an invitation: validate, create account and profile, then accept

    The account is removed again if the profile cannot be created or the
    invitation was redeemed concurrently.
    """
    services = current_app.onboarding
    config = current_app.config
    context = g.audit_context

    data = _json_body()
    token, raw_email, password = _required(
        data, 'token', 'email', 'password', message='Token, email, and password are required')
    token = sanitize_input(token)
    email = validate_email_address(sanitize_input(raw_email))
    validate_password(password, min_length=config['PASSWORD_MIN_LENGTH'],
                      special_characters=config['PASSWORD_SPECIAL_CHARACTERS'])

    # Exactly one invitation_accepted event per request; accept() records its own
    try:
        services.tokens.check(token, email)
        account = services.accounts.create_account(email, password)
    except (InvalidOrExpired, AlreadyRegistered, StoreUnavailable) as e:
        _record_refusal(email, e)
        raise

    try:
        record = services.accounts.create_profile(account)
    except AccountProvisioningError as e:
        _discard_account(account.id)
        failure = AccountProvisioningError('Failed to create user profile')
        _record_refusal(email, failure)
        raise failure from e

    try:
        services.tokens.accept(token, email, record.id, context=context)
    except (InvalidOrExpired, StoreUnavailable):
        _discard_account(account.id)
        raise

    return _envelope(True, user={'id': record.id, 'email': record.email, 'role': record.role})


def _record_refusal(email: str, error: Exception) -> None:
    if isinstance(error, InvalidOrExpired):
        reason = error.reason
    elif isinstance(error, StoreUnavailable):
        reason = 'store_unavailable'
    else:
        reason = str(error)
    current_app.onboarding.audit.record(AuditEventType.INVITATION_ACCEPTED, g.audit_context.with_payload(
        email=email, success=False, error=reason))


def _discard_account(account_id: str) -> None:
    try:
        current_app.onboarding.accounts.delete_account(account_id)
    except StoreUnavailable as e:
        logger.error(f"Orphaned account {account_id} could not be removed: {e}")


@onboarding_bp.errorhandler(AdmissionDenied)
def admission_denied(error):
    logger.warning(f"Rate limit exceeded for {request.remote_addr} on {request.endpoint}")
    response, status = _envelope(False, error=str(error))
    if error.retry_after:
        response.headers['Retry-After'] = str(error.retry_after)
    return response, status


@onboarding_bp.errorhandler(ValidationError)
def validation_error(error):
    return _envelope(False, 400, error=str(error))


@onboarding_bp.errorhandler(InvalidOrExpired)
@onboarding_bp.errorhandler(Conflict)
@onboarding_bp.errorhandler(AlreadyRegistered)
@onboarding_bp.errorhandler(AccountProvisioningError)
def rejected(error):
    return _envelope(False, error=str(error))


@onboarding_bp.errorhandler(StoreUnavailable)
def store_unavailable(error):
    logger.error(f"Store unavailable during {request.endpoint}: {error}")
    return _envelope(False, 503, error='Service temporarily unavailable')
