# middleware/security.py
"""
Security Middleware for Request Processing
"""

from flask import current_app, g, request
from functools import wraps
import logging

from core.audit_logger import AuditContext, AuditEventType
from core.errors import AdmissionDenied

logger = logging.getLogger(__name__)


def content_security_policy(policy: dict) -> str:
    return '; '.join(f'{directive} {value}' for directive, value in policy.items())


def security_headers(response):
    """Add security headers to all responses"""
    for name, value in current_app.config['SECURITY_HEADERS'].items():
        response.headers[name] = value
    response.headers['Content-Security-Policy'] = content_security_policy(
        current_app.config['CSP_POLICY'])

    return response


def client_context() -> AuditContext:
    """Provenance of the current request, stamped with the action time"""
    return AuditContext(
        source_address=request.remote_addr or 'unknown',
        client_agent=request.headers.get('User-Agent', 'unknown'),
        occurred_at=current_app.onboarding.audit.clock(),
    )


def admission_gate(scope: str, flag: str = 'success'):
    """
    Decorator that admits a request against the rate-limit budget for
    `scope`, keyed on `<scope>:<source address>`

    A denial is audited, checked for suspicious repetition, and raised as
    AdmissionDenied for the blueprint's error handler.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            services = current_app.onboarding
            context = client_context()
            g.audit_context = context
            g.envelope_flag = flag

            max_attempts, window = services.rate_limit(scope)
            key = f"{scope}:{context.source_address}"
            decision = services.rate_limiter.evaluate(key, window, max_attempts)

            if not decision.allowed:
                if not decision.degraded:
                    body = request.get_json(silent=True)
                    email = body.get('email') if isinstance(body, dict) else None
                    services.audit.record(AuditEventType.RATE_LIMIT_EXCEEDED, context.with_payload(
                        key=key,
                        endpoint=request.endpoint,
                        email=email,
                    ))
                    services.suspicious_activity.inspect(context)
                raise AdmissionDenied(retry_after=decision.reset_in)

            return f(*args, **kwargs)
        return decorated_function
    return decorator
