# config/security.py
"""
Security Configuration for the Onboarding Notification Service
"""

import os


class SecurityConfig:
    """Security configuration settings"""

    # Rate limiting: scope -> (max_attempts, window_seconds)
    RATE_LIMITS = {
        'send_invite': (20, 3600),
        'validate_token': (10, 3600),
        'create_user': (5, 3600),
    }
    RATE_LIMIT_FAIL_CLOSED = True

    # Suspicious activity: more than N denials from one address in the lookback
    SUSPICIOUS_DENIAL_THRESHOLD = 10
    SUSPICIOUS_LOOKBACK_HOURS = 24

    # Password policy
    PASSWORD_MIN_LENGTH = 12
    PASSWORD_SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

    # CORS
    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get('CORS_ORIGINS', '*').split(',')
        if origin.strip()
    ]
    CORS_ALLOW_HEADERS = ['authorization', 'x-client-info', 'apikey', 'content-type']

    # Content Security Policy
    CSP_POLICY = {
        'default-src': "'self'",
        'img-src': "'self' data: https:",
        'style-src': "'self' 'unsafe-inline'",
        'object-src': "'none'",
        'frame-ancestors': "'none'",
        'base-uri': "'self'",
        'form-action': "'self'"
    }

    # Security headers
    SECURITY_HEADERS = {
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'X-Frame-Options': 'DENY',
        'X-Content-Type-Options': 'nosniff',
        'X-XSS-Protection': '1; mode=block',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()'
    }
