"""
Tests for input sanitisation, password policy and credential helpers.
"""

import re

import pytest

from config.settings import ProductionConfig, TestingConfig, get_config
from core.errors import ValidationError
from core.security import (
    generate_token, hash_password, password_problems, sanitize_input,
    validate_email_address, validate_password, verify_password,
)
from middleware.security import content_security_policy


class TestInputSanitisation:

    def test_strips_angle_brackets_and_whitespace(self):
        assert sanitize_input('  <b>agent</b>@example.com ') == 'bagent/b@example.com'

    def test_email_normalised(self):
        assert validate_email_address('Agent@Example.COM') == 'Agent@example.com'

    @pytest.mark.parametrize('email', ['', 'agent', 'agent@', '@example.com', 'a b@example.com'])
    def test_invalid_email(self, email):
        with pytest.raises(ValidationError, match='Invalid email format'):
            validate_email_address(email)


class TestPasswordPolicy:

    def test_strong_password_passes(self):
        assert password_problems('Sup3r$ecretPass') == []
        validate_password('Sup3r$ecretPass')

    def test_every_problem_reported(self):
        problems = password_problems('short')

        assert 'Password must be at least 12 characters long' in problems
        assert 'Password must contain at least one uppercase letter' in problems
        assert 'Password must contain at least one number' in problems
        assert 'Password must contain at least one special character' in problems
        assert 'Password must contain at least one lowercase letter' not in problems

    def test_first_problem_raised(self):
        with pytest.raises(ValidationError, match='at least 12 characters'):
            validate_password('Sh0rt!')


class TestCredentials:

    def test_hash_roundtrip(self):
        hashed, salt = hash_password('Sup3r$ecretPass')

        assert verify_password('Sup3r$ecretPass', hashed, salt)
        assert not verify_password('Sup3r$ecretPasz', hashed, salt)

    def test_salts_differ(self):
        assert hash_password('Sup3r$ecretPass') != hash_password('Sup3r$ecretPass')

    def test_token_is_256_bits_of_hex(self):
        assert re.fullmatch(r'[0-9a-f]{64}', generate_token())


class TestConfiguration:

    def test_named_configs(self):
        assert get_config('testing') is TestingConfig
        assert get_config('nonexistent') is ProductionConfig

    def test_endpoint_limits(self):
        assert TestingConfig.RATE_LIMITS == {
            'send_invite': (20, 3600),
            'validate_token': (10, 3600),
            'create_user': (5, 3600),
        }

    def test_content_security_policy_header(self):
        header = content_security_policy({'default-src': "'self'", 'object-src': "'none'"})

        assert header == "default-src 'self'; object-src 'none'"
