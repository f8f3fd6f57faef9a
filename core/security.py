# core/security.py
"""
Input checks and credential hashing for the onboarding endpoints
"""

import base64
import hmac
import re
import secrets
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from email_validator import EmailNotValidError, validate_email

from core.errors import ValidationError

PASSWORD_HASH_ITERATIONS = 200000

_ANGLE_BRACKETS = re.compile(r'[<>]')


def sanitize_input(value: str) -> str:
    """Strip characters that could open markup in later rendering"""
    return _ANGLE_BRACKETS.sub('', value).strip()


def validate_email_address(email: str) -> str:
    """
    Check address format and return the normalized address

    Raises:
        ValidationError: when the address is malformed
    """
    try:
        result = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError('Invalid email format') from e
    return result.normalized


def password_problems(password: str, min_length: int = 12,
                      special_characters: str = '!@#$%^&*(),.?":{}|<>') -> List[str]:
    """Every password-policy violation, in policy order"""
    problems = []

    if len(password) < min_length:
        problems.append(f'Password must be at least {min_length} characters long')

    if not re.search(r'[A-Z]', password):
        problems.append('Password must contain at least one uppercase letter')

    if not re.search(r'[a-z]', password):
        problems.append('Password must contain at least one lowercase letter')

    if not re.search(r'[0-9]', password):
        problems.append('Password must contain at least one number')

    if not any(char in special_characters for char in password):
        problems.append('Password must contain at least one special character')

    return problems


def validate_password(password: str, min_length: int = 12,
                      special_characters: str = '!@#$%^&*(),.?":{}|<>') -> None:
    """Raise ValidationError carrying the first policy violation"""
    problems = password_problems(password, min_length, special_characters)
    if problems:
        raise ValidationError(problems[0])


def hash_password(password: str, salt: Optional[str] = None) -> Tuple[str, str]:
    """
    Hash password with secure salt

    Returns:
        Tuple of (hashed_password, salt)
    """
    if salt is None:
        salt = secrets.token_hex(16)

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=PASSWORD_HASH_ITERATIONS,
    )

    hashed = base64.b64encode(kdf.derive(password.encode())).decode()
    return hashed, salt


def verify_password(password: str, hashed_password: str, salt: str) -> bool:
    computed_hash, _ = hash_password(password, salt)
    return hmac.compare_digest(hashed_password, computed_hash)


def generate_token(num_bytes: int = 32) -> str:
    """Opaque, unguessable invitation token"""
    return secrets.token_hex(num_bytes)
