# core/errors.py
"""
Error taxonomy for the admission-control and notification subsystem
"""

from typing import Optional


class OnboardingError(Exception):
    """Base exception for onboarding operations"""
    pass


class ValidationError(OnboardingError):
    """Malformed or missing input; surfaced immediately, never retried"""
    pass


class AdmissionDenied(OnboardingError):
    """Rate limit exceeded for an admission key"""

    def __init__(self, message: str = 'Too many attempts. Please try again later.',
                 retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidOrExpired(OnboardingError):
    """Token lifecycle violation. The message never says which check failed."""

    GENERIC_MESSAGE = 'This invitation link has expired or is invalid'

    def __init__(self, message: str = GENERIC_MESSAGE, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class Conflict(OnboardingError):
    """An active invitation already exists for the address"""

    def __init__(self, message: str = 'An active invitation already exists for this email'):
        super().__init__(message)


class AlreadyRegistered(OnboardingError):
    """An account already exists for the address"""

    def __init__(self, message: str = 'A user with this email already exists'):
        super().__init__(message)


class TransientDeliveryFailure(OnboardingError):
    """Outbound transport error; absorbed by the dispatcher's retry loop"""
    pass


class StoreUnavailable(OnboardingError):
    """Durable store unreachable"""
    pass


class AccountProvisioningError(OnboardingError):
    """The account directory failed to create or roll back an account"""
    pass
