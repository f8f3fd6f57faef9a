# config/settings.py
"""
Environment-based application configuration
"""

import os

from config.security import SecurityConfig


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class BaseConfig(SecurityConfig):
    """Settings shared by every environment"""

    VERSION = os.environ.get('APP_VERSION', '1.0.0')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    TESTING = False
    BEHIND_PROXY = False

    # Durable store
    DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///onboarding.db')
    DB_POOL_SIZE = _env_int('DB_POOL_SIZE', 10)
    DB_MAX_OVERFLOW = _env_int('DB_MAX_OVERFLOW', 20)
    CREATE_TABLES = False

    # Rate-limit store: 'sql' or 'redis'
    RATE_LIMIT_BACKEND = os.environ.get('RATE_LIMIT_BACKEND', 'sql')
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/3')

    # Outbound mail
    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = _env_int('SMTP_PORT', 465)
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASS = os.environ.get('SMTP_PASS')
    SMTP_FROM = os.environ.get('SMTP_FROM', 'notifications@agent-agreement-nexus.com')
    SMTP_TIMEOUT = _env_float('SMTP_TIMEOUT', 20.0)
    EMAIL_FROM_NAME = os.environ.get('EMAIL_FROM_NAME', 'Ireland Pay')
    COMPANY_NAME = os.environ.get('COMPANY_NAME', 'Ireland Pay')
    PUBLIC_APP_URL = os.environ.get('PUBLIC_APP_URL', 'http://localhost:3000')

    # Invitations
    INVITATION_TTL_DAYS = _env_int('INVITATION_TTL_DAYS', 7)

    # Notification delivery
    NOTIFICATION_MAX_ATTEMPTS = _env_int('NOTIFICATION_MAX_ATTEMPTS', 3)
    NOTIFICATION_RECOVERY_MAX_ATTEMPTS = _env_int('NOTIFICATION_RECOVERY_MAX_ATTEMPTS', 6)
    NOTIFICATION_SEND_TIMEOUT = _env_float('NOTIFICATION_SEND_TIMEOUT', 30.0)
    NOTIFICATION_BACKOFF_BASE = _env_float('NOTIFICATION_BACKOFF_BASE', 0.5)

    # Recovery sweep
    RECOVERY_BATCH_SIZE = _env_int('RECOVERY_BATCH_SIZE', 50)
    RECOVERY_TIME_BUDGET = _env_float('RECOVERY_TIME_BUDGET', 120.0)
    RECOVERY_SWEEP_INTERVAL = _env_float('RECOVERY_SWEEP_INTERVAL', 900.0)
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/2')


class DevelopmentConfig(BaseConfig):
    LOG_LEVEL = 'DEBUG'
    CREATE_TABLES = True


class TestingConfig(BaseConfig):
    TESTING = True
    DATABASE_URL = 'sqlite://'
    RATE_LIMIT_BACKEND = 'sql'
    CREATE_TABLES = True
    SMTP_HOST = None
    NOTIFICATION_BACKOFF_BASE = 0.0
    NOTIFICATION_SEND_TIMEOUT = 5.0
    PUBLIC_APP_URL = 'https://portal.example.com'


class ProductionConfig(BaseConfig):
    BEHIND_PROXY = True


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name: str = None):
    """Resolve a configuration class by environment name"""
    name = name or os.environ.get('FLASK_ENV', 'production')
    return CONFIGS.get(name, ProductionConfig)
