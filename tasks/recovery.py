# tasks/recovery.py
"""
Celery worker and beat schedule for the failed-delivery recovery sweep

    celery -A tasks.recovery worker --loglevel=info
    celery -A tasks.recovery beat --loglevel=info
"""

from dataclasses import asdict
from typing import Any, Dict, Optional

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from celery.utils.log import get_task_logger

from config.settings import get_config
from core.services import OnboardingServices, build_services

logger = get_task_logger(__name__)

config = get_config()

celery_app = Celery('onboarding_notifications')
celery_app.conf.update({
    'broker_url': config.CELERY_BROKER_URL,

    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,
    'task_ignore_result': True,
    # A sweep that outlives its budget is abandoned; claims expire on their own
    'task_time_limit': int(config.RECOVERY_TIME_BUDGET + config.NOTIFICATION_SEND_TIMEOUT) + 30,

    'task_routes': {
        'tasks.recovery.sweep_failed_deliveries': {'queue': 'notification_recovery'},
    },

    'beat_schedule': {
        'sweep-failed-deliveries': {
            'task': 'tasks.recovery.sweep_failed_deliveries',
            'schedule': config.RECOVERY_SWEEP_INTERVAL,
        },
    },

    'worker_hijack_root_logger': False,
    'worker_log_color': False,
})

_services: Optional[OnboardingServices] = None


def configure_services(services: Optional[OnboardingServices]) -> None:
    """Install the services the worker uses (None resets to lazy construction)"""
    global _services
    _services = services


def get_services() -> OnboardingServices:
    global _services
    if _services is None:
        settings = {name: getattr(config, name) for name in dir(config) if name.isupper()}
        _services = build_services(settings)
    return _services


@celery_app.task(name='tasks.recovery.sweep_failed_deliveries')
def sweep_failed_deliveries() -> Dict[str, Any]:
    """
    Re-attempt failed notifications, oldest first

    Returns:
        Sweep counters plus the number of messages at the retry ceiling
    """
    services = get_services()
    report = asdict(services.recovery.sweep())

    exhausted = len(services.recovery.exhausted())
    if exhausted:
        logger.warning(f"{exhausted} notifications reached the retry ceiling and need attention")
    report['exhausted'] = exhausted
    return report


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, **kw):
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, retval=None, state=None, **kw):
    logger.info(f"Task {task.name} [{task_id}] finished ({state}): {retval}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, **kw):
    # Unswept rows stay failed or claimed; the next beat run picks them up
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")

if __name__ == '__main__':
    celery_app.start()
