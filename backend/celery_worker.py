"""
Celery Worker Configuration

Redis-backed worker for the order audit export. Start it with:
    celery -A backend.celery_worker worker --loglevel=info
"""

from celery import Celery

from backend.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    'ordering_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['backend.tasks']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Workbook writes serialize on a file lock; extra processes would only wait
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # Audit results are only read by operators, keep them for a day
    result_expires=86400,

    # An export lost with its worker is re-delivered, rows are appended once per delivery
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
