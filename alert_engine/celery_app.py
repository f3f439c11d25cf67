"""
ClinicalSentry - Celery Application Configuration
Runs patient alert scans off the request path
"""

import logging
from celery import Celery
from alert_engine.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create Celery application
celery_app = Celery(
    "clinicalsentry",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "alert_engine.tasks.scan",
    ]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=settings.task_time_limit,
    task_soft_time_limit=settings.task_soft_time_limit,
    worker_prefetch_multiplier=settings.worker_prefetch_multiplier,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_always_eager=settings.celery_task_always_eager,
)

celery_app.conf.task_routes = {
    "alert_engine.tasks.scan.*": {"queue": "alerts"},
}

logger.info("Celery application configured successfully")
logger.info(f"Broker: {settings.celery_broker_url}")
logger.info(f"Backend: {settings.celery_result_backend}")

if __name__ == "__main__":
    celery_app.start()
