from celery import Celery
from smsrelay.core.config import settings

celery_app = Celery("sms_relay_desk", broker=settings.REDIS_URL, backend=settings.REDIS_URL)
celery_app.conf.include = ["smsrelay.workers.tasks.activation"]

celery_app.conf.beat_schedule = {
    "process_due_activations": {
        "task": "smsrelay.workers.tasks.activation.process_due_activations",
        "schedule": float(settings.ACTIVATION_POLL_SECONDS),
    },
}
celery_app.conf.timezone = "UTC"
