from __future__ import annotations

from smsrelay.db.session import SessionLocal
from smsrelay.services.activation import ActivationScheduler
from smsrelay.services.change_feed import get_change_feed
from smsrelay.services.request_lifecycle import RequestLifecycleManager
from smsrelay.workers.celery_app import celery_app


def run_due_activations(now=None) -> dict[str, int]:
    db = SessionLocal()
    try:
        scheduler = ActivationScheduler(db)
        manager = RequestLifecycleManager(db, feed=get_change_feed(), scheduler=scheduler)
        return scheduler.process_due(manager, now=now)
    finally:
        db.close()


@celery_app.task(name="smsrelay.workers.tasks.activation.process_due_activations", ignore_result=True)
def process_due_activations():
    return run_due_activations()
