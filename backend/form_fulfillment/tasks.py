"""
Celery queue for accepted webhook batches.

The web process only persists a batch and enqueues its id; a worker started
with ``celery -A form_fulfillment.tasks worker`` does the processing. Tasks
are acknowledged late and requeued if the worker dies, and a batch claim in
the job store keeps a redelivered task from emailing anyone twice.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional

from celery import Celery
from celery.utils.log import get_task_logger

from .config import Settings
from .service import FulfillmentError, FulfillmentService

logger = get_task_logger(__name__)

settings = Settings.from_env()

celery_app = Celery("form_fulfillment")
celery_app.conf.update({
    "broker_url": settings.celery_broker_url,
    "result_backend": settings.celery_result_backend,

    "task_serializer": "json",
    "result_serializer": "json",
    "accept_content": ["json"],

    "timezone": "UTC",
    "enable_utc": True,

    "task_acks_late": True,
    "task_reject_on_worker_lost": True,
    "worker_prefetch_multiplier": 1,

    "result_expires": 3600,
    # A batch can take a while; Redis must not redeliver it mid-run.
    "broker_transport_options": {"visibility_timeout": 6 * 3600},
})

_service: Optional[FulfillmentService] = None
_service_lock = threading.Lock()


def get_service() -> FulfillmentService:
    global _service
    with _service_lock:
        if _service is None:
            _service = FulfillmentService.from_settings(settings)
        return _service


@celery_app.task(bind=True, max_retries=5, default_retry_delay=60)
def process_batch(self, batch_id: str) -> Dict:
    """Run one batch. The task id doubles as the runner id for the batch claim."""
    service = get_service()
    try:
        report = service.run_batch(batch_id, runner_id=self.request.id)
    except FulfillmentError as exc:
        # Job file not readable (yet) on this worker
        retry_delay = min(300, 60 * (2 ** self.request.retries))
        logger.warning("Batch %s unavailable, retrying in %ss: %s", batch_id, retry_delay, exc)
        raise self.retry(exc=exc, countdown=retry_delay)

    return {"batch_id": report.batch_id, "status": report.status}
