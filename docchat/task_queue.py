from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import Celery

from .blobstore import BlobNotFoundError
from .settings import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
BROKER_URL = (_settings.celery_broker_url or "").strip()
RESULT_BACKEND = (_settings.celery_result_backend or "").strip() or BROKER_URL
ENABLE_CELERY = bool(BROKER_URL)

INGESTION_TASK_NAME = "docchat.ingest_document"

celery_app: Optional[Celery] = None
if ENABLE_CELERY:
    celery_app = Celery(
        "docchat",
        broker=BROKER_URL,
        backend=RESULT_BACKEND or None,
    )
    celery_app.conf.update(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=_settings.worker_concurrency,
        task_default_queue="ingestion",
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
    )
else:
    logger.warning("Celery not enabled (no CELERY_BROKER_URL); ingestion runs in-process after the response.")


def enqueue_ingestion(job: Dict[str, Any], background_tasks=None):
    """Hand an ingestion job to the broker, or to the request's background tasks."""
    from .ingestion_worker import run_ingestion_job

    if celery_app:
        result = ingest_document_task.delay(job)
        logger.info("ingestion queued doc_id=%s task_id=%s", job.get("document_id"), result.id)
        return result
    if background_tasks is not None:
        background_tasks.add_task(run_ingestion_job, job)
        logger.info("ingestion scheduled in-process doc_id=%s", job.get("document_id"))
        return None
    return run_ingestion_job(job)


if celery_app:

    @celery_app.task(
        bind=True,
        name=INGESTION_TASK_NAME,
        autoretry_for=(Exception,),
        dont_autoretry_for=(BlobNotFoundError,),
        retry_backoff=True,
        retry_kwargs={"max_retries": 3},
    )
    def ingest_document_task(self, job: Dict[str, Any]) -> Dict[str, Any]:  # type: ignore
        from .ingestion_worker import run_ingestion_job

        return run_ingestion_job(job)
