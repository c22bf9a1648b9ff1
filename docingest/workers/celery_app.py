"""
Celery app for distributed ingestion

Distributed mode (DISPATCH_MODE=celery): the API publishes submission ids,
Celery workers run the same IngestionOrchestrator the local pool runs.
Broker: Redis by default, RabbitMQ (amqp://) works unchanged.
Result backend: Redis (optional; submission state lives in the registry).

Queue topology:
  documents.ingest   : one message per submission id
  documents.recover  : periodic recovery sweep (Celery beat)

Only ids travel through the broker. Payloads stay in the content spool,
which must be a directory shared by the API and the workers.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docingest.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        durable=True,
    ),
    Queue(
        "documents.recover",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.recover",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docingest.workers.tasks.process_submission":  {"queue": "documents.ingest"},
    "docingest.workers.tasks.recover_submissions": {"queue": "documents.recover"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("docingest")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (JSON only) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,         # ack only after the run reached a terminal state
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=600,
        task_time_limit=660,

        # --- Result TTL ---
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (recovery sweep) ---
        beat_schedule={
            "recover-submissions-every-5m": {
                "task":     "docingest.workers.tasks.recover_submissions",
                "schedule": 300,
                "options":  {"queue": "documents.recover"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docingest.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(logger, loglevel, **_):
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s submission=%s",
        task_id, task.name, (kwargs or {}).get("submission_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s submission=%s",
        task_id, task.name, state, (kwargs or {}).get("submission_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s submission=%s error=%s",
        task_id, (kwargs or {}).get("submission_id", "?"), exception,
        exc_info=True,
    )
