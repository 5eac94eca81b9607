# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs document indexing outside the query path:
#   Converted text → Chunk → Embed → Upsert vectors → Persist chunks
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │  Host    │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │ (producer)│    │(broker)│    │ (consumer)    │    │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ──────────┘                                    └── db 1
#
# QUEUES:
#   indexing     index_document   (embedding-bound, minutes per document)
#   maintenance  delete_documents (vector + row deletes, seconds)
#
# Run one worker per queue, e.g.:
#   celery -A dataroom_rag.workers.celery_app worker -Q indexing -c 2
#   celery -A dataroom_rag.workers.celery_app worker -Q maintenance -c 4
# =============================================================================

import math

from celery import Celery

from dataroom_rag.config import Settings, settings


def indexing_time_limits(s: Settings) -> tuple[int, int]:
    """
    (soft, hard) time limit in seconds for one index_document run.

    Embedding dominates: chunks go out in rounds of batch_size × concurrency,
    each round may use every retry attempt at the per-batch timeout.
    """
    per_round = s.embedding_batch_size * s.embedding_concurrency
    rounds = math.ceil(s.indexing_expected_max_chunks / per_round)
    soft = int(rounds * s.embedding_timeout_seconds * s.embedding_max_attempts)
    soft += s.indexing_overhead_seconds
    return soft, soft + s.indexing_hard_limit_grace_seconds


def build_conf(s: Settings) -> dict:
    soft, hard = indexing_time_limits(s)
    return {
        # JSON only: task arguments are ids and converted text.
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",

        "task_routes": {
            "index_document": {"queue": s.celery_indexing_queue},
            "delete_documents": {"queue": s.celery_maintenance_queue},
        },
        "task_default_queue": s.celery_maintenance_queue,

        # Late ack: a crashed worker's indexing run is re-queued, and
        # re-indexing is delete + recreate so a rerun is safe.
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,

        "task_annotations": {
            "index_document": {"soft_time_limit": soft, "time_limit": hard},
            "delete_documents": {
                "soft_time_limit": s.deletion_time_limit_seconds,
                "time_limit": s.deletion_time_limit_seconds + 30,
            },
        },

        # Status lives in the documents table; results are only for polling.
        "result_expires": 3600,
        "include": ["dataroom_rag.workers.tasks"],
    }


celery_app = Celery(
    "dataroom_rag.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)
celery_app.conf.update(build_conf(settings))
