"""
Job queue facade over Celery.

Producers name jobs by queue and job name; the job name is also the Celery
task name, so the API process never imports task modules.

Fan-out spacing is explicit: ``enqueue_spaced`` schedules job ``i`` with a
countdown of ``i * spacing_ms`` milliseconds.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from celery import Celery

logger = logging.getLogger("eventsight.queue")


@dataclass
class EnqueuedJob:
    job_id: str
    queue_name: str
    job_name: str
    delay_ms: int


def spacing_delays(count: int, spacing_ms: int) -> List[int]:
    """Countdown per fan-out job: 0, spacing, 2*spacing, ..."""
    return [i * max(0, spacing_ms) for i in range(count)]


class JobQueue:
    def __init__(self, celery_app: Celery):
        self._app = celery_app

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Dict[str, Any],
        delay_ms: Optional[int] = None,
    ) -> EnqueuedJob:
        countdown = (delay_ms or 0) / 1000.0
        result = self._app.send_task(
            job_name,
            kwargs=payload,
            queue=queue_name,
            countdown=countdown or None,
        )
        logger.info("Enqueued %s on %s (delay=%sms, id=%s)", job_name, queue_name, delay_ms or 0, result.id)
        return EnqueuedJob(
            job_id=str(result.id),
            queue_name=queue_name,
            job_name=job_name,
            delay_ms=delay_ms or 0,
        )

    def enqueue_spaced(
        self,
        queue_name: str,
        job_name: str,
        payloads: Iterable[Dict[str, Any]],
        spacing_ms: int,
    ) -> List[EnqueuedJob]:
        payloads = list(payloads)
        return [
            self.enqueue(queue_name, job_name, payload, delay_ms=delay)
            for payload, delay in zip(payloads, spacing_delays(len(payloads), spacing_ms))
        ]
