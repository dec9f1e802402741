"""
Queue Maintenance – periodic housekeeping for the job queues.

Triggered by the APScheduler interval job registered in the runtime:
1. Return leases abandoned by dead workers to `waiting`
2. Push a `queue:update` snapshot per queue to the admins room
"""

import logging
from typing import Iterable

from events.notification_hub import NotificationHub
from queueing.job_queue import JobQueue

logger = logging.getLogger(__name__)


async def run_queue_maintenance(
    queues: Iterable[JobQueue],
    hub: NotificationHub,
    stalled_after_seconds: float,
) -> dict:
    stats = {"requeued": 0, "queues": {}}

    for queue in queues:
        try:
            stats["requeued"] += await queue.requeue_stalled(stalled_after_seconds)
            counts = await queue.counts()
        except Exception as e:
            logger.error(f"Maintenance failed for queue {queue.name}: {e}", exc_info=True)
            continue

        stats["queues"][queue.name] = counts
        await hub.emit_to_admins("queue:update", {"queueName": queue.name, **counts})

    logger.debug(f"Queue maintenance completed: {stats}")
    return stats
