from keysync.services.jobs.provision import enqueue_provision_event, run_provision_worker
from keysync.services.jobs.purge import enqueue_purge, run_purge_worker
from keysync.services.jobs.queue import backoff_seconds, claim_jobs

__all__ = [
    "backoff_seconds",
    "claim_jobs",
    "enqueue_provision_event",
    "enqueue_purge",
    "run_provision_worker",
    "run_purge_worker",
]
