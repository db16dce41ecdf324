from __future__ import annotations

from arq import run_worker

from keysync.core.logging import configure_logging
from keysync.workers.sync_worker import WorkerSettings


def main() -> None:
    # Long-running scheduler: cron-driven reconciliation and both queue workers.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
