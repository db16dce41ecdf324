from __future__ import annotations

import argparse
import asyncio
import json

from keysync.core.config import JOB_KINDS
from keysync.core.logging import configure_logging
from keysync.services.operability.runner import clear_job_lock


def _build_parser() -> argparse.ArgumentParser:
    # Locks self-heal on expiry; this is the operator override for a stuck run.
    parser = argparse.ArgumentParser(description="Clear the run-level lock of a job kind")
    parser.add_argument("job_kind", choices=JOB_KINDS)
    return parser


async def _main() -> None:
    args = _build_parser().parse_args()
    configure_logging()
    print(json.dumps(await clear_job_lock(args.job_kind)))


if __name__ == "__main__":
    asyncio.run(_main())
