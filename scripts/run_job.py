from __future__ import annotations

import argparse
import asyncio
import json

from keysync.core.config import JOB_KINDS
from keysync.core.logging import configure_logging
from keysync.services.operability.runner import run_job


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one reconciliation pass or queue worker batch now")
    parser.add_argument("job_kind", choices=JOB_KINDS)
    parser.add_argument(
        "--scheduled",
        action="store_true",
        help="Honor the enabled flag as a scheduled run would",
    )
    return parser


async def _main() -> None:
    args = _build_parser().parse_args()
    configure_logging()
    outcome = await run_job(args.job_kind, manual=not args.scheduled)
    print(json.dumps(outcome, default=str, indent=2))


if __name__ == "__main__":
    asyncio.run(_main())
