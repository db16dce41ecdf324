from __future__ import annotations

import argparse
import asyncio
import json

from keysync.core.config import JOB_KINDS
from keysync.services.operability.runner import get_job_status


async def _main(job_kinds: list[str]) -> None:
    for job_kind in job_kinds:
        print(json.dumps(await get_job_status(job_kind), default=str, indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Show last-run and failure state per job kind")
    parser.add_argument("job_kind", nargs="*", choices=JOB_KINDS, default=list(JOB_KINDS))
    asyncio.run(_main(parser.parse_args().job_kind))
