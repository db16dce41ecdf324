from __future__ import annotations

import argparse
import asyncio
import sys

from keysync.core.errors import InvalidPayloadError
from keysync.persistence.db import SessionLocal
from keysync.services.jobs.purge import enqueue_purge


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Queue a purge of an identity's local and remote state")
    parser.add_argument("--reason", required=True, help="Reason code recorded with the purge")
    parser.add_argument("--owner-id")
    parser.add_argument("--email")
    parser.add_argument("--subscription-id")
    return parser


async def _enqueue(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        job = await enqueue_purge(
            session=session,
            reason=args.reason,
            owner_id=args.owner_id,
            email=args.email,
            subscription_id=args.subscription_id,
        )
    print(f"purge_job_id={job.id} status={job.status}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_enqueue(args))
    except InvalidPayloadError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
