from __future__ import annotations

import argparse
import asyncio

from flagship.core.errors import DeadLetterReplayError
from flagship.persistence.db import SessionLocal
from flagship.services.usage.queue import list_dead_letters, replay_dead_letter


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="List or replay dead-lettered usage ingestion jobs.")
    parser.add_argument("--environment-id", default=None)
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--replay", nargs="*", default=None, help="dead letter ids to replay")
    parser.add_argument("--replay-all", action="store_true", help="replay every listed row not yet replayed")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    async with SessionLocal() as session:
        rows = await list_dead_letters(session, environment_id=args.environment_id, limit=args.limit)
        for row in rows:
            replayed = row.replay_job_id or "-"
            print(
                f"id={row.id} job_id={row.job_id} env={row.environment_id} attempts={row.attempts} "
                f"reason={row.reason} replayed_as={replayed}"
            )

        targets: list[str] = list(args.replay or [])
        if args.replay_all:
            targets.extend(row.id for row in rows if row.replayed_at is None)
        for dead_letter_id in targets:
            try:
                result = await replay_dead_letter(session, dead_letter_id)
            except DeadLetterReplayError as exc:
                print(f"replay_skipped id={dead_letter_id} reason={exc}")
                continue
            print(f"replayed id={dead_letter_id} job_id={result.job_id}")


if __name__ == "__main__":
    asyncio.run(run(_parse_args()))
