#!/usr/bin/env python3
"""Per-stage usage report for a transcript.

Usage:
    python scripts/usage_report.py <transcript_id>
    python scripts/usage_report.py <transcript_id> --events

Prints speech and completion service calls grouped by provider and stage,
with token totals. ``--events`` also lists every recorded call.

Reads DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

from src.proceedings.config import get_settings  # noqa: E402
from src.proceedings.core.logging import configure_structlog  # noqa: E402
from src.proceedings.transcripts.repository import TranscriptRepository, init_store  # noqa: E402


def format_summary(rows) -> str:
    header = f"{'provider':<10} {'stage':<22} {'calls':>6} {'ok':>5} {'err':>5} {'input':>10} {'output':>10} {'total':>10}"
    lines = [header, "-" * len(header)]
    for row in rows:
        lines.append(
            f"{row.provider:<10} {row.stage:<22} {row.events:>6} {row.success_events:>5} "
            f"{row.error_events:>5} {row.input_tokens:>10} {row.output_tokens:>10} {row.total_tokens:>10}"
        )
    if rows:
        lines.append("-" * len(header))
        lines.append(
            f"{'total':<33} {sum(r.events for r in rows):>6} "
            f"{sum(r.success_events for r in rows):>5} {sum(r.error_events for r in rows):>5} "
            f"{sum(r.input_tokens for r in rows):>10} {sum(r.output_tokens for r in rows):>10} "
            f"{sum(r.total_tokens for r in rows):>10}"
        )
    return "\n".join(lines)


async def report(repository: TranscriptRepository, transcript_id: str, show_events: bool) -> int:
    transcript = await repository.get_transcript(transcript_id)
    if transcript is None:
        print(f"Transcript not found: {transcript_id}", file=sys.stderr)
        return 1

    print(f"Transcript {transcript_id} (entry {transcript.entry_id}, status {transcript.status.value})\n")
    print(format_summary(await repository.usage_summary(transcript_id)))

    if show_events:
        print()
        for event in await repository.list_usage(transcript_id):
            created = event.created_at.isoformat() if event.created_at else "-"
            print(
                f"{created}  {event.provider:<7} {event.operation:<30} {event.status:<8} "
                f"tokens={event.total_tokens or 0:<8} {event.duration_ms or 0}ms"
            )
    return 0


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_structlog(settings)
    repository = await init_store(settings)
    try:
        return await report(repository, args.transcript_id, args.events)
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Usage report for a transcript")
    parser.add_argument("transcript_id", help="Transcript (speech job) id")
    parser.add_argument("--events", action="store_true", help="List every recorded call")
    args = parser.parse_args()

    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
