#!/usr/bin/env python3
"""Administrative retry and re-identification of transcripts.

Usage:
    python scripts/retry_transcripts.py --list error
    python scripts/retry_transcripts.py --retry-errors [--limit 20]
    python scripts/retry_transcripts.py --retry <transcript_id> [...]
    python scripts/retry_transcripts.py --reidentify <transcript_id> [...]
    python scripts/retry_transcripts.py --reidentify-all

Retries resume each failed transcript after its last stored stage.
Re-identification recomputes statements and topics of completed
transcripts from their stored raw paragraphs.

Reads DATABASE_URL and service credentials from environment or .env file.
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

import structlog  # noqa: E402

from src.proceedings.config import get_settings  # noqa: E402
from src.proceedings.core.logging import configure_structlog  # noqa: E402
from src.proceedings.errors import ProceedingsError  # noqa: E402
from src.proceedings.observability.tracer import init_langfuse  # noqa: E402
from src.proceedings.pipeline.orchestrator import (  # noqa: E402
    TranscriptPipeline,
    create_pipeline,
)
from src.proceedings.transcripts.schemas import TranscriptStatus  # noqa: E402

logger = structlog.get_logger(__name__)


async def list_transcripts(pipeline: TranscriptPipeline, status: TranscriptStatus, limit: int | None) -> int:
    transcripts = await pipeline.repository.list_by_status(status, limit=limit)
    for t in transcripts:
        updated = t.updated_at.isoformat() if t.updated_at else "-"
        line = f"{t.transcript_id}  entry={t.entry_id}  stage={t.completed_stage.value if t.completed_stage else '-'}  updated={updated}"
        if t.error_message:
            line += f"  error={t.error_message[:120]}"
        print(line)
    print(f"\n{len(transcripts)} transcript(s) in status '{status.value}'")
    return 0


async def retry_ids(pipeline: TranscriptPipeline, transcript_ids: list[str]) -> int:
    failures = 0
    for transcript_id in transcript_ids:
        try:
            ran = await pipeline.retry(transcript_id)
        except ProceedingsError as exc:
            logger.error("retry.rejected", transcript_id=transcript_id, error=str(exc))
            failures += 1
            continue

        transcript = await pipeline.repository.get_transcript(transcript_id)
        status = transcript.status.value if transcript else "missing"
        if not ran:
            logger.warning("retry.locked", transcript_id=transcript_id)
        elif status == TranscriptStatus.ERROR.value:
            failures += 1
        logger.info("retry.finished", transcript_id=transcript_id, status=status)
    return 1 if failures else 0


async def reidentify_ids(pipeline: TranscriptPipeline, transcript_ids: list[str]) -> int:
    failures = 0
    for transcript_id in transcript_ids:
        try:
            ran = await pipeline.reidentify(transcript_id)
        except Exception as exc:
            logger.error(
                "reidentify.failed",
                transcript_id=transcript_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            failures += 1
            continue
        if not ran:
            logger.warning("reidentify.locked", transcript_id=transcript_id)
    return 1 if failures else 0


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_structlog(settings)
    init_langfuse(settings)

    pipeline = await create_pipeline(settings)
    try:
        if args.list:
            return await list_transcripts(pipeline, TranscriptStatus(args.list), args.limit)

        if args.retry_errors:
            failed = await pipeline.repository.list_by_status(TranscriptStatus.ERROR, limit=args.limit)
            return await retry_ids(pipeline, [t.transcript_id for t in failed])

        if args.retry:
            return await retry_ids(pipeline, args.retry)

        if args.reidentify_all:
            completed = await pipeline.repository.list_by_status(TranscriptStatus.COMPLETED, limit=args.limit)
            return await reidentify_ids(pipeline, [t.transcript_id for t in completed])

        return await reidentify_ids(pipeline, args.reidentify)
    finally:
        await pipeline.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry or re-identify transcripts")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "--list",
        choices=[s.value for s in TranscriptStatus],
        help="List transcripts in the given status",
    )
    group.add_argument("--retry-errors", action="store_true", help="Retry every transcript in error")
    group.add_argument("--retry", nargs="+", metavar="TRANSCRIPT_ID", help="Retry specific transcripts")
    group.add_argument("--reidentify", nargs="+", metavar="TRANSCRIPT_ID", help="Re-identify specific transcripts")
    group.add_argument("--reidentify-all", action="store_true", help="Re-identify every completed transcript")
    parser.add_argument("--limit", type=int, default=None, help="Maximum transcripts to process")
    args = parser.parse_args()

    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
