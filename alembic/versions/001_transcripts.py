"""Create transcripts and processing_usage_events tables.

Revision ID: 001_transcripts
Revises:
Create Date: 2026-10-19

- transcripts: one row per speech job; pipeline content as JSON, status,
  last durably completed stage and the pipeline lock timestamp
- processing_usage_events: per-call token accounting for the speech and
  completion services

No foreign key between the two (usage is recorded before the transcript
row exists, right after submission).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_transcripts"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── transcripts table ────────────────────────────────────────────────

    op.create_table(
        "transcripts",
        sa.Column("transcript_id", sa.String(200), primary_key=True),
        sa.Column("entry_id", sa.String(200), nullable=False),
        sa.Column("audio_url", sa.Text(), nullable=False),
        sa.Column("start_time", sa.Float(), nullable=True),
        sa.Column("end_time", sa.Float(), nullable=True),
        sa.Column(
            "status",
            sa.String(50),
            server_default=sa.text("'transcribing'"),
            nullable=False,
        ),
        sa.Column("language_code", sa.String(20), nullable=True),
        sa.Column("content_data", sa.JSON(), nullable=False),
        sa.Column("completed_stage", sa.String(50), nullable=True),
        sa.Column("pipeline_lock", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_transcripts_entry_id", "transcripts", ["entry_id"])
    op.create_index("idx_transcripts_status", "transcripts", ["status"])

    # ── processing_usage_events table ────────────────────────────────────

    op.create_table(
        "processing_usage_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transcript_id", sa.String(200), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("stage", sa.String(50), nullable=False),
        sa.Column("operation", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("model", sa.String(200), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_usage_transcript_id", "processing_usage_events", ["transcript_id"]
    )
    op.create_index(
        "idx_usage_provider_stage", "processing_usage_events", ["provider", "stage"]
    )


def downgrade() -> None:
    op.drop_index("idx_usage_provider_stage", table_name="processing_usage_events")
    op.drop_index("idx_usage_transcript_id", table_name="processing_usage_events")
    op.drop_table("processing_usage_events")
    op.drop_index("idx_transcripts_status", table_name="transcripts")
    op.drop_index("idx_transcripts_entry_id", table_name="transcripts")
    op.drop_table("transcripts")
