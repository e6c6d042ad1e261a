"""SQLModel ORM tables for the generation job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_OWNER_ID = "default_user"


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_jobs_status_updated", "status", "updated_at"),)

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(default=DEFAULT_OWNER_ID, index=True)
    topic: str
    subtopics: str = ""
    mode: str = Field(index=True)
    transcript: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    assignment_counts_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    current_step: int = 0
    locked_by: str | None = None
    final_content: str | None = Field(default=None, sa_column=Column(Text))
    assignment_data_json: str | None = Field(default=None, sa_column=Column(Text))
    gap_analysis_json: str | None = Field(default=None, sa_column=Column(Text))
    estimated_cost: float = 0.0
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    meta_analysis_completed: bool = False
    meta_analysis_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    agent_name: str
    action: str
    message: str = Field(default="", sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobCheckpoint(SQLModel, table=True):
    __tablename__ = "job_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "step_number", name="uq_job_checkpoints_job_step"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_number: int
    step_name: str
    content_snapshot: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MetaFeedback(SQLModel, table=True):
    __tablename__ = "meta_feedback"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    mode: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    feedback_json: str = Field(sa_column=Column(Text, nullable=False))
    generation_count: int = 0
    last_updated: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MetaFeedbackHistory(SQLModel, table=True):
    __tablename__ = "meta_feedback_history"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_meta_feedback_history_mode_time", "mode", "acknowledged_at"),)

    id: int | None = Field(default=None, primary_key=True)
    mode: str
    feedback_json: str = Field(sa_column=Column(Text, nullable=False))
    generation_count: int = 0
    acknowledged_by: str
    acknowledged_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
