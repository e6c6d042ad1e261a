"""Persistence for per-mode cumulative quality feedback."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from sqlalchemy import false
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from lesson_forge.feedback.aggregator import fold_analysis
from lesson_forge.feedback.models import (
    CumulativeFeedbackView,
    FeedbackContent,
    FeedbackHistoryView,
    MetaAnalysis,
)
from lesson_forge.storage.alembic_runner import upgrade_head
from lesson_forge.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from lesson_forge.storage.sqlmodel_models import GenerationJob, MetaFeedback, MetaFeedbackHistory

logger = logging.getLogger(__name__)

MAX_UPSERT_ATTEMPTS = 5


class FeedbackConflictError(RuntimeError):
    """Concurrent writers kept changing the feedback row."""


class MetaFeedbackRepository:
    """One cumulative feedback row per content mode, plus its archive."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def get_feedback(self, mode: str) -> CumulativeFeedbackView | None:
        with Session(self.engine) as session:
            row = session.exec(select(MetaFeedback).where(MetaFeedback.mode == mode)).one_or_none()
            if row is None:
                return None
            return _to_feedback_view(row)

    def list_feedback(self) -> list[CumulativeFeedbackView]:
        with Session(self.engine) as session:
            rows = session.exec(select(MetaFeedback).order_by(col(MetaFeedback.mode).asc())).all()
            return [_to_feedback_view(row) for row in rows]

    def total_issue_count(self) -> int:
        """Number of issue clusters across all modes."""

        return sum(len(item.content.issue_clusters) for item in self.list_feedback())

    def aggregate_feedback(self, mode: str, analysis: MetaAnalysis) -> CumulativeFeedbackView:
        """Fold one analysis into the mode's row with an upsert keyed by mode.

        The update only applies if the row is unchanged since it was read;
        a concurrent writer makes this call re-read and merge again.
        """

        for _ in range(MAX_UPSERT_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(MetaFeedback).where(MetaFeedback.mode == mode),
                ).one_or_none()
                current = _load_content(row.feedback_json) if row is not None else None
                count = row.generation_count if row is not None else 0
                content, new_count = fold_analysis(current, count, analysis, seen_at=now)

                statement = sqlite_insert(MetaFeedback).values(
                    mode=mode,
                    feedback_json=_dump_content(content),
                    generation_count=new_count,
                    last_updated=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                )
                guard = (
                    (col(MetaFeedback.generation_count) == row.generation_count)
                    & (col(MetaFeedback.last_updated) == row.last_updated)
                    if row is not None
                    else false()
                )
                statement = statement.on_conflict_do_update(
                    index_elements=["mode"],
                    set_={
                        "feedback_json": statement.excluded.feedback_json,
                        "generation_count": statement.excluded.generation_count,
                        "last_updated": statement.excluded.last_updated,
                    },
                    where=guard,
                )
                result = session.exec(statement)  # type: ignore[call-overload]
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Feedback row for mode=%s changed concurrently, re-merging", mode)
                    continue
                session.commit()

            logger.info("Aggregated feedback for mode=%s (generations=%d)", mode, new_count)
            view = self.get_feedback(mode)
            if view is None:  # pragma: no cover - deleted right after upsert
                raise FeedbackConflictError(f"Feedback row vanished for mode={mode!r}")
            return view

        raise FeedbackConflictError(
            f"Feedback for mode={mode!r} changed concurrently {MAX_UPSERT_ATTEMPTS} times.",
        )

    def clear_feedback(self, mode: str, actor: str) -> bool:
        """Archive the live row verbatim, then reset it. False when nothing to clear."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(MetaFeedback).where(MetaFeedback.mode == mode)).one_or_none()
            if row is None:
                return False

            session.add(
                MetaFeedbackHistory(
                    mode=mode,
                    feedback_json=row.feedback_json,
                    generation_count=row.generation_count,
                    acknowledged_by=actor,
                    acknowledged_at=now,
                ),
            )
            session.exec(
                sa_update(MetaFeedback)
                .where(col(MetaFeedback.mode) == mode)
                .values(
                    feedback_json=_dump_content(FeedbackContent()),
                    generation_count=0,
                    last_updated=now,
                ),
            )
            session.commit()
        logger.info("Feedback for mode=%s archived and reset by %s", mode, actor)
        return True

    def list_history(
        self,
        *,
        mode: str | None = None,
        limit: int = 50,
    ) -> list[FeedbackHistoryView]:
        with Session(self.engine) as session:
            statement = select(MetaFeedbackHistory).order_by(
                col(MetaFeedbackHistory.acknowledged_at).desc(),
                col(MetaFeedbackHistory.id).desc(),
            )
            if mode is not None:
                statement = statement.where(MetaFeedbackHistory.mode == mode)
            rows = session.exec(statement.limit(limit)).all()
            return [
                FeedbackHistoryView(
                    history_id=row.id or 0,
                    mode=row.mode,
                    content=_load_content(row.feedback_json),
                    generation_count=row.generation_count,
                    acknowledged_by=row.acknowledged_by,
                    acknowledged_at=to_utc_aware_datetime(row.acknowledged_at),
                )
                for row in rows
            ]

    def mark_job_analyzed(self, job_id: str) -> bool:
        """Flag a job as folded into feedback; failures are logged, not raised."""

        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(GenerationJob)
                    .where(col(GenerationJob.job_id) == job_id)
                    .values(
                        meta_analysis_completed=True,
                        meta_analysis_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as error:
            logger.warning("Failed to mark job %s analyzed: %s", job_id, error)
            return False


def _dump_content(content: FeedbackContent) -> str:
    return json.dumps(content.to_dict(), ensure_ascii=False, sort_keys=True)


def _load_content(raw: str) -> FeedbackContent:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return FeedbackContent()
    return FeedbackContent.from_dict(parsed)


def _to_feedback_view(row: MetaFeedback) -> CumulativeFeedbackView:
    return CumulativeFeedbackView(
        mode=row.mode,
        content=_load_content(row.feedback_json),
        generation_count=row.generation_count,
        last_updated=to_utc_aware_datetime(row.last_updated),
        created_at=to_utc_aware_datetime(row.created_at),
    )
