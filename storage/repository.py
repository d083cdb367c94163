"""Persistence — SQLAlchemy repositories for calls, transcriptions and analyses.

Every write that must be all-or-nothing runs inside one ``session.begin()``
block: on any error the transaction rolls back and a PersistenceError is
raised, so readers never see a call with rows from two analysis runs.
"""

from pathlib import Path

from loguru import logger
from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from config.schemas import (
    Analysis,
    CallFlagRecord,
    CallInfo,
    DrugMentionRecord,
    Transcription,
)
from pipeline.projector import project_derived_entities
from storage.models import (
    AnalysisRow,
    Base,
    CallFlagRow,
    CallRow,
    DrugMentionRow,
    TranscriptionRow,
)


class PersistenceError(RuntimeError):
    """A write failed and was rolled back. The triggering job should be retried as a whole."""


class CallNotFoundError(LookupError):
    pass


class TranscriptionNotFoundError(LookupError):
    pass


def create_session_factory(database_url: str | None = None) -> sessionmaker:
    """Build an engine + session factory and create tables if missing."""
    url = database_url or settings.DATABASE_URL
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        else:
            db_path = url.split("///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")
    return sessionmaker(bind=engine, expire_on_commit=False)


def _enable_sqlite_foreign_keys(dbapi_connection, _record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _delete_call_children(session: Session, model, call_id: str) -> None:
    session.execute(delete(model).where(model.call_id == call_id))


# ── CALLS ──

class CallRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, call_id: str) -> CallInfo | None:
        with self.session_factory() as session:
            row = session.get(CallRow, call_id)
            if row is None:
                return None
            return CallInfo(
                id=row.id,
                timestamp=row.timestamp,
                duration=row.duration or 0,
                agent_id=row.agent_id,
                audio_key=row.audio_key,
                metadata=row.call_metadata or {},
            )

    def upsert(self, call: CallInfo) -> None:
        try:
            with self.session_factory.begin() as session:
                row = session.get(CallRow, call.id) or CallRow(id=call.id)
                row.audio_key = call.audio_key
                row.timestamp = call.timestamp
                row.duration = call.duration
                row.agent_id = call.agent_id
                row.call_metadata = call.metadata
                session.add(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save call {call.id}: {e}") from e

    def update_duration(self, call_id: str, duration: int) -> None:
        try:
            with self.session_factory.begin() as session:
                row = session.get(CallRow, call_id)
                if row is None:
                    raise CallNotFoundError(call_id)
                row.duration = duration
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update duration for call {call_id}: {e}") from e

    def delete(self, call_id: str) -> bool:
        """Delete a call and everything owned by it."""
        try:
            with self.session_factory.begin() as session:
                for model in (DrugMentionRow, CallFlagRow, AnalysisRow, TranscriptionRow):
                    _delete_call_children(session, model, call_id)
                result = session.execute(delete(CallRow).where(CallRow.id == call_id))
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete call {call_id}: {e}") from e


# ── TRANSCRIPTIONS ──

class TranscriptionRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def replace(self, transcription: Transcription, call_duration: int | None = None) -> None:
        """Store a transcription, replacing any earlier one for the same call.

        ``call_duration`` is written to the call in the same transaction.
        """
        data = transcription.model_dump(mode="json")
        try:
            with self.session_factory.begin() as session:
                if call_duration is not None:
                    call = session.get(CallRow, transcription.call_id)
                    if call is None:
                        raise CallNotFoundError(transcription.call_id)
                    call.duration = call_duration
                _delete_call_children(session, TranscriptionRow, transcription.call_id)
                session.add(TranscriptionRow(
                    id=transcription.id,
                    call_id=transcription.call_id,
                    full_text=transcription.full_text,
                    masked_full_text=transcription.masked_full_text,
                    segments=data["segments"],
                    masked_segments=data["masked_segments"],
                    transcription_metadata=data["metadata"],
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to save transcription for call {transcription.call_id}: {e}"
            ) from e

    def get_by_call_id(self, call_id: str) -> Transcription | None:
        with self.session_factory() as session:
            row = session.scalars(
                select(TranscriptionRow).where(TranscriptionRow.call_id == call_id)
            ).first()
            if row is None:
                return None
            return Transcription.model_validate({
                "id": row.id,
                "call_id": row.call_id,
                "full_text": row.full_text,
                "masked_full_text": row.masked_full_text,
                "segments": row.segments or [],
                "masked_segments": row.masked_segments,
                "metadata": row.transcription_metadata or {"transcription_model": "unknown"},
            })


# ── ANALYSES ──

class AnalysisRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def replace_analysis(
        self, analysis: Analysis
    ) -> tuple[list[DrugMentionRecord], list[CallFlagRecord]]:
        """Replace the call's analysis and derived rows in one transaction.

        Either every old row is gone and every new row exists, or nothing
        changed. Raises PersistenceError after rollback.
        """
        drug_records, flag_records = project_derived_entities(analysis)
        data = analysis.model_dump(mode="json")
        try:
            with self.session_factory.begin() as session:
                for model in (DrugMentionRow, CallFlagRow, AnalysisRow):
                    _delete_call_children(session, model, analysis.call_id)
                session.add(AnalysisRow(
                    id=analysis.id,
                    call_id=analysis.call_id,
                    sentiment=data["sentiment"],
                    clinical_summary=data["clinical_summary"],
                    agent_performance=data["agent_performance"],
                    call_summary=analysis.call_summary,
                    disposition=analysis.disposition,
                    follow_up_required=analysis.follow_up_required,
                    flags=data["flags"],
                    tags=data["tags"],
                    recommendations=data["recommendations"],
                    analysis_metadata=data["metadata"],
                ))
                session.add_all(
                    DrugMentionRow(**record.model_dump(mode="json")) for record in drug_records
                )
                session.add_all(
                    CallFlagRow(**record.model_dump(mode="json")) for record in flag_records
                )
        except SQLAlchemyError as e:
            logger.error(f"[{analysis.call_id}] Analysis write rolled back: {e}")
            raise PersistenceError(f"Failed to save analysis for call {analysis.call_id}: {e}") from e

        logger.info(
            f"[{analysis.call_id}] Analysis {analysis.id} stored "
            f"({len(drug_records)} drug mentions, {len(flag_records)} flags)"
        )
        return drug_records, flag_records

    def get_by_call_id(self, call_id: str) -> Analysis | None:
        with self.session_factory() as session:
            row = session.scalars(select(AnalysisRow).where(AnalysisRow.call_id == call_id)).first()
            if row is None:
                return None
            return Analysis.model_validate({
                "id": row.id,
                "call_id": row.call_id,
                "sentiment": row.sentiment,
                "clinical_summary": row.clinical_summary,
                "agent_performance": row.agent_performance,
                "call_summary": row.call_summary,
                "disposition": row.disposition,
                "follow_up_required": row.follow_up_required,
                "flags": row.flags,
                "tags": row.tags,
                "recommendations": row.recommendations or [],
                "metadata": row.analysis_metadata,
            })

    def get_drug_mentions(self, call_id: str) -> list[DrugMentionRecord]:
        with self.session_factory() as session:
            rows = session.scalars(
                select(DrugMentionRow).where(DrugMentionRow.call_id == call_id).order_by(DrugMentionRow.drug_name)
            ).all()
            return [
                DrugMentionRecord(
                    id=r.id, call_id=r.call_id, drug_name=r.drug_name, count=r.count, context=r.context or ""
                )
                for r in rows
            ]

    def get_flags(self, call_id: str) -> list[CallFlagRecord]:
        with self.session_factory() as session:
            rows = session.scalars(select(CallFlagRow).where(CallFlagRow.call_id == call_id)).all()
            return [
                CallFlagRecord(
                    id=r.id, call_id=r.call_id, type=r.type, description=r.description or "", severity=r.severity
                )
                for r in rows
            ]

    def count_derived(self, call_id: str) -> tuple[int, int]:
        """(drug mention rows, flag rows) currently stored for the call."""
        with self.session_factory() as session:
            drugs = session.scalar(
                select(func.count()).select_from(DrugMentionRow).where(DrugMentionRow.call_id == call_id)
            )
            flags = session.scalar(
                select(func.count()).select_from(CallFlagRow).where(CallFlagRow.call_id == call_id)
            )
            return drugs or 0, flags or 0
