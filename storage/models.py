"""SQLAlchemy tables for calls, transcriptions, analyses and their derived rows.

Nested facets (sentiment, clinical summary, segments, ...) are stored as JSON.
Derived rows (drug_mentions, call_flags) reference the call and are replaced
wholesale whenever the call is re-analyzed.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallRow(Base):
    __tablename__ = "calls"

    id = Column(String(64), primary_key=True)
    audio_key = Column(String(255), nullable=True)
    timestamp = Column(String(64), nullable=False)  # ISO-8601, as received
    duration = Column(Integer, default=0, nullable=False)
    agent_id = Column(String(64), nullable=True, index=True)
    call_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class TranscriptionRow(Base):
    __tablename__ = "transcriptions"

    id = Column(String(64), primary_key=True)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, unique=True)
    full_text = Column(Text, nullable=False)
    masked_full_text = Column(Text, nullable=True)
    segments = Column(JSON, nullable=False)
    masked_segments = Column(JSON, nullable=True)
    transcription_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AnalysisRow(Base):
    __tablename__ = "analysis"

    id = Column(String(64), primary_key=True)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, unique=True)
    sentiment = Column(JSON, nullable=False)
    clinical_summary = Column(JSON, nullable=False)
    agent_performance = Column(JSON, nullable=False)
    call_summary = Column(Text, nullable=False, default="")
    disposition = Column(String(255), nullable=False, default="")
    follow_up_required = Column(Boolean, nullable=False, default=False)
    flags = Column(JSON, nullable=False)
    tags = Column(JSON, nullable=False)
    recommendations = Column(JSON, nullable=False)
    analysis_metadata = Column("metadata", JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_analysis_disposition", "disposition"),
        Index("ix_analysis_follow_up", "follow_up_required"),
    )


class DrugMentionRow(Base):
    __tablename__ = "drug_mentions"

    id = Column(String(64), primary_key=True)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    drug_name = Column(String(255), nullable=False, index=True)
    count = Column(Integer, nullable=False, default=1)
    context = Column(Text, nullable=True)


class CallFlagRow(Base):
    __tablename__ = "call_flags"

    id = Column(String(64), primary_key=True)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(String(16), nullable=False)
