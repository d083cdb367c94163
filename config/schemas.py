"""Call intelligence Pydantic schemas — structured definitions for every pipeline stage."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, model_validator


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── TRANSCRIPTION ──

class SpeakerRole(str, Enum):
    AGENT = "Agent"
    CUSTOMER = "Customer"


class TranscriptionSegment(BaseModel):
    """A timestamped, speaker-attributed span of transcript text.

    Segments may come from sentence-splitting heuristics rather than real
    diarization, so consecutive segments are not required to be disjoint.
    """
    speaker: SpeakerRole
    text: str
    start_time: float = Field(ge=0, description="Segment start in seconds")
    end_time: float = Field(ge=0, description="Segment end in seconds")
    confidence: float = Field(default=0.9, ge=0, le=1)

    @model_validator(mode="after")
    def _check_time_order(self):
        if self.end_time < self.start_time:
            raise ValueError(
                f"end_time ({self.end_time}) must not precede start_time ({self.start_time})"
            )
        return self


class MaskingMetadata(BaseModel):
    timestamp: str = Field(default_factory=_utcnow_iso)
    model_used: str
    items_masked: dict[str, int] = Field(
        default_factory=dict,
        description="Bracket-tag frequency in the masked text, e.g. {'PATIENT_NAME': 3}",
    )


class MaskedTranscript(BaseModel):
    """Masking output: combined masked text plus the realigned per-segment view."""
    masked_text: str
    masked_segments: list[TranscriptionSegment] = Field(default_factory=list)
    masking_metadata: MaskingMetadata


class TranscriptionMetadata(BaseModel):
    transcription_model: str
    language: str = "english"
    processing_time_ms: int = 0
    pii_masking_applied: bool = False
    pii_masking_metadata: Optional[MaskingMetadata] = None


class Transcription(BaseModel):
    """One transcription per call, with an optional parallel masked view."""
    id: str
    call_id: str
    full_text: str
    segments: list[TranscriptionSegment] = Field(default_factory=list)
    masked_full_text: Optional[str] = None
    masked_segments: Optional[list[TranscriptionSegment]] = None
    metadata: TranscriptionMetadata

    @model_validator(mode="after")
    def _check_masked_view(self):
        if self.masked_segments is not None and len(self.masked_segments) != len(self.segments):
            raise ValueError("masked_segments must be parallel to segments")
        return self

    def redacted(self) -> "Transcription":
        """Copy that exposes only the masked view (for viewers without PII rights)."""
        if not self.metadata.pii_masking_applied or self.masked_segments is None:
            return self
        return self.model_copy(update={
            "full_text": self.masked_full_text or self.full_text,
            "segments": self.masked_segments,
            "masked_full_text": None,
            "masked_segments": None,
        })


class CallInfo(BaseModel):
    """Call metadata embedded in the analysis prompt."""
    id: str
    timestamp: str = Field(default_factory=_utcnow_iso)
    duration: int = Field(default=0, ge=0, description="Call duration in seconds")
    agent_id: Optional[str] = None
    audio_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


# ── SENTIMENT ──

class SentimentPoint(BaseModel):
    time: float = 0.0
    score: int = Field(default=0, ge=0, le=100)


class EscalationPoint(BaseModel):
    time: Union[float, str] = Field(default="unknown", description="Seconds, or 'unknown'")
    text: str = ""
    reason: str = ""


class SentimentData(BaseModel):
    overall_score: int = Field(default=0, ge=0, le=100)
    timeline: list[SentimentPoint] = Field(default_factory=list)
    emotion_tags: list[str] = Field(default_factory=list)
    escalation_points: list[EscalationPoint] = Field(default_factory=list)


# ── CLINICAL ──

class DrugMention(BaseModel):
    name: str
    count: int = Field(default=1, ge=1)
    context: str = ""


class ClinicalSummary(BaseModel):
    medical_conditions: list[str] = Field(default_factory=list)
    drug_mentions: list[DrugMention] = Field(default_factory=list)
    clinical_context: str = ""


# ── AGENT PERFORMANCE ──

class AgentPerformance(BaseModel):
    """Scores default to 0: all-zero means no quantitative scoring was available."""
    communication_score: int = Field(default=0, ge=0, le=100)
    adherence_to_protocol: int = Field(default=0, ge=0, le=100)
    empathy_score: int = Field(default=0, ge=0, le=100)
    efficiency_score: int = Field(default=0, ge=0, le=100)
    improvement_areas: list[str] = Field(default_factory=list)
    effective_techniques: list[str] = Field(default_factory=list)


# ── DISPOSITION & FLAGS ──

class FlagSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CallFlag(BaseModel):
    type: str = "Unknown"
    description: str = ""
    severity: FlagSeverity = FlagSeverity.MEDIUM


class Recommendation(BaseModel):
    """A process-improvement suggestion drawn from one call."""
    recommendation: str
    rationale: str = ""


# ── MASTER OUTPUT: ANALYSIS ──

class AnalysisMetadata(BaseModel):
    model: str
    version: str
    processing_time_ms: int = 0
    created_at: str = Field(default_factory=_utcnow_iso)


class AnalysisResult(BaseModel):
    """Normalized analysis body — everything except id, call_id and metadata."""
    sentiment: SentimentData = Field(default_factory=SentimentData)
    clinical_summary: ClinicalSummary = Field(default_factory=ClinicalSummary)
    agent_performance: AgentPerformance = Field(default_factory=AgentPerformance)
    call_summary: str = ""
    disposition: str = ""
    follow_up_required: bool = False
    flags: list[CallFlag] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)


class Analysis(AnalysisResult):
    """One live analysis per call; re-analysis replaces it and its derived rows."""
    id: str
    call_id: str
    metadata: AnalysisMetadata


# ── DERIVED ENTITIES ──

class DrugMentionRecord(BaseModel):
    id: str
    call_id: str
    drug_name: str
    count: int = Field(ge=1)
    context: str = ""


class CallFlagRecord(BaseModel):
    id: str
    call_id: str
    type: str
    description: str
    severity: FlagSeverity
