"""Shared fakes and fixtures: scripted model clients, a fake transcription provider, in-memory SQLite."""

import json

import pytest

from config.schemas import (
    CallInfo,
    SpeakerRole,
    Transcription,
    TranscriptionMetadata,
    TranscriptionSegment,
)
from pipeline.orchestrator import PipelineContext
from services.transcription.client import ProviderTranscript
from storage.repository import (
    AnalysisRepository,
    CallRepository,
    TranscriptionRepository,
    create_session_factory,
)

SAMPLE_TRANSCRIPT = (
    "Thank you for calling, this is Dana. "
    "Hi, my name is John Smith and my Ozempic was denied. "
    "I can help with that. "
    "My phone number is 555-123-4567."
)

SAMPLE_ANALYSIS = {
    "sentimentAnalysis": {
        "overallScore": 42,
        "emotionTags": ["frustrated", "concerned"],
        "escalationPoints": [{"time": 12, "text": "Denial explained", "reason": "coverage"}],
    },
    "clinicalAnalysis": {
        "medicalConditions": ["Type 2 Diabetes"],
        "drugMentions": [
            {"name": "Ozempic", "count": 3, "context": "Prior authorization denied"},
            {"name": "Metformin", "count": 1, "context": "Current therapy"},
        ],
        "clinicalContext": "Patient on Metformin, prescriber requested Ozempic.",
    },
    "agentPerformance": {
        "communicationScore": 85,
        "adherenceToProtocol": 90,
        "empathyScore": 78,
        "efficiencyScore": 80,
        "improvementAreas": ["Explain appeal timelines"],
        "effectiveTechniques": ["Active listening"],
    },
    "callSummary": "Member called about a denied Ozempic prior authorization.",
    "callDisposition": {
        "category": "Prior Authorization",
        "followUpRequired": True,
        "flags": [{"type": "Coverage Denial", "description": "PA denied", "severity": "high"}],
    },
    "processImprovementRecommendations": [
        {"recommendation": "Send denial letters sooner", "rationale": "Member was surprised"},
    ],
    "tagging": ["prior authorization", "ozempic"],
}


class FakeLLM:
    """Scripted CompletionClient: returns ``reply`` (or raises ``error``) and records prompts."""

    def __init__(self, reply: str = "", model: str = "qwen3:8b", error: Exception | None = None):
        self.reply = reply
        self.model = model
        self.error = error
        self.prompts: list[str] = []

    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply(prompt) if callable(self.reply) else self.reply


class FakeTranscriber:
    def __init__(self, text: str = SAMPLE_TRANSCRIPT, segments: list[dict] | None = None,
                 error: Exception | None = None):
        self.text = text
        self.segments = segments or []
        self.error = error
        self.model = "lemonfox-ai"
        self.language = "english"
        self.urls: list[str] = []

    def is_configured(self) -> bool:
        return True

    def transcribe(self, audio_url: str, language: str | None = None) -> ProviderTranscript:
        self.urls.append(audio_url)
        if self.error is not None:
            raise self.error
        return ProviderTranscript(text=self.text, segments=self.segments)


def echo_masker(prompt: str) -> str:
    """Masking fake: returns the transcript block of the prompt with names and phones tagged."""
    body = prompt.split("TRANSCRIPT TO MASK:\n", 1)[1].split("\n\nI need only", 1)[0]
    return body.replace("John Smith", "[PATIENT_NAME]").replace("555-123-4567", "[PHONE_NUMBER]")


def make_segments(*texts: str) -> list[TranscriptionSegment]:
    segments = []
    for i, text in enumerate(texts):
        segments.append(TranscriptionSegment(
            speaker=SpeakerRole.AGENT if i % 2 == 0 else SpeakerRole.CUSTOMER,
            text=text,
            start_time=float(i * 2),
            end_time=float(i * 2 + 2),
        ))
    return segments


def make_transcription(call_id: str = "call-1", texts: tuple[str, ...] | None = None) -> Transcription:
    segments = make_segments(*(texts or ("How can I help?", "My Ozempic was denied.")))
    return Transcription(
        id=f"tr-{call_id}",
        call_id=call_id,
        full_text=" ".join(s.text for s in segments),
        segments=segments,
        metadata=TranscriptionMetadata(transcription_model="lemonfox-ai"),
    )


@pytest.fixture
def session_factory():
    return create_session_factory("sqlite:///:memory:")


@pytest.fixture
def analysis_llm():
    return FakeLLM(reply=json.dumps(SAMPLE_ANALYSIS))


@pytest.fixture
def masking_llm():
    return FakeLLM(reply=echo_masker, model="llama3.1:8b")


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def context(session_factory, analysis_llm, masking_llm, transcriber):
    ctx = PipelineContext(
        analysis_client=analysis_llm,
        masking_client=masking_llm,
        transcription_client=transcriber,
        calls=CallRepository(session_factory),
        transcriptions=TranscriptionRepository(session_factory),
        analyses=AnalysisRepository(session_factory),
    )
    ctx.calls.upsert(CallInfo(id="call-1", timestamp="2025-03-04T10:00:00+00:00",
                              agent_id="agent-7", audio_key="calls/call-1.mp3"))
    return ctx

