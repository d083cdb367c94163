"""Pipeline Orchestrator — one sequential run per call.

    transcribe → segment → mask → persist transcription
        → analyze → project → persist analysis (atomic replace)

Every dependency (model clients, transcription provider, repositories) is
carried on a PipelineContext built per process or per test, never held in
module globals. Runs for different calls share no mutable state.

Model failures never stop a run: masking degrades to the unmasked transcript
and analysis degrades to the local fallback. Only missing inputs, transcription
failures and persistence failures propagate to the caller.
"""

import dataclasses
import time
import uuid
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy.orm import sessionmaker

from analysis.call_analysis import AnalysisOutcome, AnalysisService
from analysis.pii_masking import MASKING_FAILED_MODEL, MaskingOptions, mask_segments
from analysis.segmentation import build_segments, transcript_duration
from config import settings
from config.schemas import CallInfo, Transcription, TranscriptionMetadata
from services.llm.client import CompletionClient, build_analysis_client, build_masking_client
from services.transcription.client import TranscriptionClient
from storage.repository import (
    AnalysisRepository,
    CallNotFoundError,
    CallRepository,
    TranscriptionNotFoundError,
    TranscriptionRepository,
    create_session_factory,
)


@dataclass
class PipelineContext:
    analysis_client: CompletionClient
    masking_client: CompletionClient
    transcription_client: TranscriptionClient
    calls: CallRepository
    transcriptions: TranscriptionRepository
    analyses: AnalysisRepository
    masking_options: MaskingOptions = field(default_factory=MaskingOptions)


def build_context(session_factory: sessionmaker | None = None) -> PipelineContext:
    """Wire the production clients and repositories from config/settings.py."""
    session_factory = session_factory or create_session_factory()
    return PipelineContext(
        analysis_client=build_analysis_client(),
        masking_client=build_masking_client(),
        transcription_client=TranscriptionClient(),
        calls=CallRepository(session_factory),
        transcriptions=TranscriptionRepository(session_factory),
        analyses=AnalysisRepository(session_factory),
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _require_call(call_id: str, context: PipelineContext) -> CallInfo:
    call = context.calls.get(call_id)
    if call is None:
        raise CallNotFoundError(f"Call {call_id} not found")
    return call


def audio_url_for(call: CallInfo) -> str:
    return settings.AUDIO_URL_TEMPLATE.format(key=call.audio_key or call.id)


def transcribe_call(
    call_id: str, context: PipelineContext, audio_url: str | None = None
) -> Transcription:
    """Transcribe, segment and mask one call, then persist the transcription.

    Raises:
        CallNotFoundError: no such call
        TranscriptionError: the provider failed (no fallback for transcription)
        PersistenceError: the write was rolled back
    """
    call = _require_call(call_id, context)
    audio_url = audio_url or audio_url_for(call)
    start = time.perf_counter()

    logger.info(f"[{call_id}] Transcribing {audio_url}")
    provider = context.transcription_client.transcribe(audio_url)
    segments = build_segments(provider.text, provider.segments)
    logger.info(f"[{call_id}] {len(segments)} segments ({'provider' if provider.segments else 'sentence'} timing)")

    masked = mask_segments(segments, context.masking_client, context.masking_options)
    masking_ok = masked.masking_metadata.model_used != MASKING_FAILED_MODEL

    transcription = Transcription(
        id=str(uuid.uuid4()),
        call_id=call_id,
        full_text=provider.text,
        segments=segments,
        masked_full_text=masked.masked_text,
        masked_segments=masked.masked_segments,
        metadata=TranscriptionMetadata(
            transcription_model=context.transcription_client.model,
            language=provider.language or context.transcription_client.language,
            processing_time_ms=_elapsed_ms(start),
            pii_masking_applied=masking_ok,
            pii_masking_metadata=masked.masking_metadata,
        ),
    )
    context.transcriptions.replace(transcription, call_duration=transcript_duration(segments))

    if not masking_ok:
        logger.warning(f"[{call_id}] Transcription stored WITHOUT PII masking")
    logger.info(f"[{call_id}] Transcription {transcription.id} stored in {transcription.metadata.processing_time_ms}ms")
    return transcription


def analyze_call(call_id: str, context: PipelineContext) -> AnalysisOutcome:
    """Analyze the stored transcription and replace the call's analysis.

    Exactly one analysis (plus its drug-mention and flag rows) is persisted,
    or the previous one is left untouched and PersistenceError is raised.
    """
    call = _require_call(call_id, context)
    transcription = context.transcriptions.get_by_call_id(call_id)
    if transcription is None:
        raise TranscriptionNotFoundError(f"No transcription for call {call_id}")

    start = time.perf_counter()
    outcome = AnalysisService(context.analysis_client).analyze(transcription, call)

    metadata = outcome.analysis.metadata.model_copy(update={"processing_time_ms": _elapsed_ms(start)})
    analysis = outcome.analysis.model_copy(update={"metadata": metadata})
    outcome = dataclasses.replace(outcome, analysis=analysis)

    context.analyses.replace_analysis(analysis)
    logger.info(
        f"[{call_id}] Analysis complete ({outcome.state.value}, model={metadata.model}, "
        f"{metadata.processing_time_ms}ms)"
    )
    return outcome


def process_call(
    call_id: str, context: PipelineContext, audio_url: str | None = None
) -> AnalysisOutcome:
    """Run the full pipeline for one call: transcription, then analysis."""
    logger.info(f"[{call_id}] Starting pipeline")
    stage_times: dict[str, float] = {}
    pipeline_start = time.perf_counter()

    def _stage_timer(stage_name: str):
        """Log and record time for current stage, start next."""
        now = time.perf_counter()
        if hasattr(_stage_timer, "_last"):
            elapsed = now - _stage_timer._last
            stage_times[_stage_timer._name] = round(elapsed, 1)
            logger.info(f"[{call_id}] ⏱ {_stage_timer._name}: {elapsed:.1f}s")
        _stage_timer._last = now
        _stage_timer._name = stage_name

    # ── STAGE 1: TRANSCRIBE + MASK ──
    _stage_timer("Stage 1: Transcription")
    transcribe_call(call_id, context, audio_url=audio_url)

    # ── STAGE 2: ANALYZE + PROJECT ──
    _stage_timer("Stage 2: Analysis")
    outcome = analyze_call(call_id, context)
    _stage_timer("done")

    total_elapsed = time.perf_counter() - pipeline_start
    timing_str = " | ".join(f"{k}: {v}s" for k, v in stage_times.items())
    logger.info(f"[{call_id}] Pipeline complete in {total_elapsed:.1f}s — {timing_str}")
    return outcome
