"""PharmaCall — Pharmacy Call Intelligence Pipeline API."""

from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from config.schemas import CallInfo
from pipeline.orchestrator import PipelineContext, analyze_call, build_context, transcribe_call
from services.llm.client import check_llm_health
from services.transcription.client import TranscriptionError
from storage.repository import CallNotFoundError, PersistenceError, TranscriptionNotFoundError

app = FastAPI(
    title="PharmaCall",
    description="Pharmacy call intelligence pipeline — recorded calls to masked transcripts and structured analysis",
    version="0.1.0",
)

# CORS for the review dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_context: PipelineContext | None = None


def get_context() -> PipelineContext:
    """Process-wide pipeline context, built on first use. Tests override this dependency."""
    global _context
    if _context is None:
        _context = build_context()
    return _context


def _run_analysis(call_id: str, context: PipelineContext):
    """Background analysis after transcription. Failures are logged, the prior analysis stays."""
    try:
        analyze_call(call_id, context)
    except Exception as e:
        logger.error(f"[{call_id}] Background analysis failed: {e}")


def _analysis_payload(call_id: str, context: PipelineContext) -> dict | None:
    analysis = context.analyses.get_by_call_id(call_id)
    if analysis is None:
        return None
    return {
        "call_id": call_id,
        "analysis": analysis.model_dump(mode="json"),
        "drug_mentions": [d.model_dump(mode="json") for d in context.analyses.get_drug_mentions(call_id)],
        "flags": [f.model_dump(mode="json") for f in context.analyses.get_flags(call_id)],
    }


@app.get("/api/health")
def health(context: PipelineContext = Depends(get_context)):
    """Health check — LLM endpoint status and transcription provider configuration."""
    return {
        "status": "healthy",
        "llm": check_llm_health(),
        "analysis_model": context.analysis_client.model,
        "masking_model": context.masking_client.model,
        "transcription_configured": context.transcription_client.is_configured(),
    }


@app.put("/api/calls/{call_id}")
def register_call(
    call_id: str,
    body: dict | None = Body(default=None),
    context: PipelineContext = Depends(get_context),
):
    """Create or update call metadata (audio key, agent, timestamp) before transcription."""
    fields = {k: v for k, v in (body or {}).items() if k != "id"}
    try:
        call = CallInfo(id=call_id, **fields)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        context.calls.upsert(call)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(f"[{call_id}] Call registered (audio_key={call.audio_key})")
    return call.model_dump(mode="json")


@app.post("/api/calls/{call_id}/transcribe")
def transcribe(
    call_id: str,
    background_tasks: BackgroundTasks,
    body: dict | None = Body(default=None),
    context: PipelineContext = Depends(get_context),
):
    """Transcribe + mask a call, then queue its analysis.

    Returns once the transcription is stored. Analysis runs in the background;
    fetch it from /api/calls/{call_id}/analysis.
    """
    try:
        transcription = transcribe_call(call_id, context, audio_url=(body or {}).get("audio_url"))
    except CallNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TranscriptionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    background_tasks.add_task(_run_analysis, call_id, context)

    return JSONResponse(content={
        "status": "transcribed",
        "call_id": call_id,
        "transcription_id": transcription.id,
        "segments": len(transcription.segments),
        "pii_masking_applied": transcription.metadata.pii_masking_applied,
        "analysis": "queued",
    }, status_code=202)


@app.get("/api/calls/{call_id}/transcription")
def get_transcription(
    call_id: str,
    x_can_view_pii: str | None = Header(default=None),
    context: PipelineContext = Depends(get_context),
):
    """Masked transcript by default; the unmasked one only with ``x-can-view-pii: true``."""
    transcription = context.transcriptions.get_by_call_id(call_id)
    if transcription is None:
        raise HTTPException(status_code=404, detail=f"No transcription for call {call_id}")

    can_view_pii = (x_can_view_pii or "").lower() == "true"
    view = transcription if can_view_pii else transcription.redacted()
    return {
        "call_id": call_id,
        "masked": not can_view_pii and transcription.metadata.pii_masking_applied,
        "transcription": view.model_dump(mode="json"),
    }


@app.post("/api/calls/{call_id}/analyze")
def analyze(call_id: str, context: PipelineContext = Depends(get_context)):
    """Synchronously (re-)analyze a call. Replaces the previous analysis and its derived rows."""
    try:
        outcome = analyze_call(call_id, context)
    except (CallNotFoundError, TranscriptionNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    payload = _analysis_payload(call_id, context) or {"call_id": call_id}
    payload["state"] = outcome.state.value
    if outcome.fallback is not None:
        payload["fallback_reason"] = outcome.fallback.reason
    return payload


@app.get("/api/calls/{call_id}/analysis")
def get_analysis(call_id: str, context: PipelineContext = Depends(get_context)):
    """Stored analysis plus its drug-mention and flag rows."""
    payload = _analysis_payload(call_id, context)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"No analysis for call {call_id}")
    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
