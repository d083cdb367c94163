"""API tests — FastAPI TestClient with the pipeline context swapped for fakes."""

from unittest.mock import patch

import pytest
from conftest import FakeLLM, FakeTranscriber
from fastapi.testclient import TestClient

from app import app, get_context
from services.transcription.client import TranscriptionError


@pytest.fixture
def client(context):
    app.dependency_overrides[get_context] = lambda: context
    yield TestClient(app)
    app.dependency_overrides.clear()


# ── Health ──

class TestHealth:
    def test_reports_models_and_provider(self, client):
        with patch("app.check_llm_health", return_value={"status": "healthy", "models": ["qwen3:8b"]}):
            resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["llm"]["models"] == ["qwen3:8b"]
        assert body["analysis_model"] == "qwen3:8b"
        assert body["masking_model"] == "llama3.1:8b"
        assert body["transcription_configured"] is True


# ── Call Registration ──

class TestRegisterCall:
    def test_creates_call(self, client, context):
        resp = client.put("/api/calls/call-2", json={"audio_key": "calls/2.mp3", "agent_id": "agent-3"})
        assert resp.status_code == 200
        assert resp.json()["id"] == "call-2"
        assert context.calls.get("call-2").audio_key == "calls/2.mp3"

    def test_path_id_wins_over_body(self, client, context):
        client.put("/api/calls/call-3", json={"id": "other"})
        assert context.calls.get("call-3") is not None
        assert context.calls.get("other") is None

    def test_invalid_fields_rejected(self, client):
        resp = client.put("/api/calls/call-4", json={"duration": -5})
        assert resp.status_code == 422


# ── Transcription ──

class TestTranscribe:
    def test_transcribes_and_runs_background_analysis(self, client, context):
        resp = client.post("/api/calls/call-1/transcribe")
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "transcribed"
        assert body["segments"] == 4
        assert body["pii_masking_applied"] is True
        assert body["analysis"] == "queued"

        # TestClient runs background tasks before returning
        assert context.analyses.get_by_call_id("call-1") is not None

    def test_unknown_call_is_404(self, client):
        assert client.post("/api/calls/nope/transcribe").status_code == 404

    def test_provider_failure_is_502(self, client, context):
        context.transcription_client = FakeTranscriber(error=TranscriptionError("HTTP 503"))
        resp = client.post("/api/calls/call-1/transcribe")
        assert resp.status_code == 502

    def test_background_failure_does_not_fail_request(self, client, context):
        with patch("app.analyze_call", side_effect=RuntimeError("boom")):
            resp = client.post("/api/calls/call-1/transcribe")
        assert resp.status_code == 202
        assert context.analyses.get_by_call_id("call-1") is None


class TestGetTranscription:
    def test_masked_by_default(self, client):
        client.post("/api/calls/call-1/transcribe")
        body = client.get("/api/calls/call-1/transcription").json()
        assert body["masked"] is True
        assert "John Smith" not in body["transcription"]["full_text"]
        assert body["transcription"]["masked_segments"] is None
        assert "[PATIENT_NAME]" in body["transcription"]["segments"][1]["text"]

    def test_pii_header_shows_original(self, client):
        client.post("/api/calls/call-1/transcribe")
        body = client.get("/api/calls/call-1/transcription", headers={"x-can-view-pii": "true"}).json()
        assert body["masked"] is False
        assert "John Smith" in body["transcription"]["full_text"]
        assert body["transcription"]["masked_segments"] is not None

    def test_unmasked_when_masking_failed(self, client, context):
        context.masking_client = FakeLLM(error=ConnectionError("down"))
        client.post("/api/calls/call-1/transcribe")
        body = client.get("/api/calls/call-1/transcription").json()
        assert body["masked"] is False
        assert body["transcription"]["metadata"]["pii_masking_applied"] is False

    def test_missing_is_404(self, client):
        assert client.get("/api/calls/call-1/transcription").status_code == 404


# ── Analysis ──

class TestAnalyze:
    def test_analyze_returns_derived_rows(self, client):
        client.post("/api/calls/call-1/transcribe")
        resp = client.post("/api/calls/call-1/analyze")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "done"
        assert "fallback_reason" not in body
        assert sorted(d["drug_name"] for d in body["drug_mentions"]) == ["Metformin", "Ozempic"]
        assert body["flags"][0]["severity"] == "high"

    def test_fallback_reason_reported(self, client, context):
        client.post("/api/calls/call-1/transcribe")
        context.analysis_client = FakeLLM(reply="no json here")
        body = client.post("/api/calls/call-1/analyze").json()
        assert body["state"] == "fallback"
        assert body["fallback_reason"]
        assert body["analysis"]["tags"] == ["parsing_error"]

    def test_analyze_without_transcription_is_404(self, client):
        assert client.post("/api/calls/call-1/analyze").status_code == 404

    def test_get_analysis(self, client):
        client.post("/api/calls/call-1/transcribe")
        body = client.get("/api/calls/call-1/analysis").json()
        assert body["analysis"]["disposition"] == "Prior Authorization"
        assert len(body["drug_mentions"]) == 2

    def test_get_missing_analysis_is_404(self, client):
        assert client.get("/api/calls/call-1/analysis").status_code == 404
