"""Runtime configuration — read from the environment (.env is loaded by entry points)."""

import os

# OpenAI-compatible chat endpoint used for both masking and analysis
# (Ollama by default; point at any hosted provider with LLM_BASE_URL + LLM_API_KEY)
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY", "ollama")
ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "qwen3:8b")
MASKING_MODEL = os.getenv("MASKING_MODEL", ANALYSIS_MODEL)
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "4000"))

# Transcription provider (OpenAI-compatible /audio/transcriptions, e.g. LemonFox)
TRANSCRIPTION_API_URL = os.getenv(
    "TRANSCRIPTION_API_URL", "https://api.lemonfox.ai/v1/audio/transcriptions"
)
TRANSCRIPTION_API_KEY = os.getenv("TRANSCRIPTION_API_KEY", "")
TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "lemonfox-ai")
TRANSCRIPTION_LANGUAGE = os.getenv("TRANSCRIPTION_LANGUAGE", "english")
TRANSCRIPTION_TIMEOUT = float(os.getenv("TRANSCRIPTION_TIMEOUT", "300"))

# Where the provider fetches audio from; {key} is the call's stored audio key
AUDIO_URL_TEMPLATE = os.getenv("AUDIO_URL_TEMPLATE", "http://localhost:9000/audio/{key}")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/calls.db")
