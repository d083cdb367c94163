"""Transcript Segmentation — flat transcript text → timed, speaker-labeled segments.

The upstream provider usually returns only a flat string, so segments are an
approximation:
- split on sentence boundaries (. ! ? followed by whitespace)
- speakers alternate Agent / Customer starting with Agent (no real diarization)
- duration estimated at 0.5s per word, minimum 1s, on a running clock

Speaker labels are NOT ground truth and callers must not treat them as such.
"""

import math
import re

from config.schemas import SpeakerRole, TranscriptionSegment

DEFAULT_SEGMENT_CONFIDENCE = 0.9
SECONDS_PER_WORD = 0.5
MIN_SEGMENT_SECONDS = 1.0

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def _speaker_for_index(index: int) -> SpeakerRole:
    return SpeakerRole.AGENT if index % 2 == 0 else SpeakerRole.CUSTOMER


def estimate_duration(sentence: str) -> float:
    word_count = len(sentence.split())
    return max(MIN_SEGMENT_SECONDS, word_count * SECONDS_PER_WORD)


def segment_transcript(
    text: str, confidence: float = DEFAULT_SEGMENT_CONFIDENCE
) -> list[TranscriptionSegment]:
    """Split a flat transcript into sentence segments with estimated timing.

    startTime[0] is 0 and each segment starts where the previous one ended.
    """
    sentences = [s.strip() for s in _SENTENCE_BOUNDARY.split(text or "")]
    sentences = [s for s in sentences if s]

    segments = []
    clock = 0.0
    for index, sentence in enumerate(sentences):
        duration = estimate_duration(sentence)
        segments.append(TranscriptionSegment(
            speaker=_speaker_for_index(index),
            text=sentence,
            start_time=clock,
            end_time=clock + duration,
            confidence=confidence,
        ))
        clock += duration
    return segments


def segments_from_provider(raw_segments: list[dict]) -> list[TranscriptionSegment]:
    """Convert Whisper-style provider segments (id, start, end, text, avg_logprob).

    Confidence is exp(avg_logprob) when the provider reports it. Speakers still
    alternate by segment id since the provider does not diarize.
    """
    segments = []
    for index, raw in enumerate(raw_segments):
        text = str(raw.get("text", "")).strip()
        if not text:
            continue
        seg_id = raw.get("id", index)
        if not isinstance(seg_id, int):
            seg_id = index

        start = max(0.0, float(raw.get("start", 0.0) or 0.0))
        end = max(start, float(raw.get("end", start) or start))

        avg_logprob = raw.get("avg_logprob")
        if isinstance(avg_logprob, (int, float)):
            confidence = min(1.0, max(0.0, math.exp(avg_logprob)))
        else:
            confidence = DEFAULT_SEGMENT_CONFIDENCE

        segments.append(TranscriptionSegment(
            speaker=_speaker_for_index(seg_id),
            text=text,
            start_time=start,
            end_time=end,
            confidence=confidence,
        ))
    return segments


def build_segments(text: str, raw_segments: list[dict] | None = None) -> list[TranscriptionSegment]:
    """Prefer provider timing when supplied, else fall back to the sentence heuristic."""
    if raw_segments:
        segments = segments_from_provider(raw_segments)
        if segments:
            return segments
    return segment_transcript(text)


def transcript_duration(segments: list[TranscriptionSegment]) -> int:
    """Whole-second call duration implied by the last segment."""
    if not segments:
        return 0
    return math.ceil(segments[-1].end_time)


def format_transcript(segments: list[TranscriptionSegment]) -> str:
    """Render segments as "{speaker}: {text}" blocks separated by a blank line."""
    return "\n\n".join(f"{seg.speaker.value}: {seg.text}" for seg in segments)
