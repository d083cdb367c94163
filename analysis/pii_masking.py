"""PII Masking — LLM-based redaction that keeps the per-segment time axis intact.

Flow:
1. Join segments as "{speaker}: {text}" blocks separated by a blank line
2. Ask the masking model to replace PII with bracketed category tags
   ([PATIENT_NAME], [PATIENT_NAME_1], [PHONE_NUMBER], ...) while keeping
   medication names and dosages untouched
3. Split the reply back on the blank-line delimiter and pair each block with
   the original segment's speaker, timestamps and confidence

Alignment failures are isolated per segment: a segment whose block is missing
or unparseable keeps its original text, everything else stays masked. If the
masking call itself fails the transcript is returned unmasked — masking is
best-effort and never blocks the pipeline.
"""

import re
from collections import Counter

from loguru import logger
from pydantic import BaseModel

from analysis.segmentation import format_transcript
from config.schemas import (
    MaskedTranscript,
    MaskingMetadata,
    SpeakerRole,
    TranscriptionSegment,
)
from services.llm.client import CompletionClient

SEGMENT_DELIMITER = "\n\n"
MASKING_FAILED_MODEL = "none - error occurred"

_TAG_PATTERN = re.compile(r"\[([A-Z_]+)(?:_\d+)?\]")
_SPEAKER_NAMES = "|".join(re.escape(role.value) for role in SpeakerRole)
_SPEAKER_LINE = re.compile(rf"^\s*({_SPEAKER_NAMES})\s*:", re.MULTILINE)


class MaskingOptions(BaseModel):
    """Which PII categories to mask. Everything is on by default."""
    mask_patient_names: bool = True
    mask_phone_numbers: bool = True
    mask_addresses: bool = True
    mask_emails: bool = True
    mask_ssn: bool = True
    mask_dob: bool = True
    mask_account_numbers: bool = True
    mask_credit_card_numbers: bool = True
    mask_mrns: bool = True
    preserve_medications: bool = True


# (option flag, instruction line)
_CATEGORY_INSTRUCTIONS = [
    ("mask_patient_names",
     "- Patient names: Replace with [PATIENT_NAME] or [PATIENT_NAME_1], [PATIENT_NAME_2] for multiple patients"),
    ("mask_phone_numbers", "- Phone numbers: Replace with [PHONE_NUMBER]"),
    ("mask_addresses", "- Addresses (full or partial): Replace with [ADDRESS]"),
    ("mask_emails", "- Email addresses: Replace with [EMAIL]"),
    ("mask_ssn", "- Social Security Numbers: Replace with [SSN]"),
    ("mask_dob", "- Dates of birth: Replace with [DOB]"),
    ("mask_account_numbers", "- Account numbers, member IDs: Replace with [ACCOUNT_NUMBER]"),
    ("mask_credit_card_numbers", "- Credit card numbers: Replace with [CREDIT_CARD]"),
    ("mask_mrns", "- Medical Record Numbers: Replace with [MRN]"),
]

_PRESERVE_BLOCK = (
    "INFORMATION TO PRESERVE (DO NOT MASK):\n"
    "- Medication names and dosages\n"
    "- General medical conditions\n"
    "- Healthcare organization names (unless uniquely identifying a patient)\n"
    "- General ages (e.g., \"65-year-old\") that don't reveal exact DOB"
)


def join_segments(segments: list[TranscriptionSegment]) -> str:
    return format_transcript(segments)


def build_masking_prompt(text: str, options: MaskingOptions | None = None) -> str:
    options = options or MaskingOptions()
    categories = "\n".join(
        line for flag, line in _CATEGORY_INSTRUCTIONS if getattr(options, flag)
    )
    preserve = _PRESERVE_BLOCK if options.preserve_medications else ""

    return (
        "You are a PII (Personally Identifiable Information) detection and masking assistant "
        "for healthcare communications.\n"
        "Your task is to identify and mask sensitive information in pharmacy call transcripts "
        "while preserving the context and meaning.\n\n"
        "MASKING INSTRUCTIONS:\n"
        "- Replace the sensitive information with descriptive placeholder tags in [BRACKETS]\n"
        "- Maintain the original format of the text EXACTLY, including blank lines between turns, "
        "spacing, and the \"Speaker:\" prefix on every turn\n"
        "- Do not add any commentary or explanations - just return the masked text\n"
        "- Use specific tags to indicate the type of information masked "
        "(e.g., [PATIENT_NAME], not just [NAME])\n"
        "- For names that appear multiple times, use consistent identifiers "
        "(e.g., [PATIENT_NAME_1], [PATIENT_NAME_2])\n"
        "- If you're unsure whether something should be masked, err on the side of masking it\n\n"
        "TYPES OF INFORMATION TO MASK:\n"
        f"{categories}\n"
        "- Any other unique identifiers that could identify a specific patient\n\n"
        f"{preserve}\n\n"
        "TRANSCRIPT TO MASK:\n"
        f"{text}\n\n"
        "I need only the masked transcript in return, without any introduction, "
        "explanation or additional output."
    )


def count_masked_items(masked_text: str) -> dict[str, int]:
    """Count placeholder tags by category. [PATIENT_NAME_2] counts as PATIENT_NAME."""
    return dict(Counter(m.group(1) for m in _TAG_PATTERN.finditer(masked_text)))


def _parse_block(block: str) -> tuple[str, str] | None:
    """Split one "Speaker: text" block into (label, text).

    Text stops at any further speaker-prefixed line, which means the model
    dropped a delimiter and swallowed the next turn into this block.
    """
    colon = block.find(":")
    if colon == -1:
        return None
    label = block[:colon].strip()
    body = block[colon + 1:]
    swallowed = _SPEAKER_LINE.search(body)
    if swallowed:
        body = body[:swallowed.start()]
    body = body.strip()
    if not body:
        return None
    return label, body


def realign_masked_segments(
    segments: list[TranscriptionSegment], masked_text: str
) -> list[TranscriptionSegment]:
    """Map masked blocks back onto the original segments.

    Output always has the same length, speakers and timestamps as ``segments``.
    A segment with no usable masked block keeps its original text.
    """
    blocks = masked_text.strip().split(SEGMENT_DELIMITER) if masked_text.strip() else []
    parsed = [_parse_block(b) for b in blocks]

    masked_texts: list[str | None] = [None] * len(segments)

    in_step = len(parsed) == len(segments) and all(
        item is not None and item[0] == seg.speaker.value for item, seg in zip(parsed, segments)
    )
    if in_step:
        for i, item in enumerate(parsed):
            masked_texts[i] = item[1]
    else:
        # Blocks shifted or count changed: walk both sequences, matching on speaker label.
        # Blocks that carry no speaker label (model commentary) are skipped;
        # a segment whose speaker doesn't match the next block is left unmasked.
        speaker_labels = {role.value for role in SpeakerRole}
        j = 0
        for i, seg in enumerate(segments):
            while j < len(parsed) and (parsed[j] is None or parsed[j][0] not in speaker_labels):
                j += 1
            if j >= len(parsed):
                break
            label, text = parsed[j]
            if label == seg.speaker.value:
                masked_texts[i] = text
                j += 1

    realigned = []
    reverted = 0
    for seg, text in zip(segments, masked_texts):
        if text is None:
            reverted += 1
            realigned.append(seg.model_copy())
        else:
            realigned.append(seg.model_copy(update={"text": text}))

    if reverted:
        logger.warning(
            f"Masking realignment: {reverted}/{len(segments)} segments kept original text "
            f"({len(blocks)} masked blocks for {len(segments)} segments)"
        )
    return realigned


def mask_text(
    text: str, client: CompletionClient, options: MaskingOptions | None = None
) -> tuple[str, MaskingMetadata]:
    """Mask PII in free text. Returns the original text unmasked if the model call fails."""
    try:
        masked = client.complete(build_masking_prompt(text, options))
        if not masked.strip():
            raise ValueError("Masking model returned an empty response")
    except Exception as e:
        logger.warning(f"PII masking failed, leaving transcript unmasked: {e}")
        return text, MaskingMetadata(model_used=MASKING_FAILED_MODEL, items_masked={})

    return masked, MaskingMetadata(
        model_used=client.model,
        items_masked=count_masked_items(masked),
    )


def mask_segments(
    segments: list[TranscriptionSegment],
    client: CompletionClient,
    options: MaskingOptions | None = None,
) -> MaskedTranscript:
    """Mask a segmented transcript in one model call and realign the result."""
    if not segments:
        return MaskedTranscript(
            masked_text="",
            masked_segments=[],
            masking_metadata=MaskingMetadata(model_used=client.model, items_masked={}),
        )

    combined = join_segments(segments)
    masked_text, metadata = mask_text(combined, client, options)
    masked_segments = realign_masked_segments(segments, masked_text)

    if metadata.items_masked:
        summary = ", ".join(f"{k}={v}" for k, v in sorted(metadata.items_masked.items()))
        logger.info(f"PII masked across {len(segments)} segments: {summary}")
    return MaskedTranscript(
        masked_text=masked_text,
        masked_segments=masked_segments,
        masking_metadata=metadata,
    )
