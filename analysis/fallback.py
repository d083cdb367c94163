"""Fallback Analysis — deterministic keyword analysis used when the analysis model is unreachable.

No external calls. Scores are flat mid-range placeholders rather than 0:
0 means "verified absence of scoring" in the model path, while these
constants mean "plausible but unverified". Keep the two apart.
"""

import re
import uuid

from config.schemas import (
    AgentPerformance,
    Analysis,
    AnalysisMetadata,
    CallFlag,
    ClinicalSummary,
    DrugMention,
    FlagSeverity,
    SentimentData,
)

FALLBACK_MODEL = "local-fallback"
FALLBACK_VERSION = "1.0"

FALLBACK_SENTIMENT_SCORE = 60
FALLBACK_PERFORMANCE = {
    "communication_score": 70,
    "adherence_to_protocol": 70,
    "empathy_score": 65,
    "efficiency_score": 70,
}

# Canonical drug name → spellings/ASR variants seen in transcripts
DRUG_VOCABULARY = {
    "Ozempic": ["ozempic", "o-zmpic", "ozep", "semaglutide"],
    "Metformin": ["metformin", "met forming"],
}

# Condition label → any of these substrings
CONDITION_VOCABULARY = {
    "Diabetes": ["diabetes", "diabetic"],
    "Type 1 Diabetes": ["type 1"],
    "Type 2 Diabetes": ["type 2"],
}

DENIAL_TERMS = ("denied", "denial")
DENIAL_DISPOSITION = "Prior Authorization Follow-up"
DEFAULT_DISPOSITION = "General Inquiry"


def count_drug_mentions(text: str) -> list[DrugMention]:
    """Count vocabulary hits per drug across all of its spelling variants."""
    lowered = text.lower()
    mentions = []
    for name, variations in DRUG_VOCABULARY.items():
        count = sum(len(re.findall(re.escape(v), lowered)) for v in variations)
        if count > 0:
            mentions.append(DrugMention(name=name, count=count, context="Mentioned in conversation"))
    return mentions


def detect_conditions(text: str) -> list[str]:
    lowered = text.lower()
    return [
        label for label, terms in CONDITION_VOCABULARY.items()
        if any(term in lowered for term in terms)
    ]


def create_fallback_analysis(transcript_text: str, call_id: str) -> Analysis:
    """Build a minimally-populated Analysis from keyword search alone."""
    lowered = (transcript_text or "").lower()
    drug_mentions = count_drug_mentions(lowered)
    conditions = detect_conditions(lowered)
    denied = any(term in lowered for term in DENIAL_TERMS)

    drug_names = [d.name for d in drug_mentions]
    if denied:
        subject = f" for {', '.join(drug_names)}" if drug_names else ""
        call_summary = f"Inquiry about denied medication authorization{subject}."
        disposition = DENIAL_DISPOSITION
    else:
        call_summary = "Inquiry about medication authorization status."
        disposition = DEFAULT_DISPOSITION

    context_parts = []
    if conditions:
        context_parts.append(f"Conditions mentioned: {', '.join(conditions)}.")
    if drug_names:
        context_parts.append(f"Medications mentioned: {', '.join(drug_names)}.")

    flags = []
    if denied:
        flags.append(CallFlag(
            type="Authorization Denial",
            description="Caller discussed a denied medication authorization",
            severity=FlagSeverity.MEDIUM,
        ))

    tags = []
    if denied:
        tags.extend(["prior authorization", "medication denial"])
    tags.extend(c.lower() for c in conditions)
    tags.extend(n.lower() for n in drug_names)

    return Analysis(
        id=str(uuid.uuid4()),
        call_id=call_id,
        sentiment=SentimentData(
            overall_score=FALLBACK_SENTIMENT_SCORE,
            emotion_tags=["neutral", "concerned"],
        ),
        clinical_summary=ClinicalSummary(
            medical_conditions=conditions,
            drug_mentions=drug_mentions,
            clinical_context=" ".join(context_parts),
        ),
        agent_performance=AgentPerformance(**FALLBACK_PERFORMANCE),
        call_summary=call_summary,
        disposition=disposition,
        follow_up_required=denied,
        flags=flags,
        tags=list(dict.fromkeys(tags)),
        metadata=AnalysisMetadata(model=FALLBACK_MODEL, version=FALLBACK_VERSION),
    )
