"""Call Analysis — prompt the analysis model and normalize its reply into one fixed schema.

Explicit state machine:

    PROMPTING → PARSING → NORMALIZING → DONE
        │           │           │
        └───────────┴───────────┴──→ FALLBACK

- PROMPTING:   one structured prompt (call metadata + speaker-labeled transcript)
- PARSING:     the reply is not guaranteed to be pure JSON; recovery is
               progressively more permissive (greedy {...} span, first decodable
               object, truncated-object repair)
- NORMALIZING: two key conventions per facet are resolved through one alias
               table; every field is defaulted, never left absent
- FALLBACK:    model unreachable → keyword analysis (analysis/fallback.py);
               reply unparseable → zeroed result tagged ``parsing_error``

Failure is carried as a value (``Parsed | Fallback``), never as an exception
escaping ``AnalysisService.analyze``.
"""

import json
import math
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Union

from loguru import logger

from analysis.drug_mentions import enrich_clinical_summary
from analysis.fallback import create_fallback_analysis
from analysis.segmentation import format_transcript
from config.schemas import (
    AgentPerformance,
    Analysis,
    AnalysisMetadata,
    AnalysisResult,
    CallFlag,
    CallInfo,
    ClinicalSummary,
    DrugMention,
    EscalationPoint,
    FlagSeverity,
    Recommendation,
    SentimentData,
    SentimentPoint,
    Transcription,
)
from services.llm.client import CompletionClient

PARSING_ERROR_TAG = "parsing_error"


class AnalysisState(str, Enum):
    PROMPTING = "prompting"
    PARSING = "parsing"
    NORMALIZING = "normalizing"
    DONE = "done"
    FALLBACK = "fallback"


# ── PARSE OUTCOME (tagged union) ──

@dataclass(frozen=True)
class Parsed:
    payload: dict
    strategy: str


@dataclass(frozen=True)
class Fallback:
    stage: AnalysisState
    reason: str


ParseOutcome = Union[Parsed, Fallback]


@dataclass(frozen=True)
class AnalysisOutcome:
    """Final result of one analysis run plus the model text kept for audit."""
    analysis: Analysis
    raw_text: str
    state: AnalysisState
    fallback: Fallback | None = None


# ── ALIAS TABLE ──

@dataclass(frozen=True)
class FacetField:
    """One field the model may name two ways. First present value of the expected type wins."""
    primary: str
    alias: str
    default_factory: Callable[[], Any]
    expects: tuple = (dict,)


_SCORE_TYPES = (int, float, str)

FACETS = {
    "sentiment": FacetField("sentimentAnalysis", "sentiment", dict),
    "clinical": FacetField("clinicalAnalysis", "clinical", dict),
    "performance": FacetField("agentPerformance", "performance", dict),
    "summary": FacetField("callSummary", "summary", str, (str, dict)),
    "disposition": FacetField("callDisposition", "disposition", dict, (dict, str)),
    "recommendations": FacetField("processImprovementRecommendations", "recommendations", list, (list,)),
    "tags": FacetField("tagging", "tags", list, (list,)),
}

SENTIMENT_FIELDS = {
    "overall_score": FacetField("overallScore", "score", int, _SCORE_TYPES),
    "timeline": FacetField("timeline", "sentimentTimeline", list, (list,)),
    "emotion_tags": FacetField("emotionTags", "emotions", list, (list,)),
    "escalation_points": FacetField("escalationPoints", "escalations", list, (list,)),
}

CLINICAL_FIELDS = {
    "medical_conditions": FacetField("medicalConditions", "conditions", list, (list,)),
    "drug_mentions": FacetField("drugMentions", "drugs", list, (list,)),
    "clinical_context": FacetField("clinicalContext", "context", str, (str,)),
}

PERFORMANCE_FIELDS = {
    "communication_score": FacetField("communicationScore", "communication", int, _SCORE_TYPES),
    "adherence_to_protocol": FacetField("adherenceToProtocol", "adherence", int, _SCORE_TYPES),
    "empathy_score": FacetField("empathyScore", "empathy", int, _SCORE_TYPES),
    "efficiency_score": FacetField("efficiencyScore", "efficiency", int, _SCORE_TYPES),
    "improvement_areas": FacetField("improvementAreas", "improvements", list, (list,)),
    "effective_techniques": FacetField("effectiveTechniques", "techniques", list, (list,)),
}

DISPOSITION_FIELDS = {
    "category": FacetField("category", "disposition", str, (str,)),
    "follow_up_required": FacetField("followUpRequired", "followUp", bool, (bool, str)),
    "flags": FacetField("flags", "concerns", list, (list,)),
}

TIMELINE_FIELDS = {
    "time": FacetField("time", "timestamp", float, (int, float, str)),
    "score": FacetField("score", "sentiment", int, _SCORE_TYPES),
}

ESCALATION_FIELDS = {
    "time": FacetField("time", "timestamp", lambda: "unknown", (int, float, str)),
    "text": FacetField("text", "description", str, (str,)),
    "reason": FacetField("reason", "cause", str, (str,)),
}

DRUG_FIELDS = {
    "name": FacetField("name", "drug", str, (str,)),
    "count": FacetField("count", "mentions", lambda: 1, (int, float, str)),
    "context": FacetField("context", "notes", str, (str,)),
}

FLAG_FIELDS = {
    "type": FacetField("type", "category", lambda: "Unknown", (str,)),
    "description": FacetField("description", "desc", str, (str,)),
    "severity": FacetField("severity", "level", lambda: FlagSeverity.MEDIUM.value, (str,)),
}

RECOMMENDATION_FIELDS = {
    "recommendation": FacetField("recommendation", "improvement", str, (str,)),
    "rationale": FacetField("rationale", "reason", str, (str,)),
}


def resolve_field(payload: Any, field: FacetField) -> Any:
    """Primary key, then alias, then the field's default."""
    if isinstance(payload, dict):
        for key in (field.primary, field.alias):
            value = payload.get(key)
            if isinstance(value, bool) and bool not in field.expects:
                continue
            if isinstance(value, field.expects):
                return value
    return field.default_factory()


# ── COERCION ──

def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        # huge integer literals overflow float()
        value = min(max(value, -1000), 1000)
    elif isinstance(value, str):
        value = value.strip().rstrip("%").split("/")[0].strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_score(value: Any) -> int:
    """Clamp to an int in [0, 100]; anything non-numeric becomes 0."""
    number = _to_number(value)
    if number is None:
        return 0
    return int(min(100, max(0, round(number))))


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return bool(value)


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _string_list(items: list) -> list[str]:
    result = []
    for item in items:
        text = _to_str(item)
        if text:
            result.append(text)
    return result


# ── FACET NORMALIZERS ──

def _normalize_timeline(items: list) -> list[SentimentPoint]:
    points = []
    for item in items:
        if not isinstance(item, dict):
            continue
        time = _to_number(resolve_field(item, TIMELINE_FIELDS["time"]))
        points.append(SentimentPoint(
            time=max(0.0, time) if time is not None else 0.0,
            score=to_score(resolve_field(item, TIMELINE_FIELDS["score"])),
        ))
    return points


def _normalize_escalations(items: list) -> list[EscalationPoint]:
    points = []
    for item in items:
        if isinstance(item, str):
            points.append(EscalationPoint(text=item))
            continue
        if not isinstance(item, dict):
            continue
        time = _to_number(resolve_field(item, ESCALATION_FIELDS["time"]))
        points.append(EscalationPoint(
            time=time if time is not None and time >= 0 else "unknown",
            text=_to_str(resolve_field(item, ESCALATION_FIELDS["text"])),
            reason=_to_str(resolve_field(item, ESCALATION_FIELDS["reason"])),
        ))
    return points


def normalize_sentiment(data: dict) -> SentimentData:
    return SentimentData(
        overall_score=to_score(resolve_field(data, SENTIMENT_FIELDS["overall_score"])),
        timeline=_normalize_timeline(resolve_field(data, SENTIMENT_FIELDS["timeline"])),
        emotion_tags=_string_list(resolve_field(data, SENTIMENT_FIELDS["emotion_tags"])),
        escalation_points=_normalize_escalations(resolve_field(data, SENTIMENT_FIELDS["escalation_points"])),
    )


def _normalize_drug_mentions(items: list) -> list[DrugMention]:
    mentions = []
    for item in items:
        if isinstance(item, str):
            item = {"name": item}
        if not isinstance(item, dict):
            continue
        name = _to_str(resolve_field(item, DRUG_FIELDS["name"]))
        if not name:
            continue
        count = _to_number(resolve_field(item, DRUG_FIELDS["count"]))
        mentions.append(DrugMention(
            name=name,
            count=max(1, int(count)) if count is not None else 1,
            context=_to_str(resolve_field(item, DRUG_FIELDS["context"])),
        ))
    return mentions


def normalize_clinical(data: dict) -> ClinicalSummary:
    return ClinicalSummary(
        medical_conditions=_string_list(resolve_field(data, CLINICAL_FIELDS["medical_conditions"])),
        drug_mentions=_normalize_drug_mentions(resolve_field(data, CLINICAL_FIELDS["drug_mentions"])),
        clinical_context=_to_str(resolve_field(data, CLINICAL_FIELDS["clinical_context"])),
    )


def normalize_performance(data: dict) -> AgentPerformance:
    return AgentPerformance(
        communication_score=to_score(resolve_field(data, PERFORMANCE_FIELDS["communication_score"])),
        adherence_to_protocol=to_score(resolve_field(data, PERFORMANCE_FIELDS["adherence_to_protocol"])),
        empathy_score=to_score(resolve_field(data, PERFORMANCE_FIELDS["empathy_score"])),
        efficiency_score=to_score(resolve_field(data, PERFORMANCE_FIELDS["efficiency_score"])),
        improvement_areas=_string_list(resolve_field(data, PERFORMANCE_FIELDS["improvement_areas"])),
        effective_techniques=_string_list(resolve_field(data, PERFORMANCE_FIELDS["effective_techniques"])),
    )


def normalize_flags(items: list) -> list[CallFlag]:
    flags = []
    severities = {s.value for s in FlagSeverity}
    for item in items:
        if isinstance(item, str):
            item = {"description": item}
        if not isinstance(item, dict):
            continue
        severity = _to_str(resolve_field(item, FLAG_FIELDS["severity"])).lower()
        flags.append(CallFlag(
            type=_to_str(resolve_field(item, FLAG_FIELDS["type"])) or "Unknown",
            description=_to_str(resolve_field(item, FLAG_FIELDS["description"])),
            severity=severity if severity in severities else FlagSeverity.MEDIUM,
        ))
    return flags


def _normalize_recommendations(items: list) -> list[Recommendation]:
    recs = []
    for item in items:
        if isinstance(item, str):
            item = {"recommendation": item}
        if not isinstance(item, dict):
            continue
        text = _to_str(resolve_field(item, RECOMMENDATION_FIELDS["recommendation"]))
        if text:
            recs.append(Recommendation(
                recommendation=text,
                rationale=_to_str(resolve_field(item, RECOMMENDATION_FIELDS["rationale"])),
            ))
    return recs


def normalize_analysis(payload: dict) -> AnalysisResult:
    """Map a decoded model reply onto the canonical schema. Pure and deterministic."""
    disposition_data = resolve_field(payload, FACETS["disposition"])
    if isinstance(disposition_data, str):
        disposition = disposition_data
        disposition_data = {}
    else:
        disposition = _to_str(resolve_field(disposition_data, DISPOSITION_FIELDS["category"]))
        if not disposition:
            disposition = _to_str(payload.get("category")) if isinstance(payload.get("category"), str) else ""

    follow_up = resolve_field(disposition_data, DISPOSITION_FIELDS["follow_up_required"])
    follow_up = _to_bool(follow_up) or _to_bool(resolve_field(payload, DISPOSITION_FIELDS["follow_up_required"]))

    flags = resolve_field(disposition_data, DISPOSITION_FIELDS["flags"]) or resolve_field(
        payload, DISPOSITION_FIELDS["flags"]
    )

    return AnalysisResult(
        sentiment=normalize_sentiment(resolve_field(payload, FACETS["sentiment"])),
        clinical_summary=normalize_clinical(resolve_field(payload, FACETS["clinical"])),
        agent_performance=normalize_performance(resolve_field(payload, FACETS["performance"])),
        call_summary=_to_str(resolve_field(payload, FACETS["summary"])),
        disposition=disposition.strip(),
        follow_up_required=follow_up,
        flags=normalize_flags(flags),
        tags=_string_list(resolve_field(payload, FACETS["tags"])),
        recommendations=_normalize_recommendations(resolve_field(payload, FACETS["recommendations"])),
    )


def parsing_error_result() -> AnalysisResult:
    """Zeroed result for replies that could not be decoded at all."""
    return AnalysisResult(
        call_summary="Error parsing analysis results",
        disposition="Unknown",
        follow_up_required=False,
        tags=[PARSING_ERROR_TAG],
    )


# ── PARSING ──

_JSON_SPAN = re.compile(r"\{[\s\S]*\}")
_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).strip()


def _close_truncated_json(text: str) -> str:
    """Best-effort repair for replies cut off mid-object (e.g. max_tokens reached)."""
    closers = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]" and closers:
            closers.pop()

    repaired = text + ('"' if in_string else "")
    repaired = re.sub(r"[,:\s]+$", "", repaired)
    return repaired + "".join(reversed(closers))


def _decode_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except ValueError:  # JSONDecodeError, or an int literal past the digit limit
        return None
    return value if isinstance(value, dict) else None


def parse_analysis_text(raw_text: str) -> ParseOutcome:
    """Extract one JSON object from free-form model output."""
    if not raw_text or "{" not in raw_text:
        return Fallback(AnalysisState.PARSING, "no JSON object in model response")

    # (a) greedy {...} span, fences stripped
    match = _JSON_SPAN.search(raw_text)
    if match:
        payload = _decode_object(strip_code_fences(match.group(0)))
        if payload is not None:
            return Parsed(payload, "span")

    # (b) first '{' through the last '}' (or end of text), fences stripped;
    # decode the first complete object and ignore any trailing prose
    start = raw_text.index("{")
    end = raw_text.rfind("}")
    candidate = raw_text[start:end + 1] if end > start else raw_text[start:]
    candidate = strip_code_fences(candidate)
    try:
        value, _ = json.JSONDecoder().raw_decode(candidate)
        if isinstance(value, dict):
            return Parsed(value, "first_object")
    except ValueError:
        pass

    # (c) truncated reply: close open strings, arrays and objects
    tail = strip_code_fences(raw_text[start:])
    payload = _decode_object(_close_truncated_json(tail))
    if payload is not None:
        return Parsed(payload, "repaired")

    return Fallback(AnalysisState.PARSING, "model response is not valid JSON")


# ── PROMPT ──

SYSTEM_PROMPT = (
    "You are an expert call analyzer for pharmacy benefits administration. "
    "Always answer with a single JSON object and nothing else."
)


def build_analysis_prompt(transcription: Transcription, call: CallInfo) -> str:
    transcript_text = format_transcript(transcription.segments) or transcription.full_text

    return (
        "You are an expert call analyzer for pharmacy benefits administration. "
        "You'll analyze a customer service call transcript to extract insights.\n\n"
        "Call Information:\n"
        f"- Call ID: {call.id}\n"
        f"- Date: {call.timestamp}\n"
        f"- Duration: {call.duration} seconds\n"
        f"- Agent ID: {call.agent_id or 'unknown'}\n\n"
        "Please analyze the following call transcript and provide a structured analysis. "
        "Focus on these key areas:\n\n"
        "1. Sentiment Analysis (\"sentimentAnalysis\"):\n"
        " - Overall sentiment score (0-100, where 0 is extremely negative and 100 is extremely positive)\n"
        " - Emotional tone throughout the call (provide specific emotion tags)\n"
        " - Points of escalation or de-escalation formatted exactly as follows:\n"
        " \"escalationPoints\": [\n"
        "   {\"time\": [time in seconds or \"unknown\"], \"text\": [brief description], "
        "\"reason\": [reason for escalation/de-escalation]}\n"
        " ]\n\n"
        "2. Clinical Analysis (\"clinicalAnalysis\"):\n"
        " - Identify any medical conditions mentioned (diagnosis, symptoms, health concerns)\n"
        " - Carefully identify ALL medication mentions, including brand names (e.g., Ozempic, "
        "Trulicity, Jardiance), generic names (e.g., semaglutide, metformin) and drug classes "
        "(e.g., GLP-1 agonists, SGLT2 inhibitors)\n"
        " - Extract clinical context from the discussion (treatment plans, health status, etc.)\n\n"
        "3. Agent Performance (\"agentPerformance\"):\n"
        " - communicationScore, adherenceToProtocol, empathyScore, efficiencyScore (each 0-100)\n"
        " - improvementAreas and effectiveTechniques (be specific)\n\n"
        "4. Call Summary (\"callSummary\"): purpose, main issues discussed, outcome\n\n"
        "5. Call Disposition (\"callDisposition\"):\n"
        " - \"category\" (e.g., medication inquiry, benefits question, complaint)\n"
        " - \"followUpRequired\" (true/false)\n"
        " - \"flags\": concerning elements as "
        "[{\"type\": ..., \"description\": ..., \"severity\": \"low\"|\"medium\"|\"high\"}]\n\n"
        "6. Process Improvement Recommendations (\"processImprovementRecommendations\"):\n"
        " - 3-5 improvements to systems, processes, or training that could prevent similar issues, "
        "each as {\"recommendation\": ..., \"rationale\": ...}\n\n"
        "7. Tagging (\"tagging\"): a list of relevant tags for this call\n\n"
        "Format your response as a JSON object with these sections. Be thorough but concise.\n\n"
        "For the drugMentions section, use this format:\n"
        "\"drugMentions\": [\n"
        "  {\"name\": \"Drug Name\", \"count\": number_of_mentions, "
        "\"context\": \"Brief summary of how the drug was discussed\"}\n"
        "]\n"
        "Do not miss any medication mentions, even if they're only mentioned once or in passing.\n\n"
        "For the agent performance scoring, use these guidelines:\n"
        "- 90-100: Exceptional, exceeds expectations in all aspects\n"
        "- 75-89: Strong performance with minor areas for improvement\n"
        "- 60-74: Satisfactory, meets basic requirements\n"
        "- 40-59: Needs improvement in several areas\n"
        "- 0-39: Significant concerns requiring immediate attention\n\n"
        f"Transcript:\n{transcript_text}\n\n"
        "Your analysis in JSON format:"
    )


def split_model_name(model: str) -> tuple[str, str]:
    """'qwen3:8b' → ('qwen3', '8b'); untagged names get version 'latest'."""
    name, _, version = model.partition(":")
    return name, version or "latest"


# ── SERVICE ──

class AnalysisService:
    """Runs the analysis state machine for one transcription at a time.

    Holds no per-call state, so one instance can serve concurrent calls.
    """

    def __init__(self, client: CompletionClient):
        self.client = client

    def _metadata(self) -> AnalysisMetadata:
        name, version = split_model_name(self.client.model)
        return AnalysisMetadata(model=name, version=version)

    def _finish(self, result: AnalysisResult, call_id: str) -> Analysis:
        enriched = enrich_clinical_summary(result.clinical_summary)
        if enriched is not result.clinical_summary:
            logger.info(
                f"[{call_id}] Drug mentions recovered from clinical context: "
                f"{[d.name for d in enriched.drug_mentions]}"
            )
        return Analysis(
            **result.model_copy(update={"clinical_summary": enriched}).model_dump(),
            id=str(uuid.uuid4()),
            call_id=call_id,
            metadata=self._metadata(),
        )

    def analyze(self, transcription: Transcription, call: CallInfo) -> AnalysisOutcome:
        """Analyze one transcription. Never raises for model or parsing failures."""
        # PROMPTING
        prompt = build_analysis_prompt(transcription, call)
        logger.info(f"[{call.id}] Calling analysis model {self.client.model}")
        try:
            raw_text = self.client.complete(prompt, system_prompt=SYSTEM_PROMPT)
        except Exception as e:
            fallback = Fallback(AnalysisState.PROMPTING, f"{type(e).__name__}: {e}")
            logger.warning(f"[{call.id}] Analysis model failed, using local fallback analysis: {e}")
            return AnalysisOutcome(
                analysis=create_fallback_analysis(transcription.full_text, call.id),
                raw_text="",
                state=AnalysisState.FALLBACK,
                fallback=fallback,
            )

        # PARSING
        outcome = parse_analysis_text(raw_text)

        # NORMALIZING
        if isinstance(outcome, Parsed):
            try:
                result = normalize_analysis(outcome.payload)
            except (ValueError, TypeError, OverflowError) as e:
                outcome = Fallback(AnalysisState.NORMALIZING, str(e))
            else:
                logger.info(f"[{call.id}] Analysis parsed via '{outcome.strategy}' and normalized")
                return AnalysisOutcome(
                    analysis=self._finish(result, call.id),
                    raw_text=raw_text,
                    state=AnalysisState.DONE,
                )

        logger.warning(
            f"[{call.id}] Could not use analysis response ({outcome.stage.value}: {outcome.reason}); "
            f"raw text starts: {raw_text[:200]!r}"
        )
        return AnalysisOutcome(
            analysis=self._finish(parsing_error_result(), call.id),
            raw_text=raw_text,
            state=AnalysisState.FALLBACK,
            fallback=outcome,
        )
