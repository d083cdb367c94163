"""Heuristic Drug-Mention Extraction — recover drug names from clinical prose.

Runs only when the analysis model described clinical context in prose but
returned no structured drug mentions. It augments the display; it never
overwrites mentions the model provided.

Candidates come from two places:
1. Capitalized words (3+ letters) — brand names tend to be capitalized
2. Words next to a drug indicator ("prescribed", "mg", "switching to", ...)
Each candidate must occur in the context as a whole word to survive.
"""

import re

from config.schemas import ClinicalSummary, DrugMention

DRUG_INDICATORS = [
    "medication", "drug", "prescription", "med", "dose", "pill", "tablet", "injection",
    "prescribed", "taking", "started", "switching to", "transitioned from", "switching from",
    "mg", "mcg", "approved for", "authorization for", "denied for",
]

CAPITALIZED_STOPWORDS = {
    "The", "I", "A", "An", "And", "But", "Or",
    "Patient", "Doctor", "Agent", "Customer", "However",
}

SNIPPET_BEFORE = 30
SNIPPET_AFTER = 70

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_CAPITALIZED_WORD = re.compile(r"\b[A-Z][a-z]{2,}\b")
_ALPHA_WORD = re.compile(r"^[A-Za-z]+$")
_EDGE_PUNCTUATION = re.compile(r"[,.;:]")


_STOPWORDS_LOWER = {w.lower() for w in CAPITALIZED_STOPWORDS}


def _neighbor_candidate(word: str) -> str | None:
    cleaned = _EDGE_PUNCTUATION.sub("", word, count=1)
    if len(cleaned) > 3 and _ALPHA_WORD.match(cleaned) and cleaned.lower() not in _STOPWORDS_LOWER:
        return cleaned
    return None


def _find_indicator(words: list[str], indicator: str) -> tuple[int, int] | None:
    """Locate ``indicator`` in ``words``; returns (first index, last index) of the phrase."""
    parts = indicator.split()
    lowered = [w.lower() for w in words]
    for i, word in enumerate(lowered):
        if parts[0] not in word:
            continue
        tail = lowered[i + 1:i + len(parts)]
        if len(tail) == len(parts) - 1 and all(p in w for p, w in zip(parts[1:], tail)):
            return i, i + len(parts) - 1
    return None


def _collect_candidates(context: str) -> list[str]:
    candidates: dict[str, None] = {}

    for match in _CAPITALIZED_WORD.finditer(context):
        word = match.group(0)
        if word not in CAPITALIZED_STOPWORDS:
            candidates.setdefault(word)

    sentences = [s for s in _SENTENCE_SPLIT.split(context) if s.strip()]
    for sentence in sentences:
        lowered = sentence.lower().strip()
        words = sentence.split()
        for indicator in DRUG_INDICATORS:
            if indicator not in lowered:
                continue
            span = _find_indicator(words, indicator)
            if span is None:
                continue
            first, last = span
            neighbors = []
            if first > 0:
                neighbors.append(words[first - 1])
            if last < len(words) - 1:
                neighbors.append(words[last + 1])
            for neighbor in neighbors:
                candidate = _neighbor_candidate(neighbor)
                if candidate:
                    candidates.setdefault(candidate)

    return list(candidates)


def _context_snippet(context: str, name: str) -> str:
    match = re.search(rf"\b{re.escape(name)}\b", context, re.IGNORECASE)
    if not match:
        return "Mentioned in clinical context"
    start = max(0, match.start() - SNIPPET_BEFORE)
    end = min(len(context), match.start() + len(name) + SNIPPET_AFTER)
    snippet = context[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(context):
        snippet = snippet + "..."
    return snippet


def extract_drug_mentions_from_context(context: str) -> list[DrugMention]:
    """Extract likely drug mentions from free-text clinical context."""
    if not context:
        return []

    mentions = []
    for name in _collect_candidates(context):
        count = len(re.findall(rf"\b{re.escape(name)}\b", context, re.IGNORECASE))
        if count == 0:
            continue
        mentions.append(DrugMention(name=name, count=count, context=_context_snippet(context, name)))
    return mentions


def enrich_clinical_summary(summary: ClinicalSummary) -> ClinicalSummary:
    """Fill empty drug_mentions from clinical_context; otherwise return ``summary`` unchanged."""
    if summary.drug_mentions or not summary.clinical_context.strip():
        return summary
    extracted = extract_drug_mentions_from_context(summary.clinical_context)
    if not extracted:
        return summary
    return summary.model_copy(update={"drug_mentions": extracted})
