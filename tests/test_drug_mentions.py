"""Tests for heuristic drug-mention recovery from clinical prose."""

from analysis.drug_mentions import enrich_clinical_summary, extract_drug_mentions_from_context
from config.schemas import ClinicalSummary, DrugMention


def _names(mentions):
    return [m.name for m in mentions]


class TestExtraction:
    def test_capitalized_brand_name(self):
        mentions = extract_drug_mentions_from_context("Patient started Ozempic 0.5mg weekly.")
        assert "Ozempic" in _names(mentions)
        assert "Patient" not in _names(mentions)

    def test_indicator_neighbor(self):
        mentions = extract_drug_mentions_from_context("the doctor prescribed metformin last year")
        assert "metformin" in _names(mentions)

    def test_multi_word_indicator(self):
        mentions = extract_drug_mentions_from_context("she is switching to jardiance next month")
        assert "jardiance" in _names(mentions)

    def test_counts_whole_word_occurrences_case_insensitively(self):
        context = "Ozempic was denied. The member asked whether ozempic could be appealed."
        ozempic = next(m for m in extract_drug_mentions_from_context(context) if m.name == "Ozempic")
        assert ozempic.count == 2

    def test_context_snippet_window(self):
        context = "x" * 50 + " Trulicity " + "y" * 100
        mention = next(m for m in extract_drug_mentions_from_context(context) if m.name == "Trulicity")
        assert mention.context.startswith("...")
        assert mention.context.endswith("...")
        assert "Trulicity" in mention.context

    def test_short_context_has_no_ellipsis(self):
        mention = next(m for m in extract_drug_mentions_from_context("Taking Lipitor.") if m.name == "Lipitor")
        assert mention.context == "Taking Lipitor."

    def test_stopwords_excluded(self):
        names = _names(extract_drug_mentions_from_context("The Agent and Customer spoke. However nothing else."))
        for word in ("The", "Agent", "Customer", "However"):
            assert word not in names

    def test_empty_context(self):
        assert extract_drug_mentions_from_context("") == []

    def test_first_seen_order(self):
        names = _names(extract_drug_mentions_from_context("Jardiance then Farxiga then Jardiance."))
        assert names[:2] == ["Jardiance", "Farxiga"]


class TestEnrichment:
    def test_fills_empty_mentions(self):
        summary = ClinicalSummary(clinical_context="Patient started Ozempic 0.5mg weekly.")
        enriched = enrich_clinical_summary(summary)
        assert "Ozempic" in _names(enriched.drug_mentions)
        assert summary.drug_mentions == []

    def test_existing_mentions_untouched(self):
        summary = ClinicalSummary(
            drug_mentions=[DrugMention(name="Metformin", count=1)],
            clinical_context="Patient started Ozempic 0.5mg weekly.",
        )
        assert enrich_clinical_summary(summary) is summary

    def test_blank_context_untouched(self):
        summary = ClinicalSummary(clinical_context="   ")
        assert enrich_clinical_summary(summary) is summary

    def test_nothing_found_untouched(self):
        summary = ClinicalSummary(clinical_context="asked about copay timing only")
        assert enrich_clinical_summary(summary) is summary
