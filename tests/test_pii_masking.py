"""Tests for PII masking: prompt building, tag counting, realignment and failure isolation."""

from conftest import FakeLLM, echo_masker, make_segments

from analysis.pii_masking import (
    MASKING_FAILED_MODEL,
    MaskingOptions,
    build_masking_prompt,
    count_masked_items,
    join_segments,
    mask_segments,
    mask_text,
    realign_masked_segments,
)


def _assert_aligned(original, masked):
    assert len(masked) == len(original)
    for o, m in zip(original, masked):
        assert (m.speaker, m.start_time, m.end_time, m.confidence) == (
            o.speaker, o.start_time, o.end_time, o.confidence,
        )


# ── Prompt ──

class TestMaskingPrompt:
    def test_join_segments_uses_speaker_prefix_and_blank_lines(self):
        segments = make_segments("Hello.", "Hi, I'm Jane.")
        assert join_segments(segments) == "Agent: Hello.\n\nCustomer: Hi, I'm Jane."

    def test_prompt_contains_transcript_and_tags(self):
        prompt = build_masking_prompt("Agent: Hello.")
        assert "Agent: Hello." in prompt
        assert "[PATIENT_NAME_1]" in prompt
        assert "[PHONE_NUMBER]" in prompt
        assert "Medication names and dosages" in prompt

    def test_disabled_category_not_requested(self):
        prompt = build_masking_prompt("x", MaskingOptions(mask_emails=False))
        assert "[EMAIL]" not in prompt
        assert "[SSN]" in prompt

    def test_preserve_block_optional(self):
        prompt = build_masking_prompt("x", MaskingOptions(preserve_medications=False))
        assert "DO NOT MASK" not in prompt


# ── Tag Counting ──

class TestCountMaskedItems:
    def test_numbered_tags_fold_into_category(self):
        text = "[PATIENT_NAME_1] called about [PATIENT_NAME_2]; call [PHONE_NUMBER] or [PATIENT_NAME]."
        assert count_masked_items(text) == {"PATIENT_NAME": 3, "PHONE_NUMBER": 1}

    def test_no_tags(self):
        assert count_masked_items("nothing masked here") == {}

    def test_lowercase_brackets_ignored(self):
        assert count_masked_items("[redacted] [Name]") == {}


# ── Realignment ──

class TestRealignment:
    def test_equal_block_count_maps_by_index(self):
        segments = make_segments("I'm John Smith.", "Hi John.", "Call 555-1234.")
        masked = "Agent: I'm [PATIENT_NAME].\n\nCustomer: Hi [PATIENT_NAME].\n\nAgent: Call [PHONE_NUMBER]."
        result = realign_masked_segments(segments, masked)
        _assert_aligned(segments, result)
        assert [s.text for s in result] == ["I'm [PATIENT_NAME].", "Hi [PATIENT_NAME].", "Call [PHONE_NUMBER]."]

    def test_text_after_first_colon_only(self):
        segments = make_segments("Pickup at 10:30.")
        result = realign_masked_segments(segments, "Agent: Pickup at 10:30.")
        assert result[0].text == "Pickup at 10:30."

    def test_missing_block_reverts_only_that_segment(self):
        segments = make_segments("One John.", "Two.", "Three John.", "Four.")
        # model merged segments 1 and 2 (dropped a delimiter)
        masked = (
            "Agent: One [PATIENT_NAME].\n\n"
            "Customer: Two.\nAgent: Three [PATIENT_NAME].\n\n"
            "Customer: Four."
        )
        result = realign_masked_segments(segments, masked)
        _assert_aligned(segments, result)
        assert result[0].text == "One [PATIENT_NAME]."
        assert result[1].text == "Two."
        assert result[2].text == "Three John."  # reverted to original
        assert result[3].text == "Four."

    def test_extra_commentary_block_skipped(self):
        segments = make_segments("Hi John.", "Hello.")
        masked = "Here is the masked transcript\n\nAgent: Hi [PATIENT_NAME].\n\nCustomer: Hello."
        result = realign_masked_segments(segments, masked)
        assert [s.text for s in result] == ["Hi [PATIENT_NAME].", "Hello."]

    def test_empty_masked_text_reverts_everything(self):
        segments = make_segments("a.", "b.")
        result = realign_masked_segments(segments, "")
        assert [s.text for s in result] == ["a.", "b."]
        _assert_aligned(segments, result)

    def test_block_without_colon_reverts_that_segment(self):
        segments = make_segments("Hi John.", "Bye.")
        result = realign_masked_segments(segments, "garbled block\n\nCustomer: Bye.")
        assert [s.text for s in result] == ["Hi John.", "Bye."]

    def test_shifted_blocks_of_equal_count_match_by_speaker(self):
        segments = make_segments("Hello John.", "Hi.", "How can I help.", "My refill.")
        # commentary line added and the last block dropped: same block count, shifted by one
        masked = "Here is the masked transcript:\n\nAgent: Hello [PATIENT_NAME].\n\nCustomer: Hi.\n\nAgent: How can I help."
        result = realign_masked_segments(segments, masked)
        _assert_aligned(segments, result)
        assert [s.text for s in result] == ["Hello [PATIENT_NAME].", "Hi.", "How can I help.", "My refill."]

    def test_empty_block_body_reverts_that_segment(self):
        segments = make_segments("Hi John.", "Bye.")
        result = realign_masked_segments(segments, "Agent:   \n\nCustomer: Bye.")
        assert [s.text for s in result] == ["Hi John.", "Bye."]

    def test_originals_not_mutated(self):
        segments = make_segments("Hi John.")
        realign_masked_segments(segments, "Agent: Hi [PATIENT_NAME].")
        assert segments[0].text == "Hi John."


# ── Masking Calls ──

class TestMaskText:
    def test_success_records_model_and_counts(self):
        client = FakeLLM(reply="Agent: Hi [PATIENT_NAME_1].", model="llama3.1:8b")
        masked, metadata = mask_text("Agent: Hi John.", client)
        assert masked == "Agent: Hi [PATIENT_NAME_1]."
        assert metadata.model_used == "llama3.1:8b"
        assert metadata.items_masked == {"PATIENT_NAME": 1}

    def test_failure_returns_original_unmasked(self):
        client = FakeLLM(error=ConnectionError("connection refused"))
        masked, metadata = mask_text("Agent: Hi John.", client)
        assert masked == "Agent: Hi John."
        assert metadata.model_used == MASKING_FAILED_MODEL == "none - error occurred"
        assert metadata.items_masked == {}

    def test_empty_reply_counts_as_failure(self):
        masked, metadata = mask_text("Agent: Hi John.", FakeLLM(reply="   "))
        assert masked == "Agent: Hi John."
        assert metadata.model_used == MASKING_FAILED_MODEL


class TestMaskSegments:
    def test_masks_and_realigns(self):
        segments = make_segments("I'm John Smith.", "Call me at 555-123-4567.")
        result = mask_segments(segments, FakeLLM(reply=echo_masker))
        _assert_aligned(segments, result.masked_segments)
        assert result.masked_segments[0].text == "I'm [PATIENT_NAME]."
        assert result.masked_segments[1].text == "Call me at [PHONE_NUMBER]."
        assert result.masking_metadata.items_masked == {"PATIENT_NAME": 1, "PHONE_NUMBER": 1}

    def test_one_model_call_for_all_segments(self):
        client = FakeLLM(reply=echo_masker)
        mask_segments(make_segments("a.", "b.", "c."), client)
        assert len(client.prompts) == 1

    def test_failure_keeps_original_segments(self):
        segments = make_segments("I'm John Smith.", "Hello.")
        result = mask_segments(segments, FakeLLM(error=TimeoutError("timed out")))
        assert [s.text for s in result.masked_segments] == ["I'm John Smith.", "Hello."]
        assert result.masking_metadata.model_used == MASKING_FAILED_MODEL
        _assert_aligned(segments, result.masked_segments)

    def test_no_segments_no_model_call(self):
        client = FakeLLM(reply="x")
        result = mask_segments([], client)
        assert result.masked_segments == [] and result.masked_text == ""
        assert client.prompts == []
