"""Tests for word-overlap similarity, greedy FAQ grouping, and FAQ lookup."""

from __future__ import annotations

import pytest

from supportdesk.services.faq_matching import (
    check_answered_status,
    concept_confidence,
    find_concepts,
    find_matching_faq,
    group_similar_patterns,
    jaccard_similarity,
    levenshtein_similarity,
    tokenize,
)
from supportdesk.services.triage_store import FAQRecord


def _faq(faq_id: str, question: str, answer: str = "") -> FAQRecord:
    return FAQRecord(id=faq_id, user_id="agent@example.com", question=question, answer=answer)


SYMMETRY_PAIRS = [
    ("reset", "how do I reset my password"),
    ("cancel my plan today", "cancel"),
    ("Where is my invoice?", "where is the invoice for March and April?"),
    ("", "billing"),
]


class TestJaccardSimilarity:
    def test_identical_text_scores_one(self) -> None:
        assert jaccard_similarity("how do I reset", "how do I reset") == 1.0

    def test_case_and_repeated_tokens_are_ignored(self) -> None:
        assert jaccard_similarity("Reset RESET password", "reset password") == 1.0

    def test_partial_overlap(self) -> None:
        # {a, b, c} vs {b, c, d} -> 2 / 4
        assert jaccard_similarity("a b c", "b c d") == pytest.approx(0.5)

    def test_both_empty_scores_zero(self) -> None:
        assert jaccard_similarity("", "   ") == 0.0

    def test_one_empty_scores_zero(self) -> None:
        assert jaccard_similarity("reset", "") == 0.0

    def test_tokenize_splits_on_whitespace_only(self) -> None:
        assert tokenize("Cancel  my\tsubscription?") == {"cancel", "my", "subscription?"}

    @pytest.mark.parametrize(("a", "b"), SYMMETRY_PAIRS)
    def test_symmetric(self, a: str, b: str) -> None:
        assert jaccard_similarity(a, b) == jaccard_similarity(b, a)


class TestLevenshteinSimilarity:
    def test_equal_strings(self) -> None:
        assert levenshtein_similarity("Reset password", "reset password ") == 1.0

    def test_single_edit(self) -> None:
        assert levenshtein_similarity("kitten", "sitten") == pytest.approx(1 - 1 / 6)

    def test_completely_different(self) -> None:
        assert levenshtein_similarity("abc", "xyz") == 0.0

    @pytest.mark.parametrize(("a", "b"), SYMMETRY_PAIRS)
    def test_symmetric(self, a: str, b: str) -> None:
        assert levenshtein_similarity(a, b) == levenshtein_similarity(b, a)


class TestGroupSimilarPatterns:
    def test_near_duplicates_join_first_group(self) -> None:
        groups = group_similar_patterns(
            [
                ("how do i reset my password", ["e1"]),
                ("how do i reset my password please", ["e2"]),
                ("where is my invoice", ["e3"]),
            ],
            threshold=0.6,
        )

        assert len(groups) == 2
        assert groups[0].representative == "how do i reset my password"
        assert groups[0].variants == ["how do i reset my password please"]
        assert groups[0].source_ids == ["e1", "e2"]
        assert groups[0].size == 2
        assert groups[1].representative == "where is my invoice"

    def test_score_equal_to_threshold_does_not_join(self) -> None:
        # {a, b, c} vs {b, c, d} scores exactly 0.5
        groups = group_similar_patterns([("a b c", ["1"]), ("b c d", ["2"])], threshold=0.5)

        assert [g.representative for g in groups] == ["a b c", "b c d"]

    def test_first_matching_group_wins_in_input_order(self) -> None:
        groups = group_similar_patterns(
            [
                ("a b c d", ["1"]),
                ("a b c e", ["2"]),
                ("a b c d e", ["3"]),
            ],
            threshold=0.5,
        )

        # "a b c e" scores 3/5 against the first group; "a b c d e" scores 4/5 against it.
        assert len(groups) == 1
        assert groups[0].variants == ["a b c e", "a b c d e"]

    def test_source_ids_are_deduplicated_in_first_seen_order(self) -> None:
        groups = group_similar_patterns(
            [
                ("reset my password", ["e2", "e1"]),
                ("reset my password", ["e1", "e3"]),
            ],
        )

        assert groups[0].source_ids == ["e2", "e1", "e3"]

    def test_blank_questions_are_skipped(self) -> None:
        assert group_similar_patterns([("   ", ["e1"]), ("", ["e2"])]) == []

    def test_placeholders_are_ignored_for_scoring(self) -> None:
        groups = group_similar_patterns(
            [
                ("change the email for {email} account", ["e1"]),
                ("change the email for {username} account", ["e2"]),
            ],
        )

        assert len(groups) == 1
        assert groups[0].representative == "change the email for {email} account"

    def test_different_action_words_never_merge(self) -> None:
        groups = group_similar_patterns(
            [
                ("how do i cancel my plan today", ["e1"]),
                ("how do i stop my plan today", ["e2"]),
            ],
            threshold=0.5,
        )

        assert len(groups) == 2

    def test_action_gate_can_be_disabled(self) -> None:
        groups = group_similar_patterns(
            [
                ("how do i cancel my plan today", ["e1"]),
                ("how do i stop my plan today", ["e2"]),
            ],
            threshold=0.5,
            require_shared_action=False,
        )

        assert len(groups) == 1

    def test_groups_depend_on_input_order(self) -> None:
        items = [("a b", ["1"]), ("a b c", ["2"]), ("b c", ["3"])]

        forward = group_similar_patterns(items, threshold=0.6)
        backward = group_similar_patterns(list(reversed(items)), threshold=0.6)

        assert [g.representative for g in forward] == ["a b", "b c"]
        assert [g.representative for g in backward] == ["b c", "a b"]


class TestFindMatchingFaq:
    def test_exact_question_match_has_full_confidence(self) -> None:
        faqs = [_faq("f1", "How do I reset my password?", "Use the reset link.")]

        match = find_matching_faq("how do i reset my password?", faqs)

        assert match is not None
        assert match.faq.id == "f1"
        assert match.confidence == 1.0

    def test_unanswered_faqs_are_ignored(self) -> None:
        faqs = [_faq("f1", "How do I reset my password?", "   ")]

        assert find_matching_faq("How do I reset my password?", faqs) is None

    def test_fuzzy_match_above_threshold(self) -> None:
        faqs = [_faq("f1", "how do i reset my password", "Use the reset link.")]

        match = find_matching_faq("how do i reset my password today", faqs, threshold=0.6)

        assert match is not None
        assert match.confidence == pytest.approx(6 / 7)

    def test_no_match_below_threshold(self) -> None:
        faqs = [_faq("f1", "where is my invoice", "In billing settings.")]

        assert find_matching_faq("how do i reset my password", faqs) is None


class TestCheckAnsweredStatus:
    def test_all_questions_answered(self) -> None:
        faqs = [
            _faq("f1", "how do i reset my password", "Use the link."),
            _faq("f2", "where is my invoice", "Billing page."),
        ]

        status = check_answered_status(["how do i reset my password", "where is my invoice"], faqs)

        assert status.is_answered is True
        assert status.unmatched == []
        assert {m.faq.id for m in status.matches} == {"f1", "f2"}

    def test_one_unmatched_question_makes_email_unanswered(self) -> None:
        faqs = [_faq("f1", "how do i reset my password", "Use the link.")]

        status = check_answered_status(["how do i reset my password", "can i get a refund"], faqs)

        assert status.is_answered is False
        assert status.unmatched == ["can i get a refund"]
        assert status.best_match is not None
        assert status.best_match.faq.id == "f1"

    def test_no_questions_is_not_answered(self) -> None:
        status = check_answered_status([], [_faq("f1", "anything", "answer")])

        assert status.is_answered is False
        assert status.best_match is None


class TestConceptConfidence:
    def test_concepts_found(self) -> None:
        assert find_concepts("I forgot my password and my username") == {"password", "username"}

    def test_no_shared_concept_scores_thirty(self) -> None:
        assert concept_confidence("I forgot my password", "Where is my invoice?") == 30

    def test_identical_text_with_shared_concept_scores_hundred(self) -> None:
        assert concept_confidence("reset my password", "reset my password") == 100

    def test_partial_overlap_is_weighted(self) -> None:
        # dice = 2*2 / (3+3) -> 0.667*70 + 30 = 76.67
        assert concept_confidence("reset my password", "change my password") == 77
