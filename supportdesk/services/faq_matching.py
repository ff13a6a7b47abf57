"""Word-overlap similarity, greedy FAQ pattern grouping, and FAQ lookup.

Similarity is Jaccard over lowercase whitespace token sets. Grouping walks the
input once and attaches each question to the first group whose representative
scores strictly above the threshold, so results depend on input order and are
never re-clustered when the threshold changes.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from supportdesk.services.triage_store import FAQRecord

DEFAULT_SIMILARITY_THRESHOLD = 0.6

_PLACEHOLDER_RE = re.compile(r"\{(?:email|username)\}", re.IGNORECASE)
_ACTION_WORD_RE = re.compile(r"\b(cancel|end|stop|terminate|discontinue)\b")

DISTINCT_CONCEPTS: dict[str, list[str]] = {
    "username": ["username", "user name", "login name", "account name"],
    "password": ["password", "pwd", "pass", "reset password"],
    "email": ["email", "e-mail", "mail"],
    "account": ["account", "profile"],
    "payment": ["payment", "billing", "charge", "subscription"],
}


@dataclass
class PatternGroup:
    """A cluster of near-duplicate questions and the emails that asked them."""

    representative: str
    variants: list[str] = field(default_factory=list)
    source_ids: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return 1 + len(self.variants)


@dataclass
class FAQMatch:
    """One question matched against the knowledge base."""

    question: str
    faq: FAQRecord
    confidence: float


@dataclass
class AnsweredStatus:
    """Whether every question in an email is covered by an answered FAQ."""

    is_answered: bool
    matches: list[FAQMatch]
    unmatched: list[str]

    @property
    def best_match(self) -> FAQMatch | None:
        if not self.matches:
            return None
        return max(self.matches, key=lambda m: m.confidence)


def tokenize(text: str) -> set[str]:
    """Lowercase and split on whitespace into a token set."""

    return {token for token in (text or "").lower().split() if token}


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over token sets; 0.0 when both are empty."""

    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def levenshtein_similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity ``1 - distance / max_len`` (case-insensitive)."""

    s1 = (a or "").strip().lower()
    s2 = (b or "").strip().lower()
    if s1 == s2:
        return 1.0
    previous = list(range(len(s2) + 1))
    for i, ch1 in enumerate(s1, start=1):
        current = [i]
        for j, ch2 in enumerate(s2, start=1):
            cost = 0 if ch1 == ch2 else 1
            current.append(min(previous[j - 1] + cost, current[j - 1] + 1, previous[j] + 1))
        previous = current
    return 1.0 - previous[-1] / max(len(s1), len(s2))


def _strip_placeholders(question: str) -> str:
    return _PLACEHOLDER_RE.sub("", question.lower()).strip()


def _action_words(question: str) -> set[str]:
    return set(_ACTION_WORD_RE.findall(question))


def _actions_compatible(a: str, b: str) -> bool:
    words_a = _action_words(a)
    words_b = _action_words(b)
    if not words_a and not words_b:
        return True
    return bool(words_a & words_b)


def group_similar_patterns(
    items: Iterable[tuple[str, Sequence[str]]],
    *,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    require_shared_action: bool = True,
) -> list[PatternGroup]:
    """Greedily cluster ``(question, source_ids)`` pairs by first match above threshold."""

    groups: list[PatternGroup] = []
    for question, source_ids in items:
        question = (question or "").strip()
        if not question:
            continue
        base = _strip_placeholders(question)
        target: PatternGroup | None = None
        for group in groups:
            group_base = _strip_placeholders(group.representative)
            if require_shared_action and not _actions_compatible(group_base, base):
                continue
            if jaccard_similarity(group_base, base) > threshold:
                target = group
                break

        if target is None:
            groups.append(
                PatternGroup(
                    representative=question,
                    source_ids=list(dict.fromkeys(source_ids)),
                )
            )
            continue
        target.variants.append(question)
        for source_id in source_ids:
            if source_id not in target.source_ids:
                target.source_ids.append(source_id)
    return groups


def find_matching_faq(
    question: str,
    faqs: Sequence[FAQRecord],
    *,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> FAQMatch | None:
    """Exact case-insensitive question match first, then first answered FAQ above threshold."""

    answered = [faq for faq in faqs if faq.is_answered]
    wanted = question.strip().lower()
    for faq in answered:
        if faq.question.strip().lower() == wanted:
            return FAQMatch(question=question, faq=faq, confidence=1.0)
    for faq in answered:
        score = jaccard_similarity(question, faq.question)
        if score > threshold:
            return FAQMatch(question=question, faq=faq, confidence=score)
    return None


def check_answered_status(
    questions: Sequence[str],
    faqs: Sequence[FAQRecord],
    *,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> AnsweredStatus:
    """An email is answered only when each of its questions maps to an answered FAQ."""

    matches: list[FAQMatch] = []
    unmatched: list[str] = []
    for question in questions:
        match = find_matching_faq(question, faqs, threshold=threshold)
        if match is None:
            unmatched.append(question)
        else:
            matches.append(match)
    return AnsweredStatus(
        is_answered=bool(questions) and not unmatched,
        matches=matches,
        unmatched=unmatched,
    )


def find_concepts(text: str) -> set[str]:
    lowered = (text or "").lower()
    return {
        concept
        for concept, terms in DISTINCT_CONCEPTS.items()
        if any(term in lowered for term in terms)
    }


def concept_confidence(email_text: str, faq_question: str) -> int:
    """0-100 confidence; 30 when no core concept is shared, else weighted Dice overlap."""

    if not find_concepts(email_text) & find_concepts(faq_question):
        return 30
    words_a = tokenize(email_text)
    words_b = tokenize(faq_question)
    total = len(words_a) + len(words_b)
    dice = (2 * len(words_a & words_b) / total) if total else 0.0
    return round(dice * 100 * 0.7 + 100 * 0.3)

