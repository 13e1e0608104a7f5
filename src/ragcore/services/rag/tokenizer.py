from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import math
import re
from typing import Sequence

BM25_K1 = 1.5
BM25_B = 0.75
BM25_NORMALIZATION_CEILING = 10.0

STOPWORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "but", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "of", "at", "by", "for",
        "with", "about", "against", "between", "into", "through", "during", "before",
        "after", "above", "below", "to", "from", "up", "down", "in", "out", "on", "off",
        "over", "under", "again", "further", "then", "once", "here", "there", "when",
        "where", "why", "how", "all", "each", "few", "more", "most", "other", "some",
        "such", "no", "nor", "not", "only", "own", "same", "so", "than", "too", "very",
        "s", "t", "just", "don", "now", "it", "its", "this", "that", "these", "those",
    }
)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    cleaned = _PUNCTUATION_RE.sub(" ", text.lower())
    return [word for word in cleaned.split() if len(word) > 1 and word not in STOPWORDS]


@dataclass(frozen=True)
class CorpusStats:
    document_frequencies: dict[str, int]
    avg_doc_length: float
    total_docs: int

    @classmethod
    def from_documents(cls, tokenized_docs: Sequence[Sequence[str]]) -> CorpusStats:
        frequencies: Counter[str] = Counter()
        total_length = 0
        for tokens in tokenized_docs:
            total_length += len(tokens)
            frequencies.update(set(tokens))

        total_docs = len(tokenized_docs)
        avg_doc_length = total_length / total_docs if total_docs else 0.0
        return cls(
            document_frequencies=dict(frequencies),
            avg_doc_length=avg_doc_length,
            total_docs=total_docs,
        )

    def idf(self, term: str) -> float:
        df = self.document_frequencies.get(term, 0)
        return math.log((self.total_docs - df + 0.5) / (df + 0.5) + 1)


def bm25_score(
    query_tokens: Sequence[str],
    doc_tokens: Sequence[str],
    stats: CorpusStats,
    *,
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> float:
    if not query_tokens or not doc_tokens:
        return 0.0

    term_frequencies = Counter(doc_tokens)
    doc_length = len(doc_tokens)
    length_ratio = doc_length / stats.avg_doc_length if stats.avg_doc_length > 0 else 1.0

    score = 0.0
    for term in query_tokens:
        tf = term_frequencies.get(term, 0)
        if tf == 0:
            continue
        numerator = tf * (k1 + 1)
        denominator = tf + k1 * (1 - b + b * length_ratio)
        score += stats.idf(term) * (numerator / denominator)

    return score


def normalize_bm25(score: float, *, ceiling: float = BM25_NORMALIZATION_CEILING) -> float:
    if ceiling <= 0:
        raise ValueError("ceiling must be > 0")
    return min(max(score / ceiling, 0.0), 1.0)
