"""TF-IDF lexical ranking over an arbitrary document set.

Stateless: every call tokenizes the query and the corpus from scratch.
Used as the last retrieval tier, so it must accept anything (empty query,
empty documents, empty corpus) without raising.

Scoring:
    tf(t, d)  = count of t in d / number of tokens in d
    idf(t)    = ln((N + 1) / (df(t) + 1)) + 1
    score(d)  = sum over query tokens t of tf(t, d) * idf(t)

A term repeated in the query adds its weight once per occurrence; df and
idf are computed once per distinct term.

The smoothed idf is always >= 1, so any shared term adds a positive amount
and documents sharing no term score exactly 0.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from vault_search.models.schema import RankedResult

_NON_WORD_RE = re.compile(r"[\W_]+", re.UNICODE)


@dataclass(frozen=True)
class LexicalDocument:
    """A document to rank: vault path plus raw text."""

    path: str
    text: str


def tokenize(text: str) -> List[str]:
    """Lowercase, replace non letter/digit runs with spaces, split.

    Examples:
        "Hello, World!" -> ["hello", "world"]
        "snake_case-word" -> ["snake", "case", "word"]
        "Café 2024" -> ["café", "2024"]
    """
    if not text:
        return []
    return _NON_WORD_RE.sub(" ", text.lower()).split()


def inverse_document_frequency(doc_count: int, doc_freq: int) -> float:
    """Smoothed idf: ln((N + 1) / (df + 1)) + 1."""
    return math.log((doc_count + 1) / (doc_freq + 1)) + 1.0


class LexicalRanker:
    """Scores every document against a query with TF-IDF.

    Results are sorted by descending score; the sort is stable, so equal
    scores keep corpus order. All documents are returned; slicing and
    filtering are up to the caller.
    """

    def rank(
        self, query: str, docs: Iterable[LexicalDocument]
    ) -> List[RankedResult]:
        documents: Sequence[LexicalDocument] = list(docs)
        query_tokens = tokenize(query or "")

        if not query_tokens:
            return [RankedResult(path=d.path, score=0.0) for d in documents]

        term_counts = [Counter(tokenize(d.text)) for d in documents]
        doc_lengths = [sum(c.values()) for c in term_counts]

        doc_count = len(documents)
        idf = {
            term: inverse_document_frequency(
                doc_count, sum(1 for counts in term_counts if term in counts)
            )
            for term in set(query_tokens)
        }

        scored: List[RankedResult] = []
        for doc, counts, length in zip(documents, term_counts, doc_lengths):
            score = 0.0
            if length:
                for term in query_tokens:
                    count = counts.get(term, 0)
                    if count:
                        score += (count / length) * idf[term]
            scored.append(RankedResult(path=doc.path, score=score))

        return sorted(scored, key=lambda r: -r.score)

