"""
Local lexical search engine.

In-memory inverted index with TF-IDF scoring, used when the remote vector
backend is unavailable and to build candidate sets for local search.

Scoring for a document d against query terms Q:

    score(d) = sum over matched t of (1 + ln tf(t, d)) * idf(t)
               / (sqrt(|Q|) * sqrt(|distinct terms of d|))

    idf(t) = ln((N + 1) / (df(t) + 1)) + 1

IDF values are cached per term. The cache (and the token cache) is only
touched from index() and remove_document(), so every df change invalidates
the affected terms.
"""

import json
import logging
import math
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .errors import ProtocolError

logger = logging.getLogger(__name__)

# Token cache keyed by the first N characters of the text
TOKEN_CACHE_KEY_LENGTH = 100
MAX_TOKEN_CACHE = 1000

MAX_HIGHLIGHTS = 3

# Keep word chars, whitespace, and Latin-1 Supplement / Latin Extended-A letters
_NON_TOKEN_RE = re.compile(r"[^\w\sÀ-ſ]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "can", "this", "that",
    "these", "those", "i", "you", "he", "she", "it", "we", "they",
})


@dataclass
class Document:
    """Lexical projection of a record."""
    id: str
    content: str
    timestamp: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    document: Document
    score: float
    highlights: list[str] = field(default_factory=list)


@dataclass
class _Posting:
    tf: int = 0
    positions: list[int] = field(default_factory=list)


def tokenize(text: str) -> list[str]:
    """Lower-case, strip punctuation, drop short tokens and stop-words."""
    cleaned = _NON_TOKEN_RE.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 2 and t not in STOP_WORDS]


class LocalLexicalSearch:
    """
    Thread-safe in-memory TF-IDF index.

    Documents are kept in insertion order; search ties are broken by it.
    Re-indexing an existing id keeps its original position.
    """

    def __init__(self):
        self._documents: dict[str, Document] = {}
        self._postings: dict[str, dict[str, _Posting]] = {}
        self._doc_freq: dict[str, int] = {}
        self._total_documents = 0
        self._total_tokens = 0
        self._idf_cache: dict[str, float] = {}
        self._token_cache: OrderedDict[str, tuple[str, list[str]]] = OrderedDict()
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Tokenization
    # -------------------------------------------------------------------------

    def _tokenize(self, text: str, use_cache: bool = True) -> list[str]:
        if not use_cache:
            return tokenize(text)
        key = text[:TOKEN_CACHE_KEY_LENGTH]
        cached = self._token_cache.get(key)
        # Entries remember their full text so two texts sharing a prefix never collide
        if cached is not None and cached[0] == text:
            self._token_cache.move_to_end(key)
            return cached[1]
        terms = tokenize(text)
        self._token_cache[key] = (text, terms)
        if len(self._token_cache) > MAX_TOKEN_CACHE:
            self._token_cache.popitem(last=False)
        return terms

    def _invalidate_token_cache(self, content: str) -> None:
        self._token_cache.pop(content[:TOKEN_CACHE_KEY_LENGTH], None)

    # -------------------------------------------------------------------------
    # Scoring primitives
    # -------------------------------------------------------------------------

    def idf(self, term: str) -> float:
        with self._lock:
            cached = self._idf_cache.get(term)
            if cached is not None:
                return cached
            df = self._doc_freq.get(term, 0)
            value = math.log((self._total_documents + 1) / (df + 1)) + 1 if df > 0 else 0.0
            self._idf_cache[term] = value
            return value

    def document_frequency(self, term: str) -> int:
        with self._lock:
            return self._doc_freq.get(term, 0)

    def _retract(self, doc_id: str) -> None:
        """Remove all postings for doc_id, adjusting df and invalidating idf."""
        postings = self._postings.pop(doc_id, None)
        if not postings:
            return
        for term, posting in postings.items():
            df = self._doc_freq.get(term, 0)
            if df <= 1:
                self._doc_freq.pop(term, None)
            else:
                self._doc_freq[term] = df - 1
            self._idf_cache.pop(term, None)
            self._total_tokens -= posting.tf

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def index(self, doc: Document) -> None:
        """Insert or replace a document."""
        if not isinstance(doc.content, str):
            raise ProtocolError.invalid_parameter("content", doc.content, "str")
        if not doc.id:
            raise ProtocolError.missing_parameter("id")

        with self._lock:
            previous = self._documents.get(doc.id)
            if previous is not None:
                self._retract(doc.id)
                self._invalidate_token_cache(previous.content)
            else:
                self._total_documents += 1
            self._invalidate_token_cache(doc.content)

            terms = self._tokenize(doc.content, use_cache=False)
            postings: dict[str, _Posting] = {}
            for position, term in enumerate(terms):
                posting = postings.setdefault(term, _Posting())
                posting.tf += 1
                posting.positions.append(position)

            for term in postings:
                self._doc_freq[term] = self._doc_freq.get(term, 0) + 1
                self._idf_cache.pop(term, None)

            # A new total changes every idf value
            if previous is None:
                self._idf_cache.clear()

            self._postings[doc.id] = postings
            self._documents[doc.id] = doc
            self._total_tokens += len(terms)

    def batch_index(self, docs: Iterable[Document]) -> int:
        count = 0
        with self._lock:
            for doc in docs:
                self.index(doc)
                count += 1
        return count

    def remove_document(self, doc_id: str) -> bool:
        """Remove a document. Returns False (and changes nothing) for unknown ids."""
        with self._lock:
            doc = self._documents.pop(doc_id, None)
            if doc is None:
                return False
            self._retract(doc_id)
            self._invalidate_token_cache(doc.content)
            self._total_documents -= 1
            self._idf_cache.clear()
            return True

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()
            self._postings.clear()
            self._doc_freq.clear()
            self._idf_cache.clear()
            self._token_cache.clear()
            self._total_documents = 0
            self._total_tokens = 0

    def optimize(self) -> None:
        """Drop caches; they are rebuilt on demand."""
        with self._lock:
            self._token_cache.clear()
            self._idf_cache.clear()

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def search(self, query: str, limit: int = 10, threshold: float = 0.1) -> list[SearchHit]:
        """Rank documents against ``query``. Sorted by score descending, ties by insertion order."""
        query_terms = tokenize(query)
        if not query_terms or limit <= 0:
            return []

        with self._lock:
            query_idf = {term: self.idf(term) for term in set(query_terms)}
            query_norm = math.sqrt(len(query_terms))

            scored: list[tuple[float, int, str]] = []
            for order, doc_id in enumerate(self._documents):
                postings = self._postings.get(doc_id) or {}
                score = 0.0
                matched = 0
                for term in query_terms:
                    posting = postings.get(term)
                    if posting is None:
                        continue
                    score += (1 + math.log(posting.tf)) * query_idf[term]
                    matched += 1
                if matched == 0:
                    continue
                score /= query_norm * math.sqrt(len(postings))
                if score < threshold:
                    continue
                scored.append((score, order, doc_id))

            scored.sort(key=lambda s: (-s[0], s[1]))
            hits = []
            for score, _, doc_id in scored[:limit]:
                document = self._documents[doc_id]
                hits.append(SearchHit(
                    document=document,
                    score=score,
                    highlights=self.extract_highlights(document.content, query_terms),
                ))
            return hits

    def extract_highlights(self, content: str, query_terms: Iterable[str]) -> list[str]:
        """Up to three sentences containing a query term, in original order."""
        wanted = set(query_terms)
        highlights = []
        with self._lock:
            for sentence in _SENTENCE_SPLIT_RE.split(content):
                if wanted.intersection(self._tokenize(sentence)):
                    highlights.append(sentence.strip())
                    if len(highlights) >= MAX_HIGHLIGHTS:
                        break
        return highlights

    def find_similar(self, doc_id: str, limit: int = 5) -> list[SearchHit]:
        """Documents similar to an indexed one, excluding itself."""
        with self._lock:
            doc = self._documents.get(doc_id)
            if doc is None:
                return []
            hits = self.search(doc.content, limit + 1, 0.05)
        return [h for h in hits if h.document.id != doc_id][:limit]

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_document(self, doc_id: str) -> Optional[Document]:
        with self._lock:
            return self._documents.get(doc_id)

    def get_all_documents(self) -> list[Document]:
        with self._lock:
            return list(self._documents.values())

    def __len__(self) -> int:
        return self._total_documents

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._documents

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "total_documents": self._total_documents,
                "total_terms": len(self._doc_freq),
                "avg_doc_length": (
                    self._total_tokens / self._total_documents if self._total_documents else 0.0
                ),
                "cache_size": len(self._token_cache),
                "idf_cache_size": len(self._idf_cache),
            }

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def export(self) -> str:
        """Serialize documents to JSON. Postings are rebuilt on import."""
        with self._lock:
            return json.dumps({
                "version": 1,
                "documents": [
                    {"id": d.id, "content": d.content, "timestamp": d.timestamp, "metadata": d.metadata}
                    for d in self._documents.values()
                ],
            })

    def import_(self, data: str) -> int:
        """Replace the index with a snapshot produced by export()."""
        parsed = json.loads(data)
        docs = [
            Document(
                id=d["id"],
                content=d["content"],
                timestamp=d.get("timestamp", 0),
                metadata=d.get("metadata") or {},
            )
            for d in parsed.get("documents", [])
        ]
        with self._lock:
            self.clear()
            return self.batch_index(docs)
