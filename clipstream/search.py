"""
In-memory search index over processed videos.

One document per ready video, built from title, tags, description and
transcript. Rebuildable from the videos table at any time; the database stays
the source of truth.
"""

import bisect
import logging
import math
import re
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType

from clipstream import config
from clipstream.db import open_db, utcnow
from clipstream.models import Video

log = logging.getLogger("clipstream.search")

TOKEN_RE = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    "a an and are as at be but by for from has have in is it its of on or that the "
    "this to was were will with you your i we they he she".split()
)

FIELD_WEIGHTS = {"title": 3.0, "tags": 2.0, "description": 1.5, "transcript": 1.0}


def tokenize(text: str) -> list:
    return [t for t in TOKEN_RE.findall((text or "").lower()) if len(t) >= 2 and t not in STOPWORDS]


@dataclass(frozen=True)
class SearchDocument:
    video_id: str
    stream_id: str
    title: str
    uploaded_at: datetime
    like_count: int
    share_count: int
    fields: MappingProxyType
    transcript_text: str = ""
    description: str = ""

    @classmethod
    def from_video(cls, video: Video) -> "SearchDocument":
        fields = {
            "title": Counter(tokenize(video.title)),
            "tags": Counter(t for tag in video.tags for t in tokenize(tag)),
            "description": Counter(tokenize(video.description)),
            "transcript": Counter(tokenize(video.transcript_text)),
        }
        return cls(
            video_id=video.id,
            stream_id=video.stream_id,
            title=video.title,
            uploaded_at=video.uploaded_at,
            like_count=video.like_count,
            share_count=video.share_count,
            fields=MappingProxyType({f: MappingProxyType(dict(c)) for f, c in fields.items()}),
            transcript_text=video.transcript_text,
            description=video.description,
        )

    @property
    def term_counts(self) -> Counter:
        total = Counter()
        for counts in self.fields.values():
            total.update(counts)
        return total


@dataclass(frozen=True)
class SearchHit:
    video_id: str
    stream_id: str
    title: str
    score: float
    uploaded_at: datetime
    snippet: str


class _Snapshot:
    __slots__ = ("docs", "postings", "term_freq", "sorted_terms")

    def __init__(self, docs: dict, postings: dict, term_freq: dict, sorted_terms: tuple):
        self.docs = MappingProxyType(docs)
        self.postings = MappingProxyType(postings)
        self.term_freq = MappingProxyType(term_freq)
        self.sorted_terms = sorted_terms


class SearchIndex:
    def __init__(
        self,
        recency_weight: float = None,
        half_life_days: float = None,
        engagement_weight: float = None,
        clock=None,
    ):
        self.recency_weight = config.SEARCH_RECENCY_WEIGHT if recency_weight is None else recency_weight
        self.half_life_days = half_life_days or config.SEARCH_HALF_LIFE_DAYS
        self.engagement_weight = config.SEARCH_ENGAGEMENT_WEIGHT if engagement_weight is None else engagement_weight
        self.clock = clock or utcnow
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot({}, {}, {}, ())

    def __len__(self):
        return len(self._snapshot.docs)

    def __contains__(self, video_id):
        return video_id in self._snapshot.docs

    # --- Writers ---

    def upsert(self, video: Video):
        self.upsert_document(SearchDocument.from_video(video))

    def upsert_document(self, doc: SearchDocument):
        with self._write_lock:
            snap = self._snapshot
            docs = dict(snap.docs)
            postings = dict(snap.postings)
            term_freq = dict(snap.term_freq)
            old = docs.get(doc.video_id)
            if old is not None:
                _unpost(postings, term_freq, old)
            docs[doc.video_id] = doc
            for term, count in doc.term_counts.items():
                postings[term] = postings.get(term, frozenset()) | {doc.video_id}
                term_freq[term] = term_freq.get(term, 0) + count
            self._publish(docs, postings, term_freq, snap)

    def remove(self, video_id: str) -> bool:
        with self._write_lock:
            snap = self._snapshot
            old = snap.docs.get(video_id)
            if old is None:
                return False
            docs = dict(snap.docs)
            postings = dict(snap.postings)
            term_freq = dict(snap.term_freq)
            del docs[video_id]
            _unpost(postings, term_freq, old)
            self._publish(docs, postings, term_freq, snap)
            return True

    def update_engagement(self, video_id: str, like_count: int, share_count: int) -> bool:
        with self._write_lock:
            snap = self._snapshot
            old = snap.docs.get(video_id)
            if old is None:
                return False
            docs = dict(snap.docs)
            docs[video_id] = SearchDocument(
                old.video_id, old.stream_id, old.title, old.uploaded_at,
                like_count, share_count, old.fields, old.transcript_text, old.description,
            )
            self._snapshot = _Snapshot(docs, dict(snap.postings), dict(snap.term_freq), snap.sorted_terms)
            return True

    def rebuild(self, db_path: str = None) -> int:
        db = open_db(db_path)
        try:
            rows = db.execute("SELECT * FROM videos WHERE status = 'ready'").fetchall()
        finally:
            db.close()

        docs, postings, term_freq = {}, {}, Counter()
        for row in rows:
            doc = SearchDocument.from_video(Video.from_row(row))
            docs[doc.video_id] = doc
            for term, count in doc.term_counts.items():
                postings.setdefault(term, set()).add(doc.video_id)
                term_freq[term] += count
        postings = {t: frozenset(ids) for t, ids in postings.items()}

        with self._write_lock:
            self._snapshot = _Snapshot(docs, postings, dict(term_freq), tuple(sorted(postings)))
        log.info(f"Search index rebuilt with {len(docs)} documents")
        return len(docs)

    def _publish(self, docs, postings, term_freq, previous: _Snapshot):
        if postings.keys() == previous.postings.keys():
            sorted_terms = previous.sorted_terms
        else:
            sorted_terms = tuple(sorted(postings))
        self._snapshot = _Snapshot(docs, postings, term_freq, sorted_terms)

    # --- Readers ---

    def search(self, query: str, stream_ids=None, limit: int = None, now: datetime = None) -> list:
        """
        Rank documents against the query terms.
        Text relevance grows with log term frequency per field, is weighted by
        field and idf, then boosted by recency and engagement. Ties go to the
        earlier upload, then the lower id.
        """
        snap = self._snapshot
        terms = sorted(set(tokenize(query)))
        if not terms or not snap.docs:
            return []
        allowed = set(stream_ids) if stream_ids is not None else None
        now = now or self.clock()
        n_docs = len(snap.docs)

        scores = {}
        for term in terms:
            posting = snap.postings.get(term)
            if not posting:
                continue
            idf = math.log(1 + n_docs / len(posting))
            for video_id in posting:
                doc = snap.docs[video_id]
                if allowed is not None and doc.stream_id not in allowed:
                    continue
                relevance = 0.0
                for field, weight in FIELD_WEIGHTS.items():
                    tf = doc.fields[field].get(term, 0)
                    if tf:
                        relevance += weight * (1 + math.log(tf))
                scores[video_id] = scores.get(video_id, 0.0) + relevance * idf

        hits = []
        for video_id, text_score in scores.items():
            doc = snap.docs[video_id]
            age_days = max(0.0, (now - doc.uploaded_at).total_seconds() / 86400)
            recency = 0.5 ** (age_days / self.half_life_days)
            engagement = math.log1p(doc.like_count + 2 * doc.share_count)
            score = text_score * (1 + self.recency_weight * recency) * (1 + self.engagement_weight * engagement)
            hits.append(SearchHit(
                video_id, doc.stream_id, doc.title, round(score, 6), doc.uploaded_at,
                _snippet(doc, terms),
            ))

        hits.sort(key=lambda h: (-h.score, h.uploaded_at, h.video_id))
        return hits[: limit or config.SEARCH_MAX_RESULTS]

    def suggest(self, prefix: str, limit: int = None) -> list:
        """Indexed terms starting with prefix, most frequent in the corpus first."""
        snap = self._snapshot
        prefix = (prefix or "").strip().lower()
        if not prefix:
            return []
        lo = bisect.bisect_left(snap.sorted_terms, prefix)
        hi = bisect.bisect_left(snap.sorted_terms, prefix + "\uffff")
        candidates = snap.sorted_terms[lo:hi]
        ranked = sorted(candidates, key=lambda t: (-snap.term_freq.get(t, 0), t))
        return [
            {"term": t, "count": snap.term_freq.get(t, 0)}
            for t in ranked[: limit or config.SUGGESTION_LIMIT]
        ]


def _unpost(postings: dict, term_freq: dict, doc: SearchDocument):
    for term, count in doc.term_counts.items():
        remaining = postings.get(term, frozenset()) - {doc.video_id}
        if remaining:
            postings[term] = remaining
            term_freq[term] = term_freq.get(term, 0) - count
        else:
            postings.pop(term, None)
            term_freq.pop(term, None)


def _snippet(doc: SearchDocument, terms: list, width: int = 12) -> str:
    for text in (doc.transcript_text, doc.description):
        words = text.split()
        for i, word in enumerate(words):
            if any(t in word.lower() for t in terms):
                start = max(0, i - width // 2)
                return " ".join(words[start:start + width])
    return doc.title
