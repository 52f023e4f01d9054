"""
Similarity & duplicate engine.

Embeddings are bucketed by random-hyperplane LSH. A query probes its own bucket
and every bucket one bit away in each table, then scores the candidates with
exact cosine similarity. Writers are serialized and publish a fresh immutable
snapshot; readers take the current snapshot once and never lock.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType

import numpy as np

from clipstream import config
from clipstream.db import decode_vector, fmt_ts, open_db, parse_ts

log = logging.getLogger("clipstream.similarity")


@dataclass(frozen=True)
class Match:
    video_id: str
    score: float
    stream_id: str
    uploaded_at: datetime


@dataclass(frozen=True)
class Classification:
    duplicate_of: Match | None
    pov: tuple
    similar: tuple


@dataclass(frozen=True)
class _Entry:
    vector: np.ndarray
    stream_id: str
    uploaded_at: datetime
    signature: tuple


class _Snapshot:
    __slots__ = ("entries", "tables")

    def __init__(self, entries: dict, tables: list):
        self.entries = MappingProxyType(entries)
        self.tables = tuple(MappingProxyType(t) for t in tables)


def sort_key(uploaded_at: datetime, video_id: str) -> str:
    """Text key ordering videos by earliest upload, then lowest id."""
    return f"{fmt_ts(uploaded_at)}|{video_id}"


class DisjointSet:
    """
    Union-find over cluster ids. The root of every set is its member with the
    smallest sort key, so the resulting cluster id does not depend on the order
    in which unions happen.
    """

    def __init__(self):
        self.parent = {}
        self.keys = {}

    def add(self, item: str, key: str):
        if item not in self.parent:
            self.parent[item] = item
            self.keys[item] = key

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> str:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self.keys[rb] < self.keys[ra]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        return ra

    def members(self, root: str) -> list:
        return sorted(item for item in self.parent if self.find(item) == root)


class SimilarityIndex:
    def __init__(
        self,
        dim: int = None,
        tables: int = None,
        bits: int = None,
        seed: int = None,
        exact_scan_limit: int = None,
        duplicate_threshold: float = None,
        pov_threshold: float = None,
        similar_threshold: float = None,
        pov_window_seconds: int = None,
    ):
        self.dim = dim or config.EMBEDDING_DIM
        self.n_tables = tables or config.LSH_TABLES
        self.n_bits = bits or config.LSH_BITS
        self.exact_scan_limit = config.EXACT_SCAN_LIMIT if exact_scan_limit is None else exact_scan_limit
        self.duplicate_threshold = duplicate_threshold or config.DUPLICATE_THRESHOLD
        self.pov_threshold = pov_threshold or config.POV_THRESHOLD
        self.similar_threshold = similar_threshold or config.SIMILAR_THRESHOLD
        self.pov_window = timedelta(seconds=pov_window_seconds or config.POV_WINDOW_SECONDS)
        if not self.duplicate_threshold >= self.pov_threshold >= self.similar_threshold:
            raise ValueError("thresholds must satisfy duplicate >= pov >= similar")

        rng = np.random.default_rng(config.LSH_SEED if seed is None else seed)
        self._planes = rng.standard_normal((self.n_tables, self.n_bits, self.dim)).astype(np.float32)
        self._weights = 1 << np.arange(self.n_bits)
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot({}, [{} for _ in range(self.n_tables)])

    def __len__(self):
        return len(self._snapshot.entries)

    def __contains__(self, video_id):
        return video_id in self._snapshot.entries

    def _normalize(self, vector) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        if arr.shape[0] != self.dim:
            raise ValueError(f"vector has {arr.shape[0]} dims, index expects {self.dim}")
        norm = float(np.linalg.norm(arr))
        if norm == 0:
            raise ValueError("cannot index the zero vector")
        arr = arr / norm
        arr.setflags(write=False)
        return arr

    def _signature(self, vec: np.ndarray) -> tuple:
        bits = (self._planes @ vec) >= 0
        return tuple(int(v) for v in (bits * self._weights).sum(axis=1))

    # --- Writers (serialized, publish by snapshot swap) ---

    def add(self, video_id: str, vector, stream_id: str, uploaded_at: datetime):
        vec = self._normalize(vector)
        entry = _Entry(vec, stream_id, uploaded_at, self._signature(vec))
        with self._write_lock:
            snap = self._snapshot
            entries = dict(snap.entries)
            tables = [dict(t) for t in snap.tables]
            old = entries.get(video_id)
            if old is not None:
                _unbucket(tables, video_id, old.signature)
            entries[video_id] = entry
            for t, key in enumerate(entry.signature):
                tables[t][key] = tables[t].get(key, ()) + (video_id,)
            self._snapshot = _Snapshot(entries, tables)

    def remove(self, video_id: str) -> bool:
        with self._write_lock:
            snap = self._snapshot
            old = snap.entries.get(video_id)
            if old is None:
                return False
            entries = dict(snap.entries)
            tables = [dict(t) for t in snap.tables]
            del entries[video_id]
            _unbucket(tables, video_id, old.signature)
            self._snapshot = _Snapshot(entries, tables)
            return True

    def rebuild(self, db_path: str = None) -> int:
        """Reload every live embedding from the database and publish it as one snapshot.
        Duplicates and failed videos are left out; neither may serve as a canonical."""
        db = open_db(db_path)
        try:
            rows = db.execute(
                "SELECT id, stream_id, uploaded_at, embedding FROM videos "
                "WHERE embedding IS NOT NULL AND status NOT IN ('duplicate', 'failed')"
            ).fetchall()
        finally:
            db.close()

        entries = {}
        tables = [{} for _ in range(self.n_tables)]
        for row in rows:
            vec = decode_vector(row["embedding"])
            if vec is None or vec.shape[0] != self.dim:
                log.warning(f"Skipping unusable embedding for video {row['id']}")
                continue
            vec = self._normalize(vec)
            entry = _Entry(vec, row["stream_id"], parse_ts(row["uploaded_at"]), self._signature(vec))
            entries[row["id"]] = entry
            for t, key in enumerate(entry.signature):
                tables[t][key] = tables[t].get(key, ()) + (row["id"],)

        with self._write_lock:
            self._snapshot = _Snapshot(entries, tables)
        log.info(f"Similarity index rebuilt with {len(entries)} vectors")
        return len(entries)

    # --- Readers (lock-free) ---

    def _candidates(self, snap: _Snapshot, vec: np.ndarray) -> set:
        if len(snap.entries) <= self.exact_scan_limit:
            return set(snap.entries)
        found = set()
        for t, key in enumerate(self._signature(vec)):
            table = snap.tables[t]
            found.update(table.get(key, ()))
            for b in range(self.n_bits):
                found.update(table.get(key ^ (1 << b), ()))
        return found

    def query(self, vector, min_score: float = None, exclude=None) -> list:
        """Matches at or above min_score, best first; ties go to the earlier upload."""
        snap = self._snapshot
        vec = self._normalize(vector)
        exclude = set(exclude or ())
        ids = sorted(self._candidates(snap, vec) - exclude)
        if not ids:
            return []
        matrix = np.stack([snap.entries[i].vector for i in ids])
        scores = matrix @ vec
        floor = self.similar_threshold if min_score is None else min_score
        matches = [
            Match(i, float(s), snap.entries[i].stream_id, snap.entries[i].uploaded_at)
            for i, s in zip(ids, scores)
            if s >= floor
        ]
        matches.sort(key=lambda m: (-m.score, m.uploaded_at, m.video_id))
        return matches

    def duplicate_matches(self, video_id: str, vector) -> list:
        return self.query(vector, self.duplicate_threshold, exclude={video_id})

    def find_duplicate(self, video_id: str, vector, uploaded_at: datetime) -> Match | None:
        """
        The canonical video this one duplicates, or None.
        Canonical is the earliest upload (then lowest id) among the video and its
        duplicate-level matches, so two near-identical uploads never point at each other.
        """
        matches = self.duplicate_matches(video_id, vector)
        if not matches:
            return None
        canonical = min(matches, key=lambda m: (m.uploaded_at, m.video_id))
        if (canonical.uploaded_at, canonical.video_id) < (uploaded_at, video_id):
            return canonical
        return None

    def pov_matches(self, video_id: str, vector, stream_id: str, uploaded_at: datetime) -> list:
        """Same-stream matches above the POV cutoff whose uploads fall inside the window."""
        return [
            m for m in self.query(vector, self.pov_threshold, exclude={video_id})
            if m.stream_id == stream_id and abs(m.uploaded_at - uploaded_at) <= self.pov_window
        ]

    def similar_matches(self, video_id: str, vector, exclude=None) -> list:
        excluded = set(exclude or ()) | {video_id}
        return self.query(vector, self.similar_threshold, exclude=excluded)

    def classify(self, video_id: str, vector, stream_id: str, uploaded_at: datetime) -> Classification:
        """Evaluate the three cutoffs in order: duplicate, POV, similar."""
        dup = self.find_duplicate(video_id, vector, uploaded_at)
        if dup is not None:
            return Classification(dup, (), ())
        pov = tuple(self.pov_matches(video_id, vector, stream_id, uploaded_at))
        similar = tuple(self.similar_matches(video_id, vector, exclude={m.video_id for m in pov}))
        return Classification(None, pov, similar)


def _unbucket(tables: list, video_id: str, signature: tuple):
    for t, key in enumerate(signature):
        remaining = tuple(i for i in tables[t].get(key, ()) if i != video_id)
        if remaining:
            tables[t][key] = remaining
        else:
            tables[t].pop(key, None)
