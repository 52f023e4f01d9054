"""Unit tests for the similarity engine and the POV disjoint set."""

import itertools
import unittest
from datetime import timedelta

import numpy as np

from clipstream.db import encode_vector
from clipstream.similarity import DisjointSet, SimilarityIndex, sort_key
from clipstream.testutil import T0, DatabaseTestCase, at_angle, unit

DIM = 8


def make_index(**kwargs):
    params = dict(dim=DIM, duplicate_threshold=0.97, pov_threshold=0.85, similar_threshold=0.70,
                  pov_window_seconds=7200)
    params.update(kwargs)
    return SimilarityIndex(**params)


class TestDuplicateCanonical(unittest.TestCase):
    def setUp(self):
        self.idx = make_index()
        self.base = unit(DIM, 0)

    def test_later_upload_points_at_earliest(self):
        self.idx.add("v1", self.base, "s1", T0)
        self.idx.add("v2", at_angle(DIM, 0.99), "s1", T0 + timedelta(minutes=1))

        match = self.idx.find_duplicate("v2", at_angle(DIM, 0.99), T0 + timedelta(minutes=1))
        self.assertEqual(match.video_id, "v1")
        self.assertIsNone(self.idx.find_duplicate("v1", self.base, T0))

    def test_detection_is_idempotent(self):
        self.idx.add("v1", self.base, "s1", T0)
        self.idx.add("v2", self.base, "s1", T0 + timedelta(seconds=5))
        first = self.idx.find_duplicate("v2", self.base, T0 + timedelta(seconds=5))
        second = self.idx.find_duplicate("v2", self.base, T0 + timedelta(seconds=5))
        self.assertEqual(first.video_id, second.video_id)

    def test_same_upload_time_lowest_id_wins(self):
        self.idx.add("vb", self.base, "s1", T0)
        self.idx.add("va", self.base, "s1", T0)
        self.assertEqual(self.idx.find_duplicate("vb", self.base, T0).video_id, "va")
        self.assertIsNone(self.idx.find_duplicate("va", self.base, T0))

    def test_canonical_is_earliest_among_all_matches(self):
        self.idx.add("v3", self.base, "s1", T0 + timedelta(seconds=30))
        self.idx.add("v1", self.base, "s1", T0)
        self.idx.add("v2", self.base, "s1", T0 + timedelta(seconds=10))
        match = self.idx.find_duplicate("v3", self.base, T0 + timedelta(seconds=30))
        self.assertEqual(match.video_id, "v1")

    def test_below_threshold_is_not_a_duplicate(self):
        self.idx.add("v1", self.base, "s1", T0)
        self.assertIsNone(self.idx.find_duplicate("v2", at_angle(DIM, 0.9), T0 + timedelta(seconds=1)))


class TestCutoffs(unittest.TestCase):
    def setUp(self):
        self.idx = make_index()
        self.idx.add("v1", unit(DIM, 0), "s1", T0)

    def test_pov_requires_same_stream_and_window(self):
        self.idx.add("same", at_angle(DIM, 0.9), "s1", T0 + timedelta(minutes=30))
        self.idx.add("other_stream", at_angle(DIM, 0.9, other=2), "s2", T0 + timedelta(minutes=30))
        self.idx.add("too_late", at_angle(DIM, 0.9, other=3), "s1", T0 + timedelta(hours=3))

        ids = [m.video_id for m in self.idx.pov_matches("v1", unit(DIM, 0), "s1", T0)]
        self.assertEqual(ids, ["same"])

    def test_classify_splits_pov_and_similar(self):
        self.idx.add("pov", at_angle(DIM, 0.9), "s1", T0 + timedelta(minutes=5))
        self.idx.add("sim", at_angle(DIM, 0.75, other=2), "s1", T0 + timedelta(minutes=5))
        self.idx.add("far", unit(DIM, 3), "s1", T0 + timedelta(minutes=5))

        result = self.idx.classify("v1", unit(DIM, 0), "s1", T0)
        self.assertIsNone(result.duplicate_of)
        self.assertEqual([m.video_id for m in result.pov], ["pov"])
        self.assertEqual([m.video_id for m in result.similar], ["sim"])

    def test_classify_stops_at_duplicate(self):
        self.idx.add("dup", unit(DIM, 0), "s1", T0 + timedelta(minutes=1))
        result = self.idx.classify("dup", unit(DIM, 0), "s1", T0 + timedelta(minutes=1))
        self.assertEqual(result.duplicate_of.video_id, "v1")
        self.assertEqual(result.pov, ())

    def test_thresholds_must_be_ordered(self):
        with self.assertRaises(ValueError):
            make_index(duplicate_threshold=0.8, pov_threshold=0.9)

    def test_wrong_dimension_rejected(self):
        with self.assertRaises(ValueError):
            self.idx.query(np.ones(DIM + 1))


class TestIndexMaintenance(unittest.TestCase):
    def test_remove(self):
        idx = make_index()
        idx.add("v1", unit(DIM, 0), "s1", T0)
        self.assertIn("v1", idx)
        self.assertTrue(idx.remove("v1"))
        self.assertFalse(idx.remove("v1"))
        self.assertEqual(idx.query(unit(DIM, 0)), [])

    def test_readers_keep_their_snapshot(self):
        idx = make_index()
        idx.add("v1", unit(DIM, 0), "s1", T0)
        snap = idx._snapshot
        idx.add("v2", unit(DIM, 1), "s1", T0)
        idx.remove("v1")
        self.assertEqual(set(snap.entries), {"v1"})
        self.assertEqual(set(idx._snapshot.entries), {"v2"})

    def test_re_add_replaces_vector(self):
        idx = make_index()
        idx.add("v1", unit(DIM, 0), "s1", T0)
        idx.add("v1", unit(DIM, 1), "s1", T0)
        self.assertEqual(len(idx), 1)
        self.assertEqual([m.video_id for m in idx.query(unit(DIM, 1))], ["v1"])
        self.assertEqual(idx.query(unit(DIM, 0)), [])


class TestLshProbing(unittest.TestCase):
    def test_bucketed_lookup_finds_identical_vectors(self):
        idx = make_index(exact_scan_limit=0, tables=4, bits=6, seed=7)
        rng = np.random.default_rng(3)
        vectors = {f"v{i}": rng.standard_normal(DIM) for i in range(40)}
        for vid, vec in vectors.items():
            idx.add(vid, vec, "s1", T0)

        for vid, vec in vectors.items():
            matches = idx.query(vec, min_score=0.999)
            self.assertIn(vid, [m.video_id for m in matches])

    def test_same_seed_same_buckets(self):
        a = make_index(seed=11)
        b = make_index(seed=11)
        vec = np.arange(1, DIM + 1, dtype=np.float32)
        self.assertEqual(a._signature(vec / np.linalg.norm(vec)), b._signature(vec / np.linalg.norm(vec)))


class TestRebuild(DatabaseTestCase):
    def test_rebuild_skips_duplicates_failures_and_missing_embeddings(self):
        self.insert_video("v1", status="ready", processing_index=8, embedding=encode_vector(unit(DIM, 0)))
        self.insert_video("v2", status="queued", processing_index=1)
        self.insert_video("v3", status="duplicate", processing_index=-1, duplicate_of="v1",
                          embedding=encode_vector(unit(DIM, 0)))
        self.insert_video("v4", status="failed", processing_index=6, embedding=encode_vector(unit(DIM, 1)))

        idx = make_index()
        self.assertEqual(idx.rebuild(self.db_path), 1)
        self.assertIn("v1", idx)
        self.assertNotIn("v3", idx)
        self.assertNotIn("v4", idx)


class TestDisjointSet(unittest.TestCase):
    def test_transitive_and_order_independent(self):
        keys = {
            "a": sort_key(T0 + timedelta(seconds=20), "a"),
            "b": sort_key(T0, "b"),
            "c": sort_key(T0 + timedelta(seconds=10), "c"),
        }
        edges = [("a", "b"), ("b", "c")]
        roots = set()
        for order in itertools.permutations(edges):
            for flip in itertools.product((False, True), repeat=len(order)):
                ds = DisjointSet()
                for node, key in keys.items():
                    ds.add(node, key)
                for (x, y), swap in zip(order, flip):
                    if swap:
                        x, y = y, x
                    ds.union(x, y)
                self.assertEqual({ds.find(n) for n in keys}, {"b"})
                roots.add(ds.find("a"))
        self.assertEqual(roots, {"b"})

    def test_members(self):
        ds = DisjointSet()
        for node in ("x", "y", "z"):
            ds.add(node, node)
        ds.union("z", "y")
        self.assertEqual(ds.members("y"), ["y", "z"])
        self.assertEqual(ds.members("x"), ["x"])

    def test_sort_key_orders_by_time_then_id(self):
        self.assertLess(sort_key(T0, "z"), sort_key(T0 + timedelta(seconds=1), "a"))
        self.assertLess(sort_key(T0, "a"), sort_key(T0, "b"))


if __name__ == "__main__":
    unittest.main()
