"""Unit tests for the in-memory search index."""

import json
import unittest
from datetime import timedelta

from clipstream.models import Video, VideoStatus
from clipstream.search import SearchIndex, tokenize
from clipstream.testutil import T0, DatabaseTestCase, FakeClock


def make_video(video_id, title="", transcript="", tags=(), description="", uploaded_at=T0,
               likes=0, shares=0, stream_id="s1"):
    return Video(
        id=video_id,
        stream_id=stream_id,
        title=title,
        storage_key=f"uploads/{video_id}/raw.mp4",
        uploaded_at=uploaded_at,
        status=VideoStatus.READY,
        processing_index=8,
        description=description,
        transcript=[{"start": 0.0, "end": 5.0, "text": transcript}] if transcript else [],
        tags=list(tags),
        like_count=likes,
        share_count=shares,
    )


class SearchTestBase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(T0 + timedelta(days=1))
        self.index = SearchIndex(recency_weight=0.5, half_life_days=30, engagement_weight=0.1,
                                 clock=self.clock)

    def ids(self, query, **kwargs):
        return [h.video_id for h in self.index.search(query, **kwargs)]


class TestTokenize(unittest.TestCase):
    def test_lowercases_and_drops_stopwords(self):
        self.assertEqual(tokenize("The Sunset at the BEACH!"), ["sunset", "beach"])

    def test_drops_single_characters(self):
        self.assertEqual(tokenize("a b cd"), ["cd"])

    def test_empty(self):
        self.assertEqual(tokenize(None), [])


class TestRanking(SearchTestBase):
    def test_title_match_beats_transcript_match(self):
        self.index.upsert(make_video("v_trans", title="Evening beach", transcript="what a sunset"))
        self.index.upsert(make_video("v_title", title="Sunset beach", transcript="what a view"))
        self.assertEqual(self.ids("sunset"), ["v_title", "v_trans"])

    def test_repeated_query_same_order(self):
        for i in range(6):
            self.index.upsert(make_video(f"v{i}", title=f"concert clip {i}", transcript="crowd noise concert"))
        first = self.index.search("concert crowd")
        for _ in range(3):
            self.assertEqual(self.index.search("concert crowd"), first)

    def test_tie_goes_to_earlier_upload_then_lower_id(self):
        index = SearchIndex(recency_weight=0, engagement_weight=0, clock=self.clock)
        index.upsert(make_video("vc", title="goal replay", uploaded_at=T0 + timedelta(hours=1)))
        index.upsert(make_video("vb", title="goal replay", uploaded_at=T0))
        index.upsert(make_video("va", title="goal replay", uploaded_at=T0))
        self.assertEqual([h.video_id for h in index.search("goal")], ["va", "vb", "vc"])

    def test_newer_upload_ranks_higher(self):
        self.index.upsert(make_video("old", title="goal replay", uploaded_at=T0 - timedelta(days=90)))
        self.index.upsert(make_video("new", title="goal replay", uploaded_at=T0))
        self.assertEqual(self.ids("goal"), ["new", "old"])

    def test_engagement_boost(self):
        self.index.upsert(make_video("quiet", title="goal replay"))
        self.index.upsert(make_video("popular", title="goal replay", likes=40, shares=5))
        self.assertEqual(self.ids("goal"), ["popular", "quiet"])

    def test_update_engagement_reorders(self):
        self.index.upsert(make_video("a", title="goal replay"))
        self.index.upsert(make_video("b", title="goal replay"))
        self.assertEqual(self.ids("goal"), ["a", "b"])
        self.assertTrue(self.index.update_engagement("b", like_count=10, share_count=0))
        self.assertEqual(self.ids("goal"), ["b", "a"])

    def test_tags_and_description_are_searchable(self):
        self.index.upsert(make_video("t", title="clip", tags=["skateboard"]))
        self.index.upsert(make_video("d", title="clip", description="skateboard tricks"))
        self.assertEqual(self.ids("skateboard"), ["t", "d"])

    def test_stream_filter(self):
        self.index.upsert(make_video("v1", title="parade", stream_id="s1"))
        self.index.upsert(make_video("v2", title="parade", stream_id="s2"))
        self.assertEqual(self.ids("parade", stream_ids={"s2"}), ["v2"])
        self.assertEqual(self.ids("parade", stream_ids=set()), [])

    def test_query_without_terms(self):
        self.index.upsert(make_video("v1", title="parade"))
        self.assertEqual(self.index.search("the a"), [])

    def test_limit(self):
        for i in range(5):
            self.index.upsert(make_video(f"v{i}", title="parade"))
        self.assertEqual(len(self.index.search("parade", limit=2)), 2)

    def test_snippet_from_transcript(self):
        self.index.upsert(make_video("v1", title="clip", transcript="and then the fireworks started"))
        hit = self.index.search("fireworks")[0]
        self.assertIn("fireworks", hit.snippet)


class TestMaintenance(SearchTestBase):
    def test_remove(self):
        self.index.upsert(make_video("v1", title="parade float"))
        self.index.upsert(make_video("v2", title="parade"))
        self.assertTrue(self.index.remove("v1"))
        self.assertFalse(self.index.remove("v1"))
        self.assertEqual(self.ids("parade"), ["v2"])
        self.assertEqual(self.index.suggest("flo"), [])

    def test_upsert_replaces_document(self):
        self.index.upsert(make_video("v1", title="parade"))
        self.index.upsert(make_video("v1", title="marathon"))
        self.assertEqual(len(self.index), 1)
        self.assertEqual(self.ids("parade"), [])
        self.assertEqual(self.ids("marathon"), ["v1"])


class TestSuggestions(SearchTestBase):
    def test_prefix_ranked_by_frequency(self):
        self.index.upsert(make_video("v1", title="sunset sunrise", transcript="sunset sunset"))
        self.index.upsert(make_video("v2", title="sunday", transcript="sunset"))
        terms = [s["term"] for s in self.index.suggest("sun")]
        self.assertEqual(terms, ["sunset", "sunday", "sunrise"])
        self.assertEqual(self.index.suggest("sun")[0]["count"], 4)

    def test_limit_and_empty_prefix(self):
        self.index.upsert(make_video("v1", title="sunset sunrise sunday"))
        self.assertEqual(len(self.index.suggest("sun", limit=2)), 2)
        self.assertEqual(self.index.suggest("  "), [])
        self.assertEqual(self.index.suggest("zzz"), [])


class TestRebuild(DatabaseTestCase):
    def test_only_ready_videos_are_indexed(self):
        self.insert_video("v1", title="harbor lights", status="ready", processing_index=8,
                          transcript=json.dumps([{"start": 0, "end": 1, "text": "boats"}]))
        self.insert_video("v2", title="harbor fog", status="processing", processing_index=3)
        index = SearchIndex(clock=self.clock)
        self.assertEqual(index.rebuild(self.db_path), 1)
        self.assertEqual([h.video_id for h in index.search("harbor")], ["v1"])
        self.assertEqual([h.video_id for h in index.search("boats")], ["v1"])


if __name__ == "__main__":
    unittest.main()
