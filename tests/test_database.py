"""Tests for trustcheck.storage.database.Database."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from trustcheck.models.types import Evidence, FactCheckResult, Post, TrustSnapshot
from trustcheck.storage.database import to_timestamp

T0 = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def _result(result_id: str, post_id: str, verdict: str, minutes: int = 0, confidence: float = 0.8):
    return FactCheckResult(
        id=result_id,
        post_id=post_id,
        verdict=verdict,
        confidence=confidence,
        created_at=T0 + timedelta(minutes=minutes),
        claim="claim",
        model="test",
    )


class TestPosts:
    def test_save_and_get_post(self, temp_database):
        post = Post(id="p-1", author_id="u-1", text="hello", page_id="page-1", created_at=T0)
        temp_database.save_post(post)

        stored = temp_database.get_post("p-1")
        assert stored is not None
        assert stored.author_id == "u-1"
        assert stored.page_id == "page-1"
        assert stored.created_at == T0
        assert stored.expires_at is None
        assert stored.is_permanent is False

    def test_get_missing_post(self, temp_database):
        assert temp_database.get_post("nope") is None

    def test_engagement_counts_unique_reactors(self, temp_database, make_post):
        make_post("p-1")
        temp_database.add_reaction("p-1", "u-a")
        temp_database.add_reaction("p-1", "u-b", "love")
        temp_database.add_reaction("p-1", "u-a", "angry")
        temp_database.add_comment("p-1", "u-c", "nice")

        engagement = temp_database.get_engagement("p-1")
        assert engagement.reactions == 2
        assert engagement.unique_reactors == 2
        assert engagement.comments == 1

    def test_delete_post(self, temp_database, make_post):
        make_post("p-1")
        temp_database.add_reaction("p-1", "u-a")
        assert temp_database.delete_post("p-1") is True
        assert temp_database.get_post("p-1") is None
        assert temp_database.delete_post("p-1") is False

    def test_find_expired_skips_permanent(self, temp_database, make_post):
        make_post("old", expires_at=T0 - timedelta(hours=1))
        make_post("perm", expires_at=T0 - timedelta(hours=1), is_permanent=True)
        make_post("future", expires_at=T0 + timedelta(hours=1))
        assert temp_database.find_expired_posts(T0) == ["old"]

    def test_retention_limit_caps_recent_scan_only(self, temp_database, make_post):
        make_post("expiring", created_at=T0 - timedelta(hours=23), expires_at=T0 + timedelta(hours=1))
        make_post("new-1", created_at=T0)
        make_post("new-2", created_at=T0 - timedelta(minutes=5))

        items = temp_database.posts_for_retention(
            created_since=T0 - timedelta(days=8),
            expiring_before=T0 + timedelta(days=2),
            limit=2,
        )
        assert [item.post.id for item in items] == ["new-1", "new-2", "expiring"]


class TestResults:
    def test_latest_result_by_time(self, temp_database, make_post):
        make_post("p-1")
        temp_database.save_result(_result("r-1", "p-1", "unverified", minutes=0))
        temp_database.save_result(_result("r-2", "p-1", "false", minutes=5))

        latest = temp_database.latest_result("p-1")
        assert latest.id == "r-2"
        assert latest.verdict == "false"
        assert temp_database.count_results("p-1") == 2
        assert temp_database.has_result("p-1") is True
        assert temp_database.has_result("p-2") is False

    def test_latest_result_tie_breaks_on_insert_order(self, temp_database, make_post):
        make_post("p-1")
        temp_database.save_result(_result("r-1", "p-1", "unverified"))
        temp_database.save_result(_result("r-2", "p-1", "true"))
        assert temp_database.latest_result("p-1").id == "r-2"

    def test_evidence_round_trip(self, temp_database, make_post):
        make_post("p-1")
        result = _result("r-1", "p-1", "false")
        result.evidence = [Evidence(title="Model explanation", snippet="No.", stance="refute")]
        temp_database.save_result(result)
        assert temp_database.latest_result("p-1").evidence == result.evidence

    def test_find_stale_unverified(self, temp_database, make_post):
        make_post("p-old")
        make_post("p-new")
        make_post("p-resolved")
        temp_database.save_result(_result("r-1", "p-old", "unverified", minutes=0))
        temp_database.save_result(_result("r-2", "p-new", "unverified", minutes=120))
        temp_database.save_result(_result("r-3", "p-resolved", "unverified", minutes=0))
        temp_database.save_result(_result("r-4", "p-resolved", "true", minutes=1))

        stale = temp_database.find_stale_unverified(T0 + timedelta(minutes=60), limit=10)
        assert stale == ["p-old"]

    def test_find_stale_ignores_deleted_posts(self, temp_database, make_post):
        make_post("p-1")
        temp_database.save_result(_result("r-1", "p-1", "unverified"))
        temp_database.delete_post("p-1")
        assert temp_database.find_stale_unverified(T0 + timedelta(days=1), limit=10) == []

    def test_list_results_filters_and_pages(self, temp_database, make_post):
        make_post("p-1", text="first")
        for i, (verdict, conf) in enumerate(
            [("false", 0.9), ("true", 0.85), ("false", 0.5), ("opinion", 0.4)]
        ):
            temp_database.save_result(_result(f"r-{i}", "p-1", verdict, minutes=i, confidence=conf))

        items, total = temp_database.list_results(verdicts=["false"], min_conf=0.6)
        assert total == 1
        assert items[0]["id"] == "r-0"
        assert items[0]["postText"] == "first"

        items, total = temp_database.list_results(page=2, limit=3)
        assert total == 4
        assert [item["id"] for item in items] == ["r-0"]


class TestSnapshots:
    def test_aggregate_and_upsert(self, temp_database, make_post):
        make_post("p-1", author_id="u-1", page_id="pg-1")
        make_post("p-2", author_id="u-1")
        temp_database.save_result(_result("r-1", "p-1", "true"))
        temp_database.save_result(_result("r-2", "p-2", "misleading"))
        temp_database.save_result(_result("r-3", "p-2", "opinion", minutes=1))

        counts = temp_database.aggregate_verdicts("user", "u-1")
        assert counts == {
            "posts_checked": 3,
            "posts_true": 1,
            "posts_false": 0,
            "posts_misleading": 1,
        }
        assert temp_database.aggregate_verdicts("page", "pg-1")["posts_checked"] == 1

        temp_database.upsert_snapshot(TrustSnapshot("user", "u-1", score=40, updated_at=T0))
        temp_database.upsert_snapshot(TrustSnapshot("user", "u-1", score=55, updated_at=T0))
        snapshot = temp_database.get_snapshot("user", "u-1")
        assert snapshot.score == 55
        assert snapshot.updated_at == T0

    def test_timestamps_sort_as_text(self):
        earlier = to_timestamp(T0)
        later = to_timestamp(T0 + timedelta(microseconds=1))
        assert earlier < later
