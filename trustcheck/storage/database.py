from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone

from trustcheck.models.types import (
    UNVERIFIED,
    Evidence,
    FactCheckResult,
    Post,
    PostEngagement,
    TrustSnapshot,
)

logger = logging.getLogger(__name__)

# subject type -> posts column that links a post to the subject
SUBJECT_COLUMNS = {"user": "author_id", "page": "page_id"}


def to_timestamp(value: datetime) -> str:
    """Serialise *value* as a fixed-width UTC ISO string so text order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Database:
    def __init__(self, db_path: str = "trustcheck.db") -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS posts (
                    id TEXT PRIMARY KEY,
                    author_id TEXT NOT NULL,
                    author_role TEXT DEFAULT 'user',
                    page_id TEXT,
                    text TEXT DEFAULT '',
                    image_url TEXT DEFAULT '',
                    created_at TEXT NOT NULL,
                    expires_at TEXT,
                    is_permanent INTEGER DEFAULT 0,
                    retention TEXT DEFAULT 'normal'
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS reactions (
                    post_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    PRIMARY KEY (post_id, user_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    post_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    text TEXT,
                    created_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS fact_check_results (
                    id TEXT PRIMARY KEY,
                    post_id TEXT NOT NULL,
                    claim TEXT DEFAULT '',
                    verdict TEXT NOT NULL,
                    confidence REAL DEFAULT 0,
                    topic TEXT DEFAULT '',
                    evidence_json TEXT DEFAULT '[]',
                    model TEXT DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS trust_snapshots (
                    subject_type TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    posts_checked INTEGER DEFAULT 0,
                    posts_true INTEGER DEFAULT 0,
                    posts_false INTEGER DEFAULT 0,
                    posts_misleading INTEGER DEFAULT 0,
                    score INTEGER DEFAULT 50,
                    conf_low INTEGER DEFAULT 0,
                    conf_high INTEGER DEFAULT 100,
                    tier TEXT DEFAULT 'provisional',
                    updated_at TEXT,
                    UNIQUE (subject_type, subject_id)
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_results_post "
                "ON fact_check_results (post_id, created_at)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_posts_author ON posts (author_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_posts_expires ON posts (expires_at)")
            self._conn.commit()

    # -- posts ---------------------------------------------------------------

    def save_post(self, post: Post) -> None:
        created_at = post.created_at or utcnow()
        post.created_at = created_at
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO posts "
                "(id, author_id, author_role, page_id, text, image_url, created_at, "
                "expires_at, is_permanent, retention) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    post.id,
                    post.author_id,
                    post.author_role,
                    post.page_id,
                    post.text,
                    post.image_url,
                    to_timestamp(created_at),
                    to_timestamp(post.expires_at) if post.expires_at else None,
                    int(post.is_permanent),
                    post.retention,
                ),
            )
            self._conn.commit()

    def get_post(self, post_id: str) -> Post | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM posts WHERE id = ?", (str(post_id),)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_post(row)

    def delete_post(self, post_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
            self._conn.execute("DELETE FROM reactions WHERE post_id = ?", (post_id,))
            self._conn.execute("DELETE FROM comments WHERE post_id = ?", (post_id,))
            self._conn.commit()
            return cursor.rowcount > 0

    def add_reaction(self, post_id: str, user_id: str, reaction_type: str = "like") -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO reactions (post_id, user_id, type) VALUES (?, ?, ?)",
                (post_id, user_id, reaction_type),
            )
            self._conn.commit()

    def add_comment(
        self, post_id: str, user_id: str, text: str, created_at: datetime | None = None
    ) -> str:
        comment_id = str(uuid.uuid4())
        with self._lock:
            self._conn.execute(
                "INSERT INTO comments (id, post_id, user_id, text, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (comment_id, post_id, user_id, text, to_timestamp(created_at or utcnow())),
            )
            self._conn.commit()
        return comment_id

    def get_engagement(self, post_id: str) -> PostEngagement | None:
        post = self.get_post(post_id)
        if post is None:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT "
                "(SELECT COUNT(*) FROM reactions WHERE post_id = :id) AS reactions, "
                "(SELECT COUNT(DISTINCT user_id) FROM reactions WHERE post_id = :id) AS uniq, "
                "(SELECT COUNT(*) FROM comments WHERE post_id = :id) AS comments",
                {"id": post_id},
            ).fetchone()
        return PostEngagement(
            post=post,
            reactions=row["reactions"],
            unique_reactors=row["uniq"],
            comments=row["comments"],
        )

    _ENGAGEMENT_SELECT = (
        "SELECT p.*, "
        "(SELECT COUNT(*) FROM reactions r WHERE r.post_id = p.id) AS reaction_count, "
        "(SELECT COUNT(DISTINCT r.user_id) FROM reactions r WHERE r.post_id = p.id) "
        "AS unique_count, "
        "(SELECT COUNT(*) FROM comments c WHERE c.post_id = p.id) AS comment_count "
        "FROM posts p "
    )

    def posts_for_retention(
        self, created_since: datetime, expiring_before: datetime, limit: int = 2000
    ) -> list[PostEngagement]:
        """Recently created posts plus posts expiring soon, with engagement counts.

        ``limit`` caps only the recent scan. Every post expiring before
        ``expiring_before`` is returned so none is purged unseen.
        """
        with self._lock:
            recent = self._conn.execute(
                self._ENGAGEMENT_SELECT
                + "WHERE p.created_at >= ? ORDER BY p.created_at DESC LIMIT ?",
                (to_timestamp(created_since), limit),
            ).fetchall()
            expiring = self._conn.execute(
                self._ENGAGEMENT_SELECT
                + "WHERE p.expires_at IS NOT NULL AND p.expires_at <= ? "
                "ORDER BY p.expires_at ASC",
                (to_timestamp(expiring_before),),
            ).fetchall()

        seen: set[str] = set()
        items: list[PostEngagement] = []
        for row in [*recent, *expiring]:
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            items.append(
                PostEngagement(
                    post=self._row_to_post(row),
                    reactions=row["reaction_count"],
                    unique_reactors=row["unique_count"],
                    comments=row["comment_count"],
                )
            )
        return items

    def update_retention(
        self,
        post_id: str,
        expires_at: datetime | None,
        is_permanent: bool,
        retention: str,
    ) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE posts SET expires_at = ?, is_permanent = ?, retention = ? WHERE id = ?",
                (
                    to_timestamp(expires_at) if expires_at else None,
                    int(is_permanent),
                    retention,
                    post_id,
                ),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def find_expired_posts(self, now: datetime, limit: int = 500) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM posts WHERE is_permanent = 0 "
                "AND expires_at IS NOT NULL AND expires_at <= ? "
                "ORDER BY expires_at ASC LIMIT ?",
                (to_timestamp(now), limit),
            ).fetchall()
        return [row["id"] for row in rows]

    def post_ids_for_author(self, author_id: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM posts WHERE author_id = ? ORDER BY created_at ASC",
                (author_id,),
            ).fetchall()
        return [row["id"] for row in rows]

    # -- fact-check results --------------------------------------------------

    def save_result(self, result: FactCheckResult) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO fact_check_results "
                "(id, post_id, claim, verdict, confidence, topic, evidence_json, model, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    result.id,
                    result.post_id,
                    result.claim,
                    result.verdict,
                    result.confidence,
                    result.topic,
                    json.dumps([e.to_dict() for e in result.evidence]),
                    result.model,
                    to_timestamp(result.created_at),
                ),
            )
            self._conn.commit()

    def latest_result(self, post_id: str) -> FactCheckResult | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM fact_check_results WHERE post_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (str(post_id),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_result(row)

    def has_result(self, post_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM fact_check_results WHERE post_id = ? LIMIT 1",
                (str(post_id),),
            ).fetchone()
        return row is not None

    def count_results(self, post_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM fact_check_results WHERE post_id = ?",
                (str(post_id),),
            ).fetchone()
        return row["n"]

    def find_stale_unverified(self, cutoff: datetime, limit: int) -> list[str]:
        """Post ids whose latest result is unverified and created at or before *cutoff*, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT r.post_id FROM fact_check_results r "
                "JOIN posts p ON p.id = r.post_id "
                "WHERE r.rowid = ("
                "  SELECT r2.rowid FROM fact_check_results r2 WHERE r2.post_id = r.post_id "
                "  ORDER BY r2.created_at DESC, r2.rowid DESC LIMIT 1"
                ") "
                "AND r.verdict = ? AND r.created_at <= ? "
                "ORDER BY r.created_at ASC LIMIT ?",
                (UNVERIFIED, to_timestamp(cutoff), limit),
            ).fetchall()
        return [row["post_id"] for row in rows]

    def list_results(
        self,
        verdicts: list[str] | None = None,
        min_conf: float | None = None,
        max_conf: float | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[dict], int]:
        clauses: list[str] = []
        params: list = []
        if verdicts:
            clauses.append(f"r.verdict IN ({', '.join('?' for _ in verdicts)})")
            params.extend(verdicts)
        if min_conf is not None:
            clauses.append("r.confidence >= ?")
            params.append(min_conf)
        if max_conf is not None:
            clauses.append("r.confidence <= ?")
            params.append(max_conf)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM fact_check_results r {where}", params
            ).fetchone()["n"]
            rows = self._conn.execute(
                "SELECT r.id, r.created_at, r.verdict, r.confidence, r.topic, r.model, r.claim, "
                "r.post_id, p.text AS post_text, p.author_id "
                f"FROM fact_check_results r LEFT JOIN posts p ON p.id = r.post_id {where} "
                "ORDER BY r.created_at DESC, r.rowid DESC LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        items = [
            {
                "id": row["id"],
                "createdAt": row["created_at"],
                "verdict": row["verdict"],
                "confidence": row["confidence"],
                "topic": row["topic"],
                "model": row["model"],
                "claim": row["claim"],
                "postId": row["post_id"],
                "postText": row["post_text"],
                "authorId": row["author_id"],
            }
            for row in rows
        ]
        return items, total

    # -- trust snapshots -----------------------------------------------------

    def aggregate_verdicts(self, subject_type: str, subject_id: str) -> dict[str, int]:
        column = SUBJECT_COLUMNS[subject_type]
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS checked, "
                "COALESCE(SUM(CASE WHEN r.verdict = 'true' THEN 1 ELSE 0 END), 0) AS n_true, "
                "COALESCE(SUM(CASE WHEN r.verdict = 'false' THEN 1 ELSE 0 END), 0) AS n_false, "
                "COALESCE(SUM(CASE WHEN r.verdict = 'misleading' THEN 1 ELSE 0 END), 0) "
                "AS n_misleading "
                "FROM fact_check_results r JOIN posts p ON p.id = r.post_id "
                f"WHERE p.{column} = ?",
                (subject_id,),
            ).fetchone()
        return {
            "posts_checked": row["checked"],
            "posts_true": row["n_true"],
            "posts_false": row["n_false"],
            "posts_misleading": row["n_misleading"],
        }

    def upsert_snapshot(self, snapshot: TrustSnapshot) -> None:
        updated_at = snapshot.updated_at or utcnow()
        with self._lock:
            self._conn.execute(
                "INSERT INTO trust_snapshots "
                "(subject_type, subject_id, posts_checked, posts_true, posts_false, "
                "posts_misleading, score, conf_low, conf_high, tier, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (subject_type, subject_id) DO UPDATE SET "
                "posts_checked = excluded.posts_checked, "
                "posts_true = excluded.posts_true, "
                "posts_false = excluded.posts_false, "
                "posts_misleading = excluded.posts_misleading, "
                "score = excluded.score, "
                "conf_low = excluded.conf_low, "
                "conf_high = excluded.conf_high, "
                "tier = excluded.tier, "
                "updated_at = excluded.updated_at",
                (
                    snapshot.subject_type,
                    snapshot.subject_id,
                    snapshot.posts_checked,
                    snapshot.posts_true,
                    snapshot.posts_false,
                    snapshot.posts_misleading,
                    snapshot.score,
                    snapshot.conf_low,
                    snapshot.conf_high,
                    snapshot.tier,
                    to_timestamp(updated_at),
                ),
            )
            self._conn.commit()

    def get_snapshot(self, subject_type: str, subject_id: str) -> TrustSnapshot | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM trust_snapshots WHERE subject_type = ? AND subject_id = ?",
                (subject_type, subject_id),
            ).fetchone()
        if row is None:
            return None
        return TrustSnapshot(
            subject_type=row["subject_type"],
            subject_id=row["subject_id"],
            posts_checked=row["posts_checked"],
            posts_true=row["posts_true"],
            posts_false=row["posts_false"],
            posts_misleading=row["posts_misleading"],
            score=row["score"],
            conf_low=row["conf_low"],
            conf_high=row["conf_high"],
            tier=row["tier"],
            updated_at=from_timestamp(row["updated_at"]),
        )

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _row_to_post(row: sqlite3.Row) -> Post:
        return Post(
            id=row["id"],
            author_id=row["author_id"],
            author_role=row["author_role"] or "user",
            page_id=row["page_id"],
            text=row["text"] or "",
            image_url=row["image_url"] or "",
            created_at=from_timestamp(row["created_at"]),
            expires_at=from_timestamp(row["expires_at"]),
            is_permanent=bool(row["is_permanent"]),
            retention=row["retention"] or "normal",
        )

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> FactCheckResult:
        try:
            evidence = [Evidence.from_dict(e) for e in json.loads(row["evidence_json"] or "[]")]
        except (ValueError, TypeError, AttributeError):
            logger.warning("Unreadable evidence on result %s", row["id"])
            evidence = []
        return FactCheckResult(
            id=row["id"],
            post_id=row["post_id"],
            claim=row["claim"] or "",
            verdict=row["verdict"],
            confidence=row["confidence"],
            topic=row["topic"] or "",
            model=row["model"] or "",
            evidence=evidence,
            created_at=from_timestamp(row["created_at"]),
        )

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.commit()
                self._conn.close()
                logger.info("Database connection closed")
            except Exception as exc:
                logger.error("Error closing database: %s", exc)
