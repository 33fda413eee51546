"""Storage operations for comments, video metadata and session state.

This module owns every persisted row. Nothing outside it writes to the
comments or items tables; callers go through LocalStore's methods.

Read shapes (each with an explicit bound):
    get_candidates: (container_id, score) range, score in [1, 100], score descending
    browse_comments: (container_id, like_count) range, likes descending, at most 100 rows
    search_comments: case-insensitive substring of original_text, at most 50 rows
    get_pending_threads: unexpanded top-level threads, used by the scan controller

Write operations:
    upsert_comments: idempotent bulk upsert keyed by comment id (last write wins,
        except replies_fetched which never reverts to false)
    put_item_metadata: full replace keyed by container_id
    mark_replies_fetched: set a thread's replies_fetched flag
    reset_container: delete every comment and the metadata row of one container
    add_search_history / update_search_history_*: one row per opened item,
        enriched later with title, thumbnail and result count

Every write commits before returning, so a sequential caller always reads its
own writes.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional

import structlog

from source_hunter.models.comment_models import Comment, ItemMetadata, SearchHistoryEntry, SessionState

logger = structlog.get_logger()

BROWSE_PAGE_LIMIT = 100
SEARCH_RESULT_LIMIT = 50
SEARCH_MIN_QUERY_LENGTH = 2
DEFAULT_CANDIDATE_LIMIT = 200
SEARCH_HISTORY_LIMIT = 50
MIN_CANDIDATE_SCORE = 1
MAX_CANDIDATE_SCORE = 100

_COMMENT_COLUMNS = """
    id, parent_id, container_id, author_name, author_avatar_url, display_text,
    original_text, like_count, reply_count, published_at, pinned,
    replies_fetched, score
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


def _comment_from_row(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row['id'],
        parent_id=row['parent_id'],
        container_id=row['container_id'],
        author_name=row['author_name'],
        author_avatar_url=row['author_avatar_url'],
        display_text=row['display_text'],
        original_text=row['original_text'],
        like_count=row['like_count'],
        reply_count=row['reply_count'],
        published_at=row['published_at'],
        pinned=bool(row['pinned']),
        replies_fetched=bool(row['replies_fetched']),
        score=row['score']
    )


def _item_from_row(row: sqlite3.Row) -> ItemMetadata:
    return ItemMetadata(
        container_id=row['container_id'],
        title=row['title'],
        thumbnail_url=row['thumbnail_url'],
        total_comment_count=row['total_comment_count'],
        last_scanned_at=row['last_scanned_at'],
        scan_status=row['scan_status']
    )


def _history_from_row(row: sqlite3.Row) -> SearchHistoryEntry:
    return SearchHistoryEntry(
        id=row['id'],
        query=row['query'],
        container_id=row['container_id'],
        is_short=bool(row['is_short']),
        title=row['title'],
        thumbnail_url=row['thumbnail_url'],
        results_count=row['results_count'],
        searched_at=row['searched_at']
    )


class LocalStore:
    """Indexed SQLite storage for comments and item metadata.

    The connection must already carry the schema (see connection.init_schema).
    A Unicode-aware casefold() SQL function is registered on it for keyword
    search.

    Attributes:
        version: Incremented after every committed write; watch() uses it to
            detect changes.

    Example:
        >>> store = LocalStore(conn)
        >>> store.upsert_comments(comments)
        >>> store.get_candidates('dQw4w9WgXcQ', limit=20)
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.version = 0
        conn.create_function("casefold", 1, _casefold, deterministic=True)

    def _committed(self) -> None:
        self.conn.commit()
        self.version += 1

    # Writes

    def upsert_comments(self, comments: Iterable[Comment]) -> int:
        """Insert or update a batch of comments in one transaction.

        Conflicting fields take the incoming values, except replies_fetched which
        is OR-ed with the stored flag so a completed thread is never reopened by
        a later thread-page fetch.

        Args:
            comments: Comments to store (any iterable)

        Returns:
            Number of comments written
        """
        rows = [
            (
                c.id, c.parent_id, c.container_id, c.author_name, c.author_avatar_url,
                c.display_text, c.original_text, c.like_count, c.reply_count,
                c.published_at, int(c.pinned), int(c.replies_fetched), c.score
            )
            for c in comments
        ]
        if not rows:
            return 0

        try:
            self.conn.executemany(f"""
                INSERT INTO comments ({_COMMENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    parent_id = excluded.parent_id,
                    container_id = excluded.container_id,
                    author_name = excluded.author_name,
                    author_avatar_url = excluded.author_avatar_url,
                    display_text = excluded.display_text,
                    original_text = excluded.original_text,
                    like_count = excluded.like_count,
                    reply_count = excluded.reply_count,
                    published_at = excluded.published_at,
                    pinned = excluded.pinned,
                    replies_fetched = MAX(comments.replies_fetched, excluded.replies_fetched),
                    score = excluded.score
            """, rows)
            self._committed()
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error("comment_upsert_failed", batch_size=len(rows), error=str(e))
            raise

        logger.debug("comments_upserted", batch_size=len(rows))
        return len(rows)

    def put_item_metadata(self, meta: ItemMetadata) -> None:
        """Replace the metadata row for meta.container_id (no field merging)."""
        self.conn.execute("""
            INSERT OR REPLACE INTO items (
                container_id, title, thumbnail_url, total_comment_count,
                last_scanned_at, scan_status
            )
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            meta.container_id,
            meta.title,
            meta.thumbnail_url,
            meta.total_comment_count,
            meta.last_scanned_at,
            meta.scan_status
        ))
        self._committed()
        logger.info("item_metadata_stored", container_id=meta.container_id)

    def update_scan_status(self, container_id: str, scan_status: str) -> bool:
        """Set scan_status and last_scanned_at on an existing metadata row.

        Returns:
            False if the container has no metadata row
        """
        cursor = self.conn.execute("""
            UPDATE items
            SET scan_status = ?, last_scanned_at = ?
            WHERE container_id = ?
        """, (scan_status, _utc_now(), container_id))
        self._committed()
        return cursor.rowcount > 0

    def mark_replies_fetched(self, comment_id: str) -> bool:
        """Flag a thread as fully expanded.

        Returns:
            False if no comment with that id exists
        """
        cursor = self.conn.execute(
            "UPDATE comments SET replies_fetched = 1 WHERE id = ?",
            (comment_id,)
        )
        self._committed()
        return cursor.rowcount > 0

    def reset_container(self, container_id: str) -> int:
        """Delete every comment and the metadata row of one container.

        Idempotent; other containers are untouched.

        Returns:
            Number of comments deleted
        """
        try:
            cursor = self.conn.execute(
                "DELETE FROM comments WHERE container_id = ?", (container_id,)
            )
            deleted = cursor.rowcount
            self.conn.execute("DELETE FROM items WHERE container_id = ?", (container_id,))
            self._committed()
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error("container_reset_failed", container_id=container_id, error=str(e))
            raise

        logger.info("container_reset", container_id=container_id, comments_deleted=deleted)
        return deleted

    # Reads

    def get_item_metadata(self, container_id: str) -> Optional[ItemMetadata]:
        row = self.conn.execute(
            "SELECT * FROM items WHERE container_id = ?", (container_id,)
        ).fetchone()
        return _item_from_row(row) if row else None

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        row = self.conn.execute(
            f"SELECT {_COMMENT_COLUMNS} FROM comments WHERE id = ?", (comment_id,)
        ).fetchone()
        return _comment_from_row(row) if row else None

    def count_comments(self, container_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total FROM comments WHERE container_id = ?",
            (container_id,)
        ).fetchone()
        return row['total']

    def get_candidates(self, container_id: str, limit: int = DEFAULT_CANDIDATE_LIMIT) -> List[Comment]:
        """Rank comments of one container by score, highest first.

        Range query over (container_id, score) restricted to score in [1, 100];
        comments scoring 0 are never candidates.

        Args:
            container_id: Video ID
            limit: Maximum number of rows (caller-supplied bound)
        """
        if limit <= 0:
            return []
        rows = self.conn.execute(f"""
            SELECT {_COMMENT_COLUMNS}
            FROM comments
            WHERE container_id = ? AND score BETWEEN ? AND ?
            ORDER BY score DESC, like_count DESC, id
            LIMIT ?
        """, (container_id, MIN_CANDIDATE_SCORE, MAX_CANDIDATE_SCORE, limit)).fetchall()
        return [_comment_from_row(row) for row in rows]

    def browse_comments(self, container_id: str, limit: int = BROWSE_PAGE_LIMIT) -> List[Comment]:
        """Most-liked comments of one container, for exploratory browsing.

        Range query over (container_id, like_count), descending. The page bound
        is fixed at 100; larger limits are capped.
        """
        limit = max(0, min(limit, BROWSE_PAGE_LIMIT))
        if limit == 0:
            return []
        rows = self.conn.execute(f"""
            SELECT {_COMMENT_COLUMNS}
            FROM comments
            WHERE container_id = ? AND like_count >= 0
            ORDER BY like_count DESC, id
            LIMIT ?
        """, (container_id, limit)).fetchall()
        return [_comment_from_row(row) for row in rows]

    def search_comments(self, container_id: str, query: str, limit: int = SEARCH_RESULT_LIMIT) -> List[Comment]:
        """Case-insensitive substring search over original_text within one container.

        Queries shorter than 2 characters return an empty list. At most 50 rows.
        """
        if not query or len(query) < SEARCH_MIN_QUERY_LENGTH:
            return []
        limit = max(0, min(limit, SEARCH_RESULT_LIMIT))
        rows = self.conn.execute(f"""
            SELECT {_COMMENT_COLUMNS}
            FROM comments
            WHERE container_id = ? AND instr(casefold(original_text), ?) > 0
            ORDER BY score DESC, like_count DESC, id
            LIMIT ?
        """, (container_id, query.casefold(), limit)).fetchall()
        return [_comment_from_row(row) for row in rows]

    def get_pending_threads(self, container_id: str, min_score: Optional[int] = None) -> List[Comment]:
        """Top-level comments with replies that have not been fully expanded.

        Args:
            container_id: Video ID
            min_score: If given, only threads with score strictly greater than this

        Returns:
            Threads ordered by score then likes, highest first
        """
        query = f"""
            SELECT {_COMMENT_COLUMNS}
            FROM comments
            WHERE container_id = ?
              AND parent_id IS NULL
              AND replies_fetched = 0
              AND reply_count > 0
        """
        params: List[Any] = [container_id]
        if min_score is not None:
            query += " AND score > ?"
            params.append(min_score)
        query += " ORDER BY score DESC, like_count DESC, id"

        rows = self.conn.execute(query, params).fetchall()
        return [_comment_from_row(row) for row in rows]

    # Search history

    def add_search_history(
        self,
        query: str,
        container_id: str,
        is_short: bool = False,
        title: Optional[str] = None,
        thumbnail_url: Optional[str] = None
    ) -> int:
        """Record that an item was opened. Returns the new row id."""
        cursor = self.conn.execute("""
            INSERT INTO search_history (query, container_id, is_short, title, thumbnail_url, searched_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (query, container_id, int(is_short), title, thumbnail_url, _utc_now()))
        self._committed()
        logger.info("search_history_added", container_id=container_id, is_short=is_short)
        return cursor.lastrowid

    def _latest_history_id(self, container_id: str) -> Optional[int]:
        row = self.conn.execute("""
            SELECT id FROM search_history
            WHERE container_id = ?
            ORDER BY searched_at DESC, id DESC
            LIMIT 1
        """, (container_id,)).fetchone()
        return row['id'] if row else None

    def update_search_history_details(self, container_id: str, title: str, thumbnail_url: str) -> bool:
        """Fill title and thumbnail on the most recent entry for a container.

        Returns:
            False if the container was never opened
        """
        entry_id = self._latest_history_id(container_id)
        if entry_id is None:
            return False
        self.conn.execute(
            "UPDATE search_history SET title = ?, thumbnail_url = ? WHERE id = ?",
            (title, thumbnail_url, entry_id)
        )
        self._committed()
        return True

    def update_search_history_results(self, container_id: str, results_count: int) -> bool:
        """Set results_count on the most recent entry for a container."""
        entry_id = self._latest_history_id(container_id)
        if entry_id is None:
            return False
        self.conn.execute(
            "UPDATE search_history SET results_count = ? WHERE id = ?",
            (results_count, entry_id)
        )
        self._committed()
        logger.debug("search_history_results_updated", container_id=container_id, results_count=results_count)
        return True

    def get_search_history(self, limit: int = SEARCH_HISTORY_LIMIT) -> List[SearchHistoryEntry]:
        rows = self.conn.execute("""
            SELECT * FROM search_history
            ORDER BY searched_at DESC, id DESC
            LIMIT ?
        """, (limit,)).fetchall()
        return [_history_from_row(row) for row in rows]

    async def watch(
        self,
        query: Callable[..., Any],
        *args,
        interval: float = 0.5,
        **kwargs
    ) -> AsyncIterator[Any]:
        """Yield snapshots of a one-shot query whenever the store changes.

        The first snapshot is yielded immediately; afterwards the store's write
        version is polled every `interval` seconds and a fresh snapshot is
        yielded after each change. Closing the generator ends the subscription;
        calling watch() again restarts it.

        Example:
            >>> async for candidates in store.watch(store.get_candidates, video_id, limit=20):
            ...     render(candidates)
        """
        seen = self.version
        yield query(*args, **kwargs)

        while True:
            await asyncio.sleep(interval)
            if self.version != seen:
                seen = self.version
                yield query(*args, **kwargs)


class SessionStore:
    """Explicit init/read/clear persistence for the single SessionState row."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def init(self, state: SessionState) -> SessionState:
        self.conn.execute("""
            INSERT OR REPLACE INTO session_state (id, api_key, active_tab, container_id, updated_at)
            VALUES (1, ?, ?, ?, ?)
        """, (state.api_key, state.active_tab, state.container_id, _utc_now()))
        self.conn.commit()
        logger.info("session_state_saved", active_tab=state.active_tab,
                    container_id=state.container_id, has_api_key=state.api_key is not None)
        return state

    def read(self) -> SessionState:
        row = self.conn.execute(
            "SELECT api_key, active_tab, container_id FROM session_state WHERE id = 1"
        ).fetchone()
        if row is None:
            return SessionState()
        return SessionState(
            api_key=row['api_key'],
            active_tab=row['active_tab'],
            container_id=row['container_id']
        )

    def clear(self) -> None:
        self.conn.execute("DELETE FROM session_state")
        self.conn.commit()
        logger.info("session_state_cleared")
