"""
Shared pytest fixtures for Source Hunter tests.

These fixtures provide temporary databases with the schema applied, a store,
comment factories and an in-memory comment source that routes every call
through a real RequestQueue, so cancellation and ordering behave as they do
against the live API.
"""

import os
import tempfile
from typing import Callable, Dict, List, Optional

import pytest

VIDEO_ID = "dQw4w9WgXcQ"
OTHER_VIDEO_ID = "9bZkp7q19f0"


@pytest.fixture
def temp_db_path():
    """Provide a temporary database file path that is cleaned up after test."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    if os.path.exists(db_path):
        os.unlink(db_path)
    # Also cleanup WAL files if they exist
    for suffix in ['-wal', '-shm']:
        wal_file = db_path + suffix
        if os.path.exists(wal_file):
            os.unlink(wal_file)


@pytest.fixture
def db_conn(temp_db_path):
    """Provide an open connection with the schema and default config applied."""
    from source_hunter.backend.db.connection import init_schema, open_connection

    conn = open_connection(temp_db_path)
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(db_conn):
    from source_hunter.storage import LocalStore
    return LocalStore(db_conn)


@pytest.fixture
def make_comment() -> Callable:
    """Factory for Comment objects. Score defaults to analyze(text)."""
    from source_hunter.models.comment_models import Comment
    from source_hunter.scoring import analyze

    def _make(comment_id, text="", parent_id=None, container_id=VIDEO_ID,
              like_count=0, reply_count=0, score=None, replies_fetched=False):
        return Comment(
            id=comment_id,
            parent_id=parent_id,
            container_id=container_id,
            author_name=f"author-{comment_id}",
            author_avatar_url="",
            display_text=text,
            original_text=text,
            like_count=like_count,
            reply_count=reply_count,
            published_at="2026-01-01T00:00:00Z",
            replies_fetched=replies_fetched,
            score=analyze(text).score if score is None else score
        )

    return _make


@pytest.fixture
def make_metadata() -> Callable:
    from source_hunter.models.comment_models import ItemMetadata

    def _make(container_id=VIDEO_ID, title="Opening 4", total=42):
        return ItemMetadata(
            container_id=container_id,
            title=title,
            thumbnail_url=f"https://i.ytimg.com/vi/{container_id}/mqdefault.jpg",
            total_comment_count=total
        )

    return _make


class FakeCommentSource:
    """In-memory comment source with the YouTubeCommentSource call surface.

    Thread pages are served in order with tokens "page-1", "page-2"...
    reply_pages maps parent_id to a list of reply batches, or to an exception
    instance that every fetch for that thread raises. Every call is enqueued on
    the real RequestQueue with the caller's CancelToken.

    Attributes:
        calls: ("metadata"|"threads"|"replies", id, page_token) per dispatched call
        on_dispatch: Optional hook called with the call tuple inside the dispatch
    """

    def __init__(self, queue, metadata=None, thread_pages=None, reply_pages=None):
        self.queue = queue
        self.metadata = metadata
        self.thread_pages: List[List] = thread_pages or [[]]
        self.reply_pages: Dict[str, object] = reply_pages or {}
        self.calls: List[tuple] = []
        self.on_dispatch: Optional[Callable] = None

    async def _dispatch(self, call, produce, token):
        async def _task():
            self.calls.append(call)
            if self.on_dispatch is not None:
                result = self.on_dispatch(call)
                if hasattr(result, '__await__'):
                    await result
            return produce()

        return await self.queue.enqueue(_task, token=token)

    async def fetch_item_metadata(self, container_id, key, token=None):
        def _produce():
            if isinstance(self.metadata, Exception):
                raise self.metadata
            return self.metadata

        return await self._dispatch(("metadata", container_id, None), _produce, token)

    async def fetch_thread_page(self, container_id, key, page_token=None, token=None):
        from source_hunter.youtube import ThreadPage

        def _produce():
            index = 0 if page_token is None else int(page_token.split("-")[1])
            page = self.thread_pages[index]
            if isinstance(page, Exception):
                raise page
            next_token = f"page-{index + 1}" if index + 1 < len(self.thread_pages) else None
            return ThreadPage(comments=[_copy(c) for c in page], next_page_token=next_token)

        return await self._dispatch(("threads", container_id, page_token), _produce, token)

    async def fetch_reply_page(self, parent_id, container_id, key, page_token=None, token=None):
        from source_hunter.youtube import ThreadPage

        def _produce():
            batches = self.reply_pages.get(parent_id, [[]])
            if isinstance(batches, Exception):
                raise batches
            index = 0 if page_token is None else int(page_token.split("-")[1])
            next_token = f"replies-{index + 1}" if index + 1 < len(batches) else None
            return ThreadPage(comments=[_copy(c) for c in batches[index]], next_page_token=next_token)

        return await self._dispatch(("replies", parent_id, page_token), _produce, token)

    def calls_of(self, kind):
        return [call for call in self.calls if call[0] == kind]


def _copy(comment):
    from dataclasses import replace
    return replace(comment)


@pytest.fixture
def fake_source_factory():
    """Build a FakeCommentSource on a zero-interval RequestQueue."""
    from source_hunter.request_queue import RequestQueue

    def _make(**kwargs):
        return FakeCommentSource(RequestQueue(min_interval=0), **kwargs)

    return _make


@pytest.fixture
def scan_threads(make_comment):
    """One page of three threads and their replies.

    t-source scores 80, t-helper scores 50, t-plain scores 0; each has replies.
    """
    threads = [
        make_comment("t-source", "source: Ghost in the Shell", like_count=30, reply_count=3, score=0),
        make_comment("t-helper", "It's Cowboy Bebop", like_count=20, reply_count=2, score=0),
        make_comment("t-plain", "great video", like_count=90, reply_count=4, score=0),
    ]
    replies = {
        "t-source": [[make_comment(f"r-source-{i}", "thanks", parent_id="t-source", score=0) for i in range(3)]],
        "t-helper": [[make_comment(f"r-helper-{i}", "agreed", parent_id="t-helper", score=0) for i in range(2)]],
        "t-plain": [[make_comment(f"r-plain-{i}", "lol", parent_id="t-plain", score=0) for i in range(4)]],
    }
    return threads, replies


@pytest.fixture
def test_client(temp_db_path, monkeypatch, tmp_path):
    """Provide a FastAPI TestClient backed by a temporary database.

    Sets DB_PATH so the app lifespan connects to the temp database and creates
    the schema. Uses the context manager so lifespan startup/shutdown run.
    """
    from fastapi.testclient import TestClient

    monkeypatch.setenv('DB_PATH', temp_db_path)
    monkeypatch.setenv('LOG_DIR', str(tmp_path / "logs"))
    monkeypatch.delenv('YOUTUBE_API_KEY', raising=False)

    from source_hunter.api.app import app

    with TestClient(app) as client:
        yield client
