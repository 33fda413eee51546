"""Comment data models for Source Hunter.

This module defines the data structures used throughout the crawl pipeline
(acquisition, scoring, storage) and the transient state reported to callers.

Data Models:
    Comment: one YouTube comment (top-level thread head or reply) with its score
    ItemMetadata: one row of video metadata per container
    Highlight / AnalysisResult: output of the relevance scoring engine
    ScanState: snapshot of a scan run (transient, never persisted)
    SessionState: explicit session value (API key, active tab, open container)
    SearchHistoryEntry: one opened item, enriched with title and result count later

These models use dataclasses for simplicity and map cleanly to the SQLite schema
in backend/db/schema.sql.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

# Scan run statuses
SCAN_IDLE = "idle"
SCAN_RUNNING = "running"
SCAN_PAUSED = "paused"
SCAN_ERROR = "error"
SCAN_COMPLETE = "complete"

# Scan modes
MODE_SMART = "smart"
MODE_DEEP = "deep"
VALID_MODES = {MODE_SMART, MODE_DEEP}

# Persisted item scan_status values
ITEM_IDLE = "idle"
ITEM_SCANNING_TOPLEVEL = "scanning_toplevel"
ITEM_SCANNING_REPLIES = "scanning_replies"
ITEM_COMPLETE = "complete"

# Highlight kinds
KIND_SOURCE = "source"
KIND_HELPER = "helper"
KIND_BRACKET = "bracket"


@dataclass
class Comment:
    """A YouTube comment with crawl flags and relevance score.

    Attributes:
        id: Globally unique YouTube comment ID
        parent_id: ID of the thread's top-level comment (None for top-level)
        container_id: Video ID the comment belongs to
        author_name: Display name of the author
        author_avatar_url: Profile image URL of the author
        display_text: Text as rendered by YouTube
        original_text: Plain text used for scoring and search
        like_count: Number of likes (non-negative)
        reply_count: Reported reply total (top-level only, 0 for replies)
        published_at: ISO 8601 publish timestamp as returned by the API
        pinned: Whether the comment is pinned
        replies_fetched: True once the thread's replies are fully stored
        score: Relevance score 0-100 from scoring.analyze()
    """
    id: str
    parent_id: Optional[str]
    container_id: str
    author_name: str
    author_avatar_url: str
    display_text: str
    original_text: str
    like_count: int = 0
    reply_count: int = 0
    published_at: str = ""
    pinned: bool = False
    replies_fetched: bool = False
    score: int = 0

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemMetadata:
    """Metadata for one video (container).

    Attributes:
        container_id: YouTube video ID
        title: Video title
        thumbnail_url: Medium thumbnail URL
        total_comment_count: Comment total reported by the statistics part
        last_scanned_at: ISO 8601 UTC timestamp of the last fetch/scan update
        scan_status: One of idle, scanning_toplevel, scanning_replies, complete
    """
    container_id: str
    title: str
    thumbnail_url: str
    total_comment_count: int
    last_scanned_at: Optional[str] = None
    scan_status: str = ITEM_IDLE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Highlight:
    """A span [start, end) over a comment's text, tagged by the heuristic that found it."""
    start: int
    end: int
    kind: str


@dataclass(frozen=True)
class AnalysisResult:
    """Relevance score (0-100) and raw highlight spans for one text."""
    score: int
    highlights: tuple = ()


@dataclass
class ScanState:
    """Snapshot of a scan run.

    fetched_count only grows within a run and is reset by start(). error is set
    only while status is "error". warnings lists non-fatal thread expansion
    failures recorded during the run.
    """
    fetched_count: int = 0
    status: str = SCAN_IDLE
    mode: Optional[str] = None
    error: Optional[str] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionState:
    """Explicit session value passed to components that need it.

    Replaces ambient browser storage: the API key the user entered, the last
    active tab and the container currently open.
    """
    api_key: Optional[str] = None
    active_tab: str = "search"
    container_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchHistoryEntry:
    """One opened item, as recorded in search_history.

    Attributes:
        id: Row id (None until stored)
        query: The URL or ID the user entered
        container_id: Video ID it resolved to
        is_short: True when the query was a shorts/ URL or a bare ID
        title: Video title, filled in once metadata is known
        thumbnail_url: Thumbnail, filled in with the title
        results_count: Comments fetched by the last completed scan
        searched_at: ISO 8601 UTC timestamp
    """
    query: str
    container_id: str
    is_short: bool = False
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    results_count: Optional[int] = None
    searched_at: str = ""
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
