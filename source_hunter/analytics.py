"""Analytics sinks for scan lifecycle and API usage events.

The scan controller, the comment source and the item routes report to an
AnalyticsSink on a best-effort basis: every call is wrapped by notify(), so a
failing sink can never change scan state or abort a request.

Implementations:
    NullAnalyticsSink: discards everything
    SqliteAnalyticsSink: appends rows to the analytics_events table
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import structlog

logger = structlog.get_logger()

EVENT_API_CALL = "api_call"
EVENT_COMMENTS_FETCHED = "comments_fetched"
EVENT_SCAN_STARTED = "scan_started"
EVENT_SCAN_COMPLETED = "scan_completed"
EVENT_SCAN_PAUSED = "scan_paused"
EVENT_SCAN_ERROR = "scan_error"
EVENT_SEARCH_PERFORMED = "search_performed"
EVENT_SEARCH_QUERY = "search_query"


class AnalyticsSink(Protocol):
    def record_api_call(self, endpoint: str, container_id: Optional[str]) -> None: ...

    def record_comments_fetched(self, container_id: str, count: int) -> None: ...

    def record_scan_started(self, container_id: str, mode: str) -> None: ...

    def record_scan_completed(self, container_id: str, mode: str, count: int) -> None: ...

    def record_scan_paused(self, container_id: str) -> None: ...

    def record_scan_error(self, container_id: str, message: str) -> None: ...

    def record_search_performed(self, container_id: str, is_short: bool, query_length: int) -> None: ...

    def record_search_query(self, container_id: str, query_length: int) -> None: ...


def notify(sink: Optional[AnalyticsSink], method: str, *args) -> None:
    """Call sink.<method>(*args), ignoring any failure.

    Example:
        >>> notify(sink, "record_scan_paused", "dQw4w9WgXcQ")
    """
    if sink is None:
        return
    try:
        getattr(sink, method)(*args)
    except Exception as e:
        logger.debug(
            "analytics_sink_failed",
            method=method,
            error=str(e),
            error_type=type(e).__name__
        )


class NullAnalyticsSink:
    """Sink that records nothing."""

    def record_api_call(self, endpoint, container_id):
        pass

    def record_comments_fetched(self, container_id, count):
        pass

    def record_scan_started(self, container_id, mode):
        pass

    def record_scan_completed(self, container_id, mode, count):
        pass

    def record_scan_paused(self, container_id):
        pass

    def record_scan_error(self, container_id, message):
        pass

    def record_search_performed(self, container_id, is_short, query_length):
        pass

    def record_search_query(self, container_id, query_length):
        pass


class SqliteAnalyticsSink:
    """Append-only event log in the analytics_events table.

    Each event stores its type, container id, a JSON metadata object and an
    ISO 8601 UTC timestamp.

    Example:
        >>> sink = SqliteAnalyticsSink(conn)
        >>> sink.record_scan_started("dQw4w9WgXcQ", "smart")
        >>> sink.count_events("scan_started")
        1
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _track(self, event_type: str, container_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        self.conn.execute("""
            INSERT INTO analytics_events (event_type, container_id, metadata, created_at)
            VALUES (?, ?, ?, ?)
        """, (
            event_type,
            container_id,
            json.dumps(metadata) if metadata else None,
            datetime.now(timezone.utc).isoformat()
        ))
        self.conn.commit()

    def record_api_call(self, endpoint: str, container_id: Optional[str]) -> None:
        self._track(EVENT_API_CALL, container_id, {"api_endpoint": endpoint})

    def record_comments_fetched(self, container_id: str, count: int) -> None:
        self._track(EVENT_COMMENTS_FETCHED, container_id, {"comment_count": count})

    def record_scan_started(self, container_id: str, mode: str) -> None:
        self._track(EVENT_SCAN_STARTED, container_id, {"scan_mode": mode})

    def record_scan_completed(self, container_id: str, mode: str, count: int) -> None:
        self._track(EVENT_SCAN_COMPLETED, container_id, {"scan_mode": mode, "comment_count": count})

    def record_scan_paused(self, container_id: str) -> None:
        self._track(EVENT_SCAN_PAUSED, container_id)

    def record_scan_error(self, container_id: str, message: str) -> None:
        self._track(EVENT_SCAN_ERROR, container_id, {"error": message})

    def record_search_performed(self, container_id: str, is_short: bool, query_length: int) -> None:
        content_type = "short" if is_short else "video"
        self._track(EVENT_SEARCH_PERFORMED, container_id, {"content_type": content_type, "query_length": query_length})

    def record_search_query(self, container_id: str, query_length: int) -> None:
        self._track(EVENT_SEARCH_QUERY, container_id, {"query_length": query_length})

    def count_events(self, event_type: str, container_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS total FROM analytics_events WHERE event_type = ?"
        params = [event_type]
        if container_id is not None:
            query += " AND container_id = ?"
            params.append(container_id)
        return self.conn.execute(query, params).fetchone()['total']
