"""YouTube Data API Integration Module

This module provides the comment source for Source Hunter: video metadata
lookup, top-level comment thread pages and reply pages, all routed through the
shared RequestQueue so the process never exceeds its outbound request rate.

Responses are mapped to Comment / ItemMetadata objects here. Scoring is left
to the caller (score is 0 on every returned Comment).
"""

import asyncio
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
import structlog

from source_hunter.analytics import AnalyticsSink, notify
from source_hunter.models.comment_models import Comment, ItemMetadata, ITEM_IDLE
from source_hunter.request_queue import CancelToken, RequestQueue

# Initialize logger
logger = structlog.get_logger()

DEFAULT_API_BASE = 'https://www.googleapis.com/youtube/v3'
DEFAULT_TIMEOUT_SEC = 30.0

PAGE_SIZE = 100

ENDPOINT_VIDEOS = 'videos'
ENDPOINT_COMMENT_THREADS = 'commentThreads'
ENDPOINT_COMMENTS = 'comments'

_RAW_VIDEO_ID = re.compile(r'^[a-zA-Z0-9_-]{11}$')
_VIDEO_URL = re.compile(r'^.*(youtu\.be/|v/|u/\w/|embed/|watch\?v=|&v=|shorts/)([^#&?]*).*')
_API_KEY_PATTERN = re.compile(r'AIza[A-Za-z0-9_-]{35}')
_URL_PATTERN = re.compile(r'https?://\S+')
_KEY_PARAM_PATTERN = re.compile(r'key=[^&\s]+')
_SHORTS_URL = re.compile(r'youtube\.com/shorts/', re.IGNORECASE)


class CommentSourceError(Exception):
    """Base error for failed remote comment API calls."""
    pass


class QuotaExceededError(CommentSourceError):
    """Remote forbidden-class response (HTTP 403). Fatal to the current scan."""
    pass


class NetworkError(CommentSourceError):
    """Any other non-success response, transport failure or unreadable body."""
    pass


@dataclass
class ThreadPage:
    """One page of comments plus the continuation token (None ends pagination)."""
    comments: List[Comment] = field(default_factory=list)
    next_page_token: Optional[str] = None


def extract_video_id(url: str) -> Optional[str]:
    """Extract an 11-character YouTube video ID from a URL or raw ID.

    Supports watch?v=, &v=, youtu.be/, embed/, v/, shorts/ and u/x/ URL shapes.

    Example:
        >>> extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=42")
        'dQw4w9WgXcQ'
        >>> extract_video_id("https://youtube.com/shorts/dQw4w9WgXcQ")
        'dQw4w9WgXcQ'
        >>> extract_video_id("not a video")
        None
    """
    if not url:
        return None

    clean_url = url.strip()

    if _RAW_VIDEO_ID.match(clean_url):
        return clean_url

    match = _VIDEO_URL.match(clean_url)
    if match and len(match.group(2)) == 11:
        return match.group(2)

    return None


def is_short_query(query: str) -> bool:
    """True when the text a user opened looks like a Short: a shorts/ URL or a bare ID."""
    return bool(_SHORTS_URL.search(query)) or bool(_RAW_VIDEO_ID.match(query.strip()))


def sanitize_error(message: str) -> str:
    """Strip API keys and URLs from an error message before it is logged or stored."""
    sanitized = _API_KEY_PATTERN.sub('[REDACTED_KEY]', message)
    sanitized = _URL_PATTERN.sub('[URL_REDACTED]', sanitized)
    sanitized = _KEY_PARAM_PATTERN.sub('key=[REDACTED_KEY]', sanitized)
    return sanitized


def map_api_comment(
    item: Dict[str, Any],
    container_id: str,
    parent_id: Optional[str],
    reply_count: int = 0
) -> Comment:
    """Map a YouTube comment resource to a Comment.

    Args:
        item: Comment resource (has "id" and "snippet")
        container_id: Video ID the comment belongs to
        parent_id: Top-level comment ID for replies, None for thread heads
        reply_count: Reported reply total (thread heads only)

    Returns:
        Comment with replies_fetched False and score 0
    """
    snippet = item.get('snippet') or {}
    return Comment(
        id=item['id'],
        parent_id=parent_id,
        container_id=container_id,
        author_name=snippet.get('authorDisplayName', ''),
        author_avatar_url=snippet.get('authorProfileImageUrl', ''),
        display_text=snippet.get('textDisplay', ''),
        original_text=snippet.get('textOriginal', ''),
        like_count=max(0, int(snippet.get('likeCount', 0))),
        reply_count=max(0, int(reply_count)),
        published_at=snippet.get('publishedAt', ''),
        pinned=False,
        replies_fetched=False,
        score=0
    )


def map_thread_item(item: Dict[str, Any], container_id: str) -> List[Comment]:
    """Map a commentThread resource to its head comment followed by inline replies.

    The head is marked replies_fetched only when inline replies are present and
    at least as many as its reported totalReplyCount.
    """
    thread_snippet = item['snippet']
    reply_count = int(thread_snippet.get('totalReplyCount', 0))
    head = map_api_comment(thread_snippet['topLevelComment'], container_id, None, reply_count)

    inline = (item.get('replies') or {}).get('comments') or []
    replies = [map_api_comment(reply, container_id, head.id) for reply in inline]

    if inline and len(inline) >= head.reply_count:
        head.replies_fetched = True

    return [head] + replies


class YouTubeCommentSource:
    """Comment source backed by the YouTube Data API v3.

    Every call goes through the shared RequestQueue; the blocking requests call
    runs in a worker thread so the event loop keeps serving. No retries are
    made here: QuotaExceededError and NetworkError propagate to the caller.

    Attributes:
        queue: Shared RequestQueue (sole gate for outbound calls)
        session: requests.Session used for HTTP
        api_base: API root URL (YOUTUBE_API_BASE env var overrides the default)
        timeout: Socket timeout in seconds (HTTP_TIMEOUT_SEC env var)
        analytics: Optional sink receiving record_api_call per dispatched request

    Example:
        >>> source = YouTubeCommentSource(RequestQueue())
        >>> page = await source.fetch_thread_page("dQw4w9WgXcQ", api_key)
        >>> len(page.comments), page.next_page_token
    """

    def __init__(
        self,
        queue: RequestQueue,
        session: Optional[requests.Session] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        analytics: Optional[AnalyticsSink] = None
    ):
        self.queue = queue
        self.session = session or requests.Session()
        self.api_base = (api_base or os.environ.get('YOUTUBE_API_BASE', DEFAULT_API_BASE)).rstrip('/')
        if timeout is None:
            timeout = float(os.environ.get('HTTP_TIMEOUT_SEC', DEFAULT_TIMEOUT_SEC))
        self.timeout = timeout
        self.analytics = analytics

    async def _get(
        self,
        endpoint: str,
        params: Dict[str, Any],
        container_id: Optional[str],
        token: Optional[CancelToken]
    ) -> Dict[str, Any]:
        async def _call():
            url = f"{self.api_base}/{endpoint}"
            try:
                response = await asyncio.to_thread(
                    self.session.get, url, params=params, timeout=self.timeout
                )
            except requests.RequestException as e:
                message = sanitize_error(str(e))
                logger.error(
                    "youtube_request_failed",
                    endpoint=endpoint,
                    container_id=container_id,
                    error=message,
                    error_type=type(e).__name__
                )
                raise NetworkError(f"Network Error: {message}") from e
            finally:
                notify(self.analytics, "record_api_call", endpoint, container_id)

            return self._parse_response(response, endpoint, container_id)

        return await self.queue.enqueue(_call, token=token)

    def _parse_response(
        self,
        response: requests.Response,
        endpoint: str,
        container_id: Optional[str]
    ) -> Dict[str, Any]:
        if response.status_code == 403:
            reason = self._error_reason(response)
            logger.error(
                "youtube_quota_exceeded",
                endpoint=endpoint,
                container_id=container_id,
                reason=reason
            )
            raise QuotaExceededError(f"Quota Exceeded ({reason})" if reason else "Quota Exceeded")

        if not response.ok:
            reason = self._error_reason(response)
            logger.error(
                "youtube_request_rejected",
                endpoint=endpoint,
                container_id=container_id,
                status_code=response.status_code,
                reason=reason
            )
            raise NetworkError(f"Network Error: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.error("youtube_response_unreadable", endpoint=endpoint, container_id=container_id)
            raise NetworkError("Network Error: unreadable response body") from e

        if not isinstance(data, dict):
            raise NetworkError("Network Error: unexpected response shape")
        return data

    @staticmethod
    def _error_reason(response: requests.Response) -> Optional[str]:
        try:
            error = response.json().get('error') or {}
            errors = error.get('errors') or []
            if errors and errors[0].get('reason'):
                return errors[0]['reason']
            return sanitize_error(error['message']) if error.get('message') else None
        except (ValueError, AttributeError, TypeError):
            return None

    async def fetch_item_metadata(
        self,
        container_id: str,
        key: str,
        token: Optional[CancelToken] = None
    ) -> Optional[ItemMetadata]:
        """Fetch title, thumbnail and comment total for one video.

        Args:
            container_id: YouTube video ID
            key: Pre-validated API key
            token: Optional cancellation token for the queued request

        Returns:
            ItemMetadata, or None when the video does not exist (not an error)

        Raises:
            QuotaExceededError: On HTTP 403
            NetworkError: On any other failure
        """
        data = await self._get(ENDPOINT_VIDEOS, {
            'part': 'snippet,statistics',
            'id': container_id,
            'key': key,
        }, container_id, token)

        items = data.get('items') or []
        if not items:
            logger.info("item_metadata_not_found", container_id=container_id)
            return None

        try:
            item = items[0]
            snippet = item['snippet']
            thumbnails = snippet.get('thumbnails') or {}
            thumbnail = thumbnails.get('medium') or thumbnails.get('default') or {}
            statistics = item.get('statistics') or {}

            meta = ItemMetadata(
                container_id=container_id,
                title=snippet.get('title', ''),
                thumbnail_url=thumbnail.get('url', ''),
                total_comment_count=int(statistics.get('commentCount') or 0),
                last_scanned_at=datetime.now(timezone.utc).isoformat(),
                scan_status=ITEM_IDLE
            )
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError("Network Error: unexpected video resource shape") from e

        logger.info(
            "item_metadata_fetched",
            container_id=container_id,
            total_comment_count=meta.total_comment_count
        )
        return meta

    async def fetch_thread_page(
        self,
        container_id: str,
        key: str,
        page_token: Optional[str] = None,
        token: Optional[CancelToken] = None
    ) -> ThreadPage:
        """Fetch one page of up to 100 top-level threads with their inline replies.

        Each thread may inline up to 5 replies. Thread heads whose inline replies
        already cover their reported reply count come back with
        replies_fetched=True; others need full expansion via fetch_reply_page.

        Returns:
            ThreadPage of heads (each followed by its inline replies) and the
            next page token (None on the last page)

        Raises:
            QuotaExceededError: On HTTP 403
            NetworkError: On any other failure
        """
        params = {
            'part': 'snippet,replies',
            'videoId': container_id,
            'maxResults': PAGE_SIZE,
            'textFormat': 'plainText',
            'key': key,
        }
        if page_token:
            params['pageToken'] = page_token

        data = await self._get(ENDPOINT_COMMENT_THREADS, params, container_id, token)

        comments: List[Comment] = []
        try:
            for item in data.get('items') or []:
                comments.extend(map_thread_item(item, container_id))
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError("Network Error: unexpected comment thread shape") from e

        next_token = data.get('nextPageToken') or None
        logger.debug(
            "thread_page_fetched",
            container_id=container_id,
            comment_count=len(comments),
            has_next_page=next_token is not None
        )
        return ThreadPage(comments=comments, next_page_token=next_token)

    async def fetch_reply_page(
        self,
        parent_id: str,
        container_id: str,
        key: str,
        page_token: Optional[str] = None,
        token: Optional[CancelToken] = None
    ) -> ThreadPage:
        """Fetch one page of up to 100 replies to a single top-level comment.

        Raises:
            QuotaExceededError: On HTTP 403
            NetworkError: On any other failure
        """
        params = {
            'part': 'snippet',
            'parentId': parent_id,
            'maxResults': PAGE_SIZE,
            'textFormat': 'plainText',
            'key': key,
        }
        if page_token:
            params['pageToken'] = page_token

        data = await self._get(ENDPOINT_COMMENTS, params, container_id, token)

        try:
            replies = [
                map_api_comment(item, container_id, parent_id)
                for item in data.get('items') or []
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError("Network Error: unexpected reply shape") from e

        next_token = data.get('nextPageToken') or None
        logger.debug(
            "reply_page_fetched",
            container_id=container_id,
            parent_id=parent_id,
            reply_count=len(replies),
            has_next_page=next_token is not None
        )
        return ThreadPage(comments=replies, next_page_token=next_token)
