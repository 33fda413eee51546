"""Item (video) API endpoints: metadata, scans and comment queries.

This module provides:
- GET /items/history: Recently opened items, newest first
- GET /items/{id}: Stored metadata plus stored comment count
- POST /items/{id}/open: Fetch and store metadata if absent, record the open in history
- POST /items/{id}/scan: Start a smart or deep scan in the background
- POST /items/{id}/scan/cancel: Pause the running scan
- GET /items/{id}/scan: Current ScanState (polling endpoint)
- GET /items/{id}/candidates: Ranked candidate comments with highlights
- GET /items/{id}/comments: Most-liked comments (browse, max 100)
- GET /items/{id}/search: Case-insensitive substring search (max 50)
- DELETE /items/{id}: Remove every stored comment of the item

The API key for remote calls comes from the X-Api-Key header, then the stored
session, then the YOUTUBE_API_KEY environment variable.
"""

import asyncio
import os
from dataclasses import replace
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from source_hunter.analytics import notify
from source_hunter.api.models import BrowseParams, CandidateParams, HistoryParams, OpenRequest, ScanRequest
from source_hunter.api.responses import (
    wrap_response, raise_api_error,
    VALIDATION_ERROR, NOT_FOUND, ITEM_DETAILS_UNAVAILABLE, SCAN_ALREADY_RUNNING,
    QUOTA_EXCEEDED, YOUTUBE_API_ERROR,
)
from source_hunter.backend.utils.logging_config import get_logger
from source_hunter.models.comment_models import Comment
from source_hunter.scanner import ScanAlreadyRunningError
from source_hunter.scoring import analyze
from source_hunter.storage import SEARCH_MIN_QUERY_LENGTH
from source_hunter.youtube import QuotaExceededError, NetworkError, extract_video_id

router = APIRouter(prefix="/items", tags=["items"])
logger = get_logger(__name__)


def _validate_item_id(item_id: str) -> str:
    """Return the video ID or raise VALIDATION_ERROR."""
    video_id = extract_video_id(item_id)
    if video_id is None:
        raise_api_error(VALIDATION_ERROR, f"Invalid video ID: {item_id}")
    return video_id


def _resolve_api_key(request: Request, header_key: Optional[str]) -> str:
    """Pick the API key from header, session, or environment.

    Raises:
        HTTPException: VALIDATION_ERROR when no key is available
    """
    if header_key:
        return header_key

    stored = request.app.state.session.read().api_key
    if stored:
        return stored

    env_key = os.environ.get('YOUTUBE_API_KEY')
    if env_key:
        return env_key

    raise_api_error(VALIDATION_ERROR, "API key required: set X-Api-Key or store one in the session")


def _comment_with_highlights(comment: Comment) -> Dict[str, Any]:
    """Serialize a candidate with the highlight spans of its original text."""
    data = comment.to_dict()
    data['highlights'] = [
        {"start": h.start, "end": h.end, "kind": h.kind}
        for h in analyze(comment.original_text).highlights
    ]
    return data


def _scan_finished(tasks: Dict[str, asyncio.Task], container_id: str, task: asyncio.Task) -> None:
    if tasks.get(container_id) is task:
        tasks.pop(container_id)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "scan_task_failed",
            container_id=container_id,
            error=str(exc),
            error_type=type(exc).__name__
        )


@router.get("/history")
async def get_search_history(request: Request, params: HistoryParams = Depends()):
    """Recently opened items with their title and last result count."""
    entries = request.app.state.store.get_search_history(limit=params.limit)
    return wrap_response([e.to_dict() for e in entries], total=len(entries))


@router.get("/{item_id}")
async def get_item(request: Request, item_id: str):
    """Return stored metadata for an item.

    Returns:
        Response envelope with metadata and "stored_comments"

    Raises:
        HTTPException: NOT_FOUND if the item was never opened
    """
    video_id = _validate_item_id(item_id)
    store = request.app.state.store

    meta = store.get_item_metadata(video_id)
    if meta is None:
        raise_api_error(NOT_FOUND, f"Item {video_id} not found")

    data = meta.to_dict()
    data['stored_comments'] = store.count_comments(video_id)
    return wrap_response(data)


@router.post("/{item_id}/open")
async def open_item(
    request: Request,
    item_id: str,
    body: Optional[OpenRequest] = None,
    x_api_key: Optional[str] = Header(default=None)
):
    """Fetch item metadata if not stored yet and make it the session's open item.

    Every open is added to search history under body.query, or under the
    path id when no body is sent.

    Raises:
        HTTPException: ITEM_DETAILS_UNAVAILABLE, QUOTA_EXCEEDED or YOUTUBE_API_ERROR
    """
    video_id = _validate_item_id(item_id)
    key = _resolve_api_key(request, x_api_key)
    controller = request.app.state.controller

    try:
        query = body.query if body and body.query else item_id
        meta = await controller.open_item(video_id, key, query=query)
    except QuotaExceededError as e:
        raise_api_error(QUOTA_EXCEEDED, str(e))
    except NetworkError as e:
        raise_api_error(YOUTUBE_API_ERROR, str(e))

    if meta is None:
        raise_api_error(ITEM_DETAILS_UNAVAILABLE, f"Could not retrieve video details for {video_id}")

    session_store = request.app.state.session
    session_store.init(replace(session_store.read(), container_id=video_id))

    logger.info("item_opened", container_id=video_id, title=meta.title)
    return wrap_response(meta.to_dict())


@router.post("/{item_id}/scan", status_code=202)
async def start_scan(
    request: Request,
    item_id: str,
    scan: Optional[ScanRequest] = None,
    x_api_key: Optional[str] = Header(default=None)
):
    """Start a scan in the background and return the initial ScanState.

    Body:
        {"mode": "smart" | "deep"} (default smart)

    Raises:
        HTTPException: SCAN_ALREADY_RUNNING (409) if a scan for the item is active
    """
    video_id = _validate_item_id(item_id)
    mode = (scan or ScanRequest()).mode
    controller = request.app.state.controller
    tasks = request.app.state.scan_tasks

    existing = tasks.get(video_id)
    if controller.is_running(video_id) or (existing is not None and not existing.done()):
        raise_api_error(SCAN_ALREADY_RUNNING, f"A scan is already running for {video_id}")

    key = _resolve_api_key(request, x_api_key)

    task = asyncio.create_task(controller.start(video_id, key, mode))
    tasks[video_id] = task
    task.add_done_callback(lambda t: _scan_finished(tasks, video_id, t))

    # Let the run take its guard and enter the running state
    await asyncio.sleep(0)

    if task.done() and not task.cancelled() and isinstance(task.exception(), ScanAlreadyRunningError):
        raise_api_error(SCAN_ALREADY_RUNNING, f"A scan is already running for {video_id}")

    logger.info("scan_requested", container_id=video_id, mode=mode)
    return wrap_response(controller.get_state(video_id).to_dict())


@router.post("/{item_id}/scan/cancel")
async def cancel_scan(request: Request, item_id: str):
    """Pause the running scan. No-op when nothing is running."""
    video_id = _validate_item_id(item_id)
    state = request.app.state.controller.cancel(video_id)
    logger.info("scan_cancel_requested", container_id=video_id, status=state.status)
    return wrap_response(state.to_dict())


@router.get("/{item_id}/scan")
async def get_scan_state(request: Request, item_id: str):
    """Polling endpoint for scan progress.

    Returns:
        ScanState fields plus the stored item's scan_status ("idle" if unknown)
    """
    video_id = _validate_item_id(item_id)
    state = request.app.state.controller.get_state(video_id)
    meta = request.app.state.store.get_item_metadata(video_id)

    data = state.to_dict()
    data['item_status'] = meta.scan_status if meta else "idle"
    return wrap_response(data)


@router.get("/{item_id}/candidates")
async def get_candidates(
    request: Request,
    item_id: str,
    params: CandidateParams = Depends()
):
    """Candidate comments (score 1..100) ordered by score, then likes."""
    video_id = _validate_item_id(item_id)
    limit = params.limit or request.app.state.settings.candidate_limit
    candidates = request.app.state.store.get_candidates(video_id, limit=limit)

    logger.info("list_candidates_response", container_id=video_id, returned=len(candidates))
    return wrap_response([_comment_with_highlights(c) for c in candidates], total=len(candidates))


@router.get("/{item_id}/comments")
async def browse_comments(
    request: Request,
    item_id: str,
    params: BrowseParams = Depends()
):
    """Most-liked stored comments of the item."""
    video_id = _validate_item_id(item_id)
    comments = request.app.state.store.browse_comments(video_id, limit=params.limit)
    return wrap_response([c.to_dict() for c in comments], total=len(comments))


@router.get("/{item_id}/search")
async def search_comments(
    request: Request,
    item_id: str,
    q: str = Query(default="", max_length=200, description="Substring to find")
):
    """Case-insensitive substring search over original text.

    Queries shorter than two characters return an empty list.
    """
    video_id = _validate_item_id(item_id)
    if len(q) < SEARCH_MIN_QUERY_LENGTH:
        return wrap_response([], total=0)

    results = request.app.state.store.search_comments(video_id, q)
    notify(request.app.state.analytics, "record_search_query", video_id, len(q))
    return wrap_response([c.to_dict() for c in results], total=len(results))


@router.delete("/{item_id}")
async def reset_item(request: Request, item_id: str):
    """Delete every stored comment of the item. Refused while a scan runs."""
    video_id = _validate_item_id(item_id)
    if request.app.state.controller.is_running(video_id):
        raise_api_error(SCAN_ALREADY_RUNNING, f"Cannot reset {video_id} while a scan is running")

    deleted = request.app.state.store.reset_container(video_id)
    logger.info("item_reset", container_id=video_id, deleted=deleted)
    return wrap_response({"container_id": video_id, "deleted": deleted})
