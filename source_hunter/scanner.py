"""Scan orchestration: smart and deep crawls over one video's comments.

The ScanController drives the comment source page by page, scores every
returned comment, writes it through LocalStore and decides from the stored,
indexed view which threads to expand next.

State machine (per container):
    start(mode)  idle | paused | complete | error  ->  running
    cancel()     running                           ->  paused
    exhausted    running                           ->  complete
    raised       running                           ->  error

Smart scan: fetch thread pages until the token chain ends; after each page is
committed, expand every unexpanded thread scoring above the smart threshold
before moving on. Deep scan: one pass expanding every unexpanded thread.

Cancellation is cooperative. It is polled before each thread page and before
each thread expansion, and the run's CancelToken makes the RequestQueue drop
any of the run's requests that have not been dispatched yet. A request already
in flight always completes.

Error policy:
    QuotaExceededError        fatal, run -> error
    NetworkError (paging)     fatal, run -> error
    NetworkError (expansion)  thread skipped, replies_fetched left false, warning recorded
    RequestCancelled          run stays paused
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Set

import structlog

from source_hunter.analytics import AnalyticsSink, notify
from source_hunter.backend.db.connection import ScanSettings
from source_hunter.backend.utils.errors import (
    WarningsCollector,
    WARNING_TYPE_THREAD_EXPANSION_FAILED,
    WARNING_TYPE_ITEM_DETAILS_UNAVAILABLE,
)
from source_hunter.models.comment_models import (
    Comment, ItemMetadata, ScanState,
    SCAN_RUNNING, SCAN_PAUSED, SCAN_ERROR, SCAN_COMPLETE,
    MODE_SMART, VALID_MODES,
    ITEM_IDLE, ITEM_SCANNING_TOPLEVEL, ITEM_SCANNING_REPLIES, ITEM_COMPLETE,
)
from source_hunter.request_queue import CancelToken, RequestCancelled
from source_hunter.scoring import analyze
from source_hunter.storage import LocalStore
from source_hunter.youtube import CommentSourceError, NetworkError, YouTubeCommentSource, is_short_query

logger = structlog.get_logger()

ProgressCallback = Callable[[int], None]


class ScanAlreadyRunningError(Exception):
    """A scan is already active for this container."""
    pass


@dataclass
class _ScanRun:
    """Bookkeeping for one active run. Owned by the controller."""
    container_id: str
    key: str
    state: ScanState
    token: CancelToken = field(default_factory=CancelToken)
    warnings: WarningsCollector = field(default_factory=WarningsCollector)
    failed_threads: Set[str] = field(default_factory=set)
    on_progress: Optional[ProgressCallback] = None


class ScanController:
    """Runs smart and deep scans, at most one per container at a time.

    Attributes:
        source: Comment source (all calls go through its RequestQueue)
        store: LocalStore receiving every scored comment
        analytics: Optional best-effort AnalyticsSink
        settings: Scan tunables (smart threshold)

    Example:
        >>> controller = ScanController(source, store, analytics=sink)
        >>> state = await controller.start("dQw4w9WgXcQ", api_key, "smart")
        >>> state.status, state.fetched_count
        ('complete', 742)
    """

    def __init__(
        self,
        source: YouTubeCommentSource,
        store: LocalStore,
        analytics: Optional[AnalyticsSink] = None,
        settings: Optional[ScanSettings] = None
    ):
        self.source = source
        self.store = store
        self.analytics = analytics
        self.settings = settings or ScanSettings()
        self._active: Dict[str, _ScanRun] = {}
        self._states: Dict[str, ScanState] = {}

    def is_running(self, container_id: str) -> bool:
        return container_id in self._active

    def get_state(self, container_id: str) -> ScanState:
        """Return a snapshot of the container's latest ScanState (idle if never scanned)."""
        run = self._active.get(container_id)
        if run is not None:
            return replace(run.state, warnings=run.warnings.snapshot())
        state = self._states.get(container_id)
        if state is None:
            return ScanState()
        return replace(state, warnings=list(state.warnings))

    async def open_item(self, container_id: str, key: str, query: Optional[str] = None) -> Optional[ItemMetadata]:
        """Return stored metadata, fetching and storing it first if absent.

        When `query` is given (the URL or ID the user entered), the open is
        recorded in search history and the entry gets the item's title and
        thumbnail once metadata is known.

        Returns:
            ItemMetadata, or None when the remote reports no such item. None is
            not an error: the caller reports that item details could not be
            retrieved.

        Raises:
            QuotaExceededError, NetworkError: From the comment source
        """
        if query is not None:
            is_short = is_short_query(query)
            self.store.add_search_history(query, container_id, is_short=is_short)
            notify(self.analytics, "record_search_performed", container_id, is_short, len(query))

        meta = self.store.get_item_metadata(container_id)
        if meta is None:
            meta = await self.source.fetch_item_metadata(container_id, key)
            if meta is None:
                logger.warning("item_details_unavailable", container_id=container_id)
                return None
            self.store.put_item_metadata(meta)

        if query is not None:
            self.store.update_search_history_details(container_id, meta.title, meta.thumbnail_url)
        return meta

    async def start(
        self,
        container_id: str,
        key: str,
        mode: str = MODE_SMART,
        on_progress: Optional[ProgressCallback] = None
    ) -> ScanState:
        """Run a scan to completion, pause or error and return the final state.

        A fresh run always starts with fetched_count 0. Threads whose replies
        are already stored (replies_fetched) are not expanded again.

        Args:
            container_id: Video ID
            key: Pre-validated API key
            mode: "smart" or "deep"
            on_progress: Called with the number of comments written after each batch

        Raises:
            ValueError: Unknown mode
            ScanAlreadyRunningError: A scan for this container is active
        """
        if mode not in VALID_MODES:
            raise ValueError(f"Invalid scan mode '{mode}'. Must be one of: {', '.join(sorted(VALID_MODES))}")

        # Per-container guard; checked and taken before the first await
        if container_id in self._active:
            raise ScanAlreadyRunningError(f"A scan is already running for {container_id}")

        run = _ScanRun(
            container_id=container_id,
            key=key,
            state=ScanState(fetched_count=0, status=SCAN_RUNNING, mode=mode, error=None),
            on_progress=on_progress
        )
        self._active[container_id] = run
        self._states[container_id] = run.state

        logger.info("scan_started", container_id=container_id, mode=mode)
        notify(self.analytics, "record_scan_started", container_id, mode)

        try:
            if mode == MODE_SMART:
                await self._smart_scan(run)
            else:
                await self._deep_scan(run)

        except RequestCancelled:
            logger.info("scan_request_dropped_after_cancel", container_id=container_id)

        except CommentSourceError as e:
            self._fail(run, str(e))

        except asyncio.CancelledError:
            # Owning task torn down (e.g. shutdown): behave like a pause
            self._pause(run)
            raise

        except Exception as e:
            logger.error(
                "scan_failed_unexpectedly",
                container_id=container_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
            self._fail(run, f"Unexpected error: {e}")

        else:
            if not run.token.cancelled:
                run.state.status = SCAN_COMPLETE
                self.store.update_scan_status(container_id, ITEM_COMPLETE)
                self.store.update_search_history_results(container_id, run.state.fetched_count)
                logger.info(
                    "scan_completed",
                    container_id=container_id,
                    mode=mode,
                    fetched_count=run.state.fetched_count,
                    warnings=len(run.warnings)
                )
                notify(self.analytics, "record_scan_completed", container_id, mode, run.state.fetched_count)

        finally:
            run.state.warnings = run.warnings.snapshot()
            self._active.pop(container_id, None)

        return self.get_state(container_id)

    def cancel(self, container_id: str) -> ScanState:
        """Pause the running scan for a container.

        Takes effect immediately on the state; the loop stops at its next poll
        point and queued requests of the run are dropped. No-op unless running.
        """
        run = self._active.get(container_id)
        if run is None or run.state.status != SCAN_RUNNING:
            return self.get_state(container_id)

        self._pause(run)
        return self.get_state(container_id)

    def _pause(self, run: _ScanRun) -> None:
        if run.state.status != SCAN_RUNNING:
            return
        run.token.cancel()
        run.state.status = SCAN_PAUSED
        self.store.update_scan_status(run.container_id, ITEM_IDLE)
        logger.info("scan_paused", container_id=run.container_id, fetched_count=run.state.fetched_count)
        notify(self.analytics, "record_scan_paused", run.container_id)

    def _fail(self, run: _ScanRun, message: str) -> None:
        if run.token.cancelled:
            # Paused while the failing call was in flight; pause wins
            logger.info("scan_error_after_cancel_ignored", container_id=run.container_id, error=message)
            return

        run.state.status = SCAN_ERROR
        run.state.error = message
        self.store.update_scan_status(run.container_id, ITEM_IDLE)
        logger.error(
            "scan_failed",
            container_id=run.container_id,
            mode=run.state.mode,
            fetched_count=run.state.fetched_count,
            error=message
        )
        notify(self.analytics, "record_scan_error", run.container_id, message)

    def _persist(self, run: _ScanRun, comments: List[Comment]) -> int:
        """Score and commit one batch, then report progress."""
        for comment in comments:
            comment.score = analyze(comment.original_text).score

        written = self.store.upsert_comments(comments)
        if written:
            run.state.fetched_count += written
            notify(self.analytics, "record_comments_fetched", run.container_id, written)
            if run.on_progress is not None:
                run.on_progress(written)
        return written

    async def _ensure_metadata(self, run: _ScanRun) -> None:
        if self.store.get_item_metadata(run.container_id) is not None:
            return

        meta = await self.source.fetch_item_metadata(run.container_id, run.key, token=run.token)
        if meta is None:
            logger.warning("item_details_unavailable", container_id=run.container_id)
            run.warnings.append(
                WARNING_TYPE_ITEM_DETAILS_UNAVAILABLE,
                "Could not retrieve item details",
                {"container_id": run.container_id}
            )
            return
        self.store.put_item_metadata(meta)

    async def _smart_scan(self, run: _ScanRun) -> None:
        container_id = run.container_id
        await self._ensure_metadata(run)

        page_token: Optional[str] = None
        pages = 0

        while True:
            if run.token.cancelled:
                return

            self.store.update_scan_status(container_id, ITEM_SCANNING_TOPLEVEL)
            page = await self.source.fetch_thread_page(container_id, run.key, page_token, token=run.token)
            self._persist(run, page.comments)
            pages += 1

            # Page is committed; decide expansions from the stored view
            promising = [
                thread for thread in self.store.get_pending_threads(
                    container_id, min_score=self.settings.smart_score_threshold
                )
                if thread.id not in run.failed_threads
            ]

            logger.debug(
                "smart_scan_page_processed",
                container_id=container_id,
                page=pages,
                page_comments=len(page.comments),
                page_threads=sum(1 for c in page.comments if c.is_top_level),
                promising_threads=len(promising)
            )

            if promising:
                self.store.update_scan_status(container_id, ITEM_SCANNING_REPLIES)
            for thread in promising:
                if run.token.cancelled:
                    return
                await self._expand_thread(run, thread)

            page_token = page.next_page_token
            if page_token is None:
                return

    async def _deep_scan(self, run: _ScanRun) -> None:
        container_id = run.container_id
        threads = self.store.get_pending_threads(container_id)

        logger.info("deep_scan_threads_selected", container_id=container_id, thread_count=len(threads))
        self.store.update_scan_status(container_id, ITEM_SCANNING_REPLIES)

        for thread in threads:
            if run.token.cancelled:
                return
            await self._expand_thread(run, thread)

    async def _expand_thread(self, run: _ScanRun, thread: Comment) -> bool:
        """Paginate a thread's replies to exhaustion, then mark it fetched.

        A NetworkError skips the thread for the rest of this run and leaves its
        replies_fetched flag false so a later run retries it. Quota and cancel
        conditions propagate.

        Returns:
            True if the thread was fully expanded
        """
        page_token: Optional[str] = None
        reply_pages = 0

        try:
            while True:
                page = await self.source.fetch_reply_page(
                    thread.id, run.container_id, run.key, page_token, token=run.token
                )
                self._persist(run, page.comments)
                reply_pages += 1

                page_token = page.next_page_token
                if page_token is None:
                    break

        except NetworkError as e:
            run.failed_threads.add(thread.id)
            run.warnings.append(
                WARNING_TYPE_THREAD_EXPANSION_FAILED,
                str(e),
                {"container_id": run.container_id, "parent_id": thread.id, "pages_stored": reply_pages}
            )
            logger.warning(
                "thread_expansion_failed",
                container_id=run.container_id,
                parent_id=thread.id,
                pages_stored=reply_pages,
                error=str(e)
            )
            return False

        self.store.mark_replies_fetched(thread.id)
        logger.debug(
            "thread_expanded",
            container_id=run.container_id,
            parent_id=thread.id,
            reply_pages=reply_pages
        )
        return True
