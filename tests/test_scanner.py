"""
Tests for the scan controller.

Behavioral tests verifying:
- Smart scan expands only threads above the score threshold
- Deep scan expands every remaining thread
- Resumed scans never re-expand fetched threads
- Cancel pauses the run and stops further dispatch
- Quota and paging network failures end the run in error
- Reply expansion failures are skipped with a warning
- At most one scan per container
- Opening an item records search history, completed scans fill in the result count
- Lifecycle events reach the analytics sink, and sink failures never affect a scan
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from tests.conftest import VIDEO_ID


@pytest.fixture
def build_controller(store, make_metadata, fake_source_factory, scan_threads):
    """Return (controller, source) over the three-thread fixture page."""
    from source_hunter.backend.db.connection import ScanSettings
    from source_hunter.scanner import ScanController

    def _build(thread_pages=None, reply_pages=None, metadata="default", analytics=None):
        threads, replies = scan_threads
        source = fake_source_factory(
            metadata=make_metadata() if metadata == "default" else metadata,
            thread_pages=thread_pages if thread_pages is not None else [threads],
            reply_pages=reply_pages if reply_pages is not None else replies,
        )
        controller = ScanController(
            source, store, analytics=analytics,
            settings=ScanSettings(request_min_interval=0, smart_score_threshold=10)
        )
        return controller, source

    return _build


def _cancel_on_first_expansion(controller):
    """on_dispatch hook that pauses the scan when the first reply page is requested."""
    def _hook(call):
        if call[0] == "replies":
            controller.cancel(VIDEO_ID)
    return _hook


class TestSmartScan:
    """Smart scans page through threads and expand only promising ones."""

    @pytest.mark.asyncio
    async def test_expands_only_promising_threads(self, build_controller, store):
        """Threads scoring above the threshold are expanded; the rest stay pending."""
        controller, source = build_controller()

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "complete"
        assert state.error is None
        expanded = {call[1] for call in source.calls_of("replies")}
        assert expanded == {"t-source", "t-helper"}
        assert store.get_comment("t-source").replies_fetched is True
        assert store.get_comment("t-helper").replies_fetched is True
        assert store.get_comment("t-plain").replies_fetched is False
        # 3 heads + 3 + 2 replies
        assert state.fetched_count == 8
        assert store.count_comments(VIDEO_ID) == 8

    @pytest.mark.asyncio
    async def test_comments_are_scored_before_storage(self, build_controller, store):
        """Stored comments carry the score computed from their text."""
        controller, _ = build_controller()

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert store.get_comment("t-source").score == 80
        assert store.get_comment("t-helper").score == 50
        assert [c.id for c in store.get_candidates(VIDEO_ID)] == ["t-source", "t-helper"]

    @pytest.mark.asyncio
    async def test_item_marked_complete(self, build_controller, store):
        """A finished scan sets the item's scan_status to complete."""
        controller, _ = build_controller()

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert store.get_item_metadata(VIDEO_ID).scan_status == "complete"

    @pytest.mark.asyncio
    async def test_follows_page_tokens(self, build_controller, make_comment, store):
        """Each thread page request passes the previous page's token."""
        pages = [
            [make_comment("p1", "hello")],
            [make_comment("p2", "world")],
            [make_comment("p3", "again")],
        ]
        controller, source = build_controller(thread_pages=pages, reply_pages={})

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert [call[2] for call in source.calls_of("threads")] == [None, "page-1", "page-2"]
        assert state.fetched_count == 3

    @pytest.mark.asyncio
    async def test_reply_pagination_exhausted(self, build_controller, make_comment, store):
        """Reply pages are fetched until the token chain ends."""
        threads = [make_comment("t1", "sauce: Trigun", reply_count=150)]
        replies = {"t1": [
            [make_comment(f"r{i}", "x", parent_id="t1") for i in range(100)],
            [make_comment(f"r{i}", "y", parent_id="t1") for i in range(100, 150)],
        ]}
        controller, source = build_controller(thread_pages=[threads], reply_pages=replies)

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert [call[2] for call in source.calls_of("replies")] == [None, "replies-1"]
        assert store.count_comments(VIDEO_ID) == 151
        assert store.get_comment("t1").replies_fetched is True

    @pytest.mark.asyncio
    async def test_progress_callback_receives_batch_sizes(self, build_controller):
        """on_progress is called once per stored batch with its size."""
        controller, _ = build_controller()
        batches = []

        await controller.start(VIDEO_ID, "KEY", "smart", on_progress=batches.append)

        assert batches == [3, 3, 2]

    @pytest.mark.asyncio
    async def test_missing_metadata_is_a_warning(self, build_controller):
        """An item with no details still scans, with an item_details_unavailable warning."""
        controller, _ = build_controller(metadata=None)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "complete"
        assert [w["type"] for w in state.warnings] == ["item_details_unavailable"]

    @pytest.mark.asyncio
    async def test_resumed_scan_skips_fetched_threads(self, build_controller):
        """A second run re-pages threads but never re-expands fetched ones."""
        controller, source = build_controller()
        await controller.start(VIDEO_ID, "KEY", "smart")
        source.calls.clear()

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert source.calls_of("replies") == []
        assert state.fetched_count == 3
        assert state.status == "complete"


class TestDeepScan:
    """Deep scans expand every thread still pending."""

    @pytest.mark.asyncio
    async def test_expands_remaining_threads(self, build_controller, store):
        """After a smart scan, deep mode expands only the thread it skipped."""
        controller, source = build_controller()
        await controller.start(VIDEO_ID, "KEY", "smart")
        source.calls.clear()

        state = await controller.start(VIDEO_ID, "KEY", "deep")

        assert state.status == "complete"
        assert state.mode == "deep"
        assert [call[1] for call in source.calls_of("replies")] == ["t-plain"]
        assert state.fetched_count == 4
        assert store.get_comment("t-plain").replies_fetched is True
        assert store.get_pending_threads(VIDEO_ID) == []


class TestCancel:
    """Cancel pauses a running scan."""

    @pytest.mark.asyncio
    async def test_cancel_pauses_and_stops_dispatch(self, build_controller, store):
        """The in-flight request completes, nothing further is dispatched."""
        controller, source = build_controller()
        source.on_dispatch = _cancel_on_first_expansion(controller)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "paused"
        assert len(source.calls_of("replies")) == 1
        # The in-flight request still completes and is stored
        assert store.get_comment("t-source").replies_fetched is True
        assert state.fetched_count == 6
        assert store.get_item_metadata(VIDEO_ID).scan_status == "idle"

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, build_controller):
        """Cancelling with nothing running leaves the state idle."""
        controller, _ = build_controller()

        assert controller.cancel(VIDEO_ID).status == "idle"

    @pytest.mark.asyncio
    async def test_paused_scan_can_restart(self, build_controller, store):
        """A paused scan started again runs to completion."""
        controller, source = build_controller()
        source.on_dispatch = _cancel_on_first_expansion(controller)
        await controller.start(VIDEO_ID, "KEY", "smart")
        source.on_dispatch = None

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "complete"
        assert store.get_comment("t-helper").replies_fetched is True


class TestErrors:
    """Error policy of a scan run."""

    @pytest.mark.asyncio
    async def test_quota_ends_run_in_error(self, build_controller, store):
        """QuotaExceededError while paging ends the run with its message."""
        from source_hunter.youtube import QuotaExceededError

        controller, _ = build_controller(thread_pages=[QuotaExceededError("Quota Exceeded (quotaExceeded)")])

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "error"
        assert "Quota Exceeded" in state.error
        assert store.get_item_metadata(VIDEO_ID).scan_status == "idle"

    @pytest.mark.asyncio
    async def test_network_error_while_paging_is_fatal(self, build_controller, make_comment):
        """A failed thread page ends the run; earlier pages stay stored."""
        from source_hunter.youtube import NetworkError

        pages = [[make_comment("p1", "hello")], NetworkError("Network Error: HTTP 500")]
        controller, _ = build_controller(thread_pages=pages, reply_pages={})

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "error"
        assert state.fetched_count == 1

    @pytest.mark.asyncio
    async def test_expansion_failure_skips_thread(self, build_controller, scan_threads, store):
        """A failed reply fetch skips that thread for the run and records a warning."""
        from source_hunter.youtube import NetworkError

        threads, replies = scan_threads
        replies = dict(replies, **{"t-source": NetworkError("Network Error: HTTP 500")})
        controller, source = build_controller(thread_pages=[threads, []], reply_pages=replies)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "complete"
        assert store.get_comment("t-source").replies_fetched is False
        assert store.get_comment("t-helper").replies_fetched is True
        # Not retried on the second page within the same run
        assert [c[1] for c in source.calls_of("replies")].count("t-source") == 1
        assert state.warnings[0]["type"] == "thread_expansion_failed"
        assert state.warnings[0]["context"]["parent_id"] == "t-source"

    @pytest.mark.asyncio
    async def test_quota_during_expansion_is_fatal(self, build_controller, scan_threads):
        """Quota errors stay fatal even inside reply expansion."""
        from source_hunter.youtube import QuotaExceededError

        threads, replies = scan_threads
        replies = dict(replies, **{"t-source": QuotaExceededError("Quota Exceeded")})
        controller, _ = build_controller(reply_pages=replies)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "error"

    @pytest.mark.asyncio
    async def test_invalid_mode_rejected(self, build_controller):
        """Unknown scan modes raise ValueError before anything runs."""
        controller, _ = build_controller()

        with pytest.raises(ValueError):
            await controller.start(VIDEO_ID, "KEY", "thorough")


class TestConcurrency:
    """One scan per container at a time."""

    @pytest.mark.asyncio
    async def test_second_start_for_same_container_rejected(self, build_controller):
        """A second start while running raises ScanAlreadyRunningError."""
        from source_hunter.scanner import ScanAlreadyRunningError

        controller, source = build_controller()
        gate = asyncio.Event()
        source.on_dispatch = lambda call: gate.wait()

        first = asyncio.create_task(controller.start(VIDEO_ID, "KEY", "smart"))
        await asyncio.sleep(0.01)

        assert controller.is_running(VIDEO_ID)
        assert controller.get_state(VIDEO_ID).status == "running"
        with pytest.raises(ScanAlreadyRunningError):
            await controller.start(VIDEO_ID, "KEY", "deep")

        gate.set()
        state = await first

        assert state.status == "complete"
        assert not controller.is_running(VIDEO_ID)


class TestSearchHistory:
    """open_item records history entries that scans later enrich."""

    @pytest.mark.asyncio
    async def test_open_with_query_records_entry(self, build_controller, store):
        """The entry carries the typed query and the fetched title and thumbnail."""
        controller, _ = build_controller()
        query = f"https://youtube.com/shorts/{VIDEO_ID}"

        meta = await controller.open_item(VIDEO_ID, "KEY", query=query)

        entry = store.get_search_history()[0]
        assert entry.query == query
        assert entry.container_id == VIDEO_ID
        assert entry.is_short is True
        assert entry.title == meta.title == "Opening 4"
        assert entry.thumbnail_url == meta.thumbnail_url
        assert entry.results_count is None

    @pytest.mark.asyncio
    async def test_open_without_query_records_nothing(self, build_controller, store):
        """Internal opens without a query leave history untouched."""
        controller, _ = build_controller()

        await controller.open_item(VIDEO_ID, "KEY")

        assert store.get_search_history() == []

    @pytest.mark.asyncio
    async def test_missing_item_keeps_entry_without_title(self, build_controller, store):
        """An open whose details are unavailable is still recorded."""
        controller, _ = build_controller(metadata=None)

        meta = await controller.open_item(VIDEO_ID, "KEY", query=VIDEO_ID)

        assert meta is None
        entry = store.get_search_history()[0]
        assert entry.title is None

    @pytest.mark.asyncio
    async def test_completed_scan_sets_results_count(self, build_controller, store):
        """A completed scan writes its fetched count onto the latest entry."""
        controller, _ = build_controller()
        await controller.open_item(VIDEO_ID, "KEY", query=VIDEO_ID)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert store.get_search_history()[0].results_count == state.fetched_count == 8

    @pytest.mark.asyncio
    async def test_paused_scan_leaves_results_count(self, build_controller, store):
        """Only completed scans fill in the result count."""
        controller, source = build_controller()
        await controller.open_item(VIDEO_ID, "KEY", query=VIDEO_ID)
        source.on_dispatch = _cancel_on_first_expansion(controller)

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert store.get_search_history()[0].results_count is None

    @pytest.mark.asyncio
    async def test_search_performed_event(self, build_controller, db_conn):
        """Each recorded open emits search_performed."""
        from source_hunter.analytics import SqliteAnalyticsSink

        sink = SqliteAnalyticsSink(db_conn)
        controller, _ = build_controller(analytics=sink)

        await controller.open_item(VIDEO_ID, "KEY", query=VIDEO_ID)

        assert sink.count_events("search_performed", VIDEO_ID) == 1


class TestAnalytics:
    """Scan lifecycle events reach the sink; sink failures are ignored."""

    @pytest.mark.asyncio
    async def test_events_recorded(self, build_controller, db_conn):
        """A completed scan records started, completed and one fetched event per batch."""
        from source_hunter.analytics import SqliteAnalyticsSink

        sink = SqliteAnalyticsSink(db_conn)
        controller, _ = build_controller(analytics=sink)

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert sink.count_events("scan_started", VIDEO_ID) == 1
        assert sink.count_events("scan_completed", VIDEO_ID) == 1
        assert sink.count_events("comments_fetched", VIDEO_ID) == 3

    @pytest.mark.asyncio
    async def test_pause_recorded(self, build_controller, db_conn):
        """A cancelled scan records scan_paused and no scan_completed."""
        from source_hunter.analytics import SqliteAnalyticsSink

        sink = SqliteAnalyticsSink(db_conn)
        controller, source = build_controller(analytics=sink)
        source.on_dispatch = _cancel_on_first_expansion(controller)

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert sink.count_events("scan_paused", VIDEO_ID) == 1
        assert sink.count_events("scan_completed", VIDEO_ID) == 0

    @pytest.mark.asyncio
    async def test_error_recorded(self, build_controller, db_conn):
        """A quota failure records scan_error with the error message."""
        import json

        from source_hunter.analytics import SqliteAnalyticsSink
        from source_hunter.youtube import QuotaExceededError

        sink = SqliteAnalyticsSink(db_conn)
        controller, _ = build_controller(
            thread_pages=[QuotaExceededError("Quota Exceeded (quotaExceeded)")],
            analytics=sink
        )

        await controller.start(VIDEO_ID, "KEY", "smart")

        assert sink.count_events("scan_error", VIDEO_ID) == 1
        row = db_conn.execute(
            "SELECT metadata FROM analytics_events WHERE event_type = 'scan_error'"
        ).fetchone()
        assert "Quota Exceeded" in json.loads(row['metadata'])['error']

    @pytest.mark.asyncio
    async def test_failing_sink_is_ignored(self, build_controller):
        """A sink raising on the success path does not change the result."""
        sink = MagicMock()
        for method in ["record_scan_started", "record_comments_fetched", "record_scan_completed"]:
            getattr(sink, method).side_effect = RuntimeError("sink down")
        controller, _ = build_controller(analytics=sink)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "complete"
        assert state.fetched_count == 8

    @pytest.mark.asyncio
    async def test_failing_sink_on_pause_is_ignored(self, build_controller):
        """A sink raising in record_scan_paused still leaves the run paused."""
        sink = MagicMock()
        sink.record_scan_paused.side_effect = RuntimeError("sink down")
        controller, source = build_controller(analytics=sink)
        source.on_dispatch = _cancel_on_first_expansion(controller)

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "paused"
        sink.record_scan_paused.assert_called_once_with(VIDEO_ID)

    @pytest.mark.asyncio
    async def test_failing_sink_on_error_is_ignored(self, build_controller):
        """A sink raising in record_scan_error still reports the original error."""
        from source_hunter.youtube import QuotaExceededError

        sink = MagicMock()
        sink.record_scan_error.side_effect = RuntimeError("sink down")
        controller, _ = build_controller(
            thread_pages=[QuotaExceededError("Quota Exceeded (quotaExceeded)")],
            analytics=sink
        )

        state = await controller.start(VIDEO_ID, "KEY", "smart")

        assert state.status == "error"
        assert "Quota Exceeded" in state.error
        sink.record_scan_error.assert_called_once()
