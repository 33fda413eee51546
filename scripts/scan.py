#!/usr/bin/env python3
"""Scan one YouTube video's comments and print the top source candidates.

Opens (or creates) the local database, fetches the video's metadata, runs a
smart or deep scan through the shared request queue, and prints the ranked
candidates with their highlighted spans. Ctrl-C pauses the scan; running the
command again resumes from the stored comments.

Usage:
    python scripts/scan.py <url-or-id> [--mode smart|deep] [--db data/source_hunter.db] [--top 20]

Requires env var: YOUTUBE_API_KEY (or --api-key)
"""

import argparse
import asyncio
import os
import sys

# Add project root to path so source_hunter.* imports work without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _load_dotenv():
    """Load .env file into os.environ if it exists."""
    env_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env")
    if os.path.exists(env_path):
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    os.environ.setdefault(key.strip(), value.strip())

_load_dotenv()


def _render(text: str, highlights) -> str:
    """Wrap highlighted spans in [[...]] for terminal output."""
    from source_hunter.scoring import highlight_segments

    parts = []
    for segment, kind in highlight_segments(text, highlights):
        parts.append(f"[[{segment}]]" if kind else segment)
    return "".join(parts).replace("\n", " ")


async def run_scan(video_id: str, key: str, mode: str, db_path: str, top: int, query: str) -> int:
    """Run one scan and print results. Returns the process exit code."""
    from source_hunter.analytics import SqliteAnalyticsSink
    from source_hunter.backend.db.connection import init_schema, load_scan_settings, open_connection
    from source_hunter.request_queue import RequestQueue
    from source_hunter.scanner import ScanController
    from source_hunter.scoring import analyze
    from source_hunter.storage import LocalStore
    from source_hunter.youtube import CommentSourceError, YouTubeCommentSource

    conn = open_connection(db_path)
    try:
        init_schema(conn)
        settings = load_scan_settings(conn)
        analytics = SqliteAnalyticsSink(conn)
        store = LocalStore(conn)
        source = YouTubeCommentSource(RequestQueue(settings.request_min_interval), analytics=analytics)
        controller = ScanController(source, store, analytics=analytics, settings=settings)

        try:
            meta = await controller.open_item(video_id, key, query=query)
        except CommentSourceError as e:
            print(f"Error: {e}")
            return 1

        if meta is None:
            print(f"Error: Could not retrieve video details for {video_id}")
            return 1

        print(f"{meta.title}")
        print(f"  {meta.total_comment_count} comments reported, {store.count_comments(video_id)} stored")
        print(f"Running {mode} scan...")

        def _progress(written: int) -> None:
            state = controller.get_state(video_id)
            print(f"  +{written} (fetched this run: {state.fetched_count})")

        scan_task = asyncio.create_task(controller.start(video_id, key, mode, on_progress=_progress))
        try:
            state = await asyncio.shield(scan_task)
        except (KeyboardInterrupt, asyncio.CancelledError):
            controller.cancel(video_id)
            state = await scan_task

        print(f"\nScan {state.status}: {state.fetched_count} comments fetched")
        if state.error:
            print(f"  Error: {state.error}")
        for warning in state.warnings:
            print(f"  Warning: {warning['message']} ({warning['context'].get('parent_id', '')})")

        candidates = store.get_candidates(video_id, limit=top)
        print(f"\nTop {len(candidates)} candidates:")
        for comment in candidates:
            result = analyze(comment.original_text)
            print(f"  [{comment.score:3d}] {comment.like_count:6d} likes  {comment.author_name}")
            print(f"        {_render(comment.original_text, result.highlights)[:200]}")

        return 0 if state.status in ("complete", "paused") else 2

    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(
        description="Scan a YouTube video's comments for source identifications"
    )
    parser.add_argument("video", help="Video URL or 11-character video ID")
    parser.add_argument("--mode", choices=["smart", "deep"], default="smart", help="Scan mode (default: smart)")
    parser.add_argument("--db", default=None, help="SQLite path (default: DB_PATH env or data/source_hunter.db)")
    parser.add_argument("--api-key", default=None, help="YouTube Data API key (default: YOUTUBE_API_KEY env)")
    parser.add_argument("--top", type=int, default=20, help="Number of candidates to print (default: 20)")
    args = parser.parse_args()

    from source_hunter.backend.db.connection import get_db_path
    from source_hunter.backend.utils.logging_config import setup_logging
    from source_hunter.youtube import extract_video_id

    setup_logging()

    video_id = extract_video_id(args.video)
    if video_id is None:
        print(f"Error: Not a YouTube video URL or ID: {args.video}")
        sys.exit(1)

    key = args.api_key or os.environ.get("YOUTUBE_API_KEY")
    if not key:
        print("Error: Missing YOUTUBE_API_KEY")
        print("Set it in your .env file, export it in your shell, or pass --api-key.")
        sys.exit(1)

    sys.exit(asyncio.run(run_scan(video_id, key, args.mode, get_db_path(args.db), args.top, args.video)))


if __name__ == "__main__":
    main()
