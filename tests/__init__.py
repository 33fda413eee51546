"""
Test suite for Source Hunter

Test Organization:
- test_scoring.py: Comment scoring and highlight resolution
- test_request_queue.py: FIFO dispatch, spacing and cancellation
- test_youtube_source.py: YouTube API client mapping and error classification
- test_storage.py: LocalStore upserts, queries, reset, watch and session state
- test_scanner.py: Smart/deep scans, cancel, error policy
- test_analytics.py: Analytics sinks
- test_api.py: FastAPI endpoints and error envelopes
- backend/utils/: Warning collection and logging configuration

Run all tests:
    python -m pytest tests/ -v
"""
