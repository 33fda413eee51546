"""FastAPI application exposing items, scans and session state."""
