"""Pydantic models for API request/response structures.

This module defines the standard response and error envelopes used across all API endpoints,
plus the request bodies and query parameters of the item, scan and session endpoints.

Response Structure:
    All successful responses use ResponseEnvelope with:
    - data: The actual response payload (any type)
    - meta: Metadata including timestamp, version, and optional total count

Error Structure:
    All error responses use ErrorEnvelope with:
    - error: ErrorDetail containing code and message
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class MetaModel(BaseModel):
    """Metadata included in all successful responses.

    Attributes:
        timestamp: ISO 8601 formatted UTC timestamp of the response
        version: API version string (currently hardcoded as "1.0")
        total: Optional total count of items
    """
    timestamp: str
    version: str
    total: Optional[int] = None


class ResponseEnvelope(BaseModel):
    """Standard response envelope for all successful API responses."""
    data: Any
    meta: MetaModel


class ErrorDetail(BaseModel):
    """Error details included in error responses.

    Attributes:
        code: Machine-readable error code (see responses.py for constants)
        message: Human-readable error message
    """
    code: str
    message: str


class ErrorEnvelope(BaseModel):
    """Standard error envelope for all error responses."""
    error: ErrorDetail


class ScanRequest(BaseModel):
    """Body of POST /items/{id}/scan."""
    mode: Literal["smart", "deep"] = "smart"


class OpenRequest(BaseModel):
    """Body of POST /items/{id}/open. `query` is the URL or ID as the user typed it."""
    query: Optional[str] = Field(default=None, min_length=1, max_length=2048)


class CandidateParams(BaseModel):
    """Query parameters for the candidate ranking endpoint.

    Without a limit the configured candidate_limit applies.
    """
    limit: Optional[int] = Field(default=None, ge=1, le=1000, description="Maximum candidates to return")


class BrowseParams(BaseModel):
    """Query parameters for the browse endpoint (page bound fixed at 100)."""
    limit: int = Field(default=100, ge=1, le=100, description="Maximum comments to return")


class HistoryParams(BaseModel):
    """Query parameters for the search history endpoint."""
    limit: int = Field(default=50, ge=1, le=200, description="Maximum entries to return")


class SessionUpdate(BaseModel):
    """Body of PUT /session. Replaces the whole session value."""
    api_key: Optional[str] = Field(default=None, description="Pre-validated API key")
    active_tab: str = Field(default="search", min_length=1, max_length=32)
    container_id: Optional[str] = None
