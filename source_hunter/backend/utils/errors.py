"""Error Handling Utilities

This module provides warning collection for non-fatal events during scan runs.
Fatal conditions (quota exhaustion, network failure while paging threads) are
exceptions raised by source_hunter.youtube; everything a run survives is
recorded here and surfaced on the run's ScanState.
"""

import json
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any


# Supported warning types (non-fatal)
WARNING_TYPE_THREAD_EXPANSION_FAILED = "thread_expansion_failed"
WARNING_TYPE_ITEM_DETAILS_UNAVAILABLE = "item_details_unavailable"

VALID_WARNING_TYPES = {
    WARNING_TYPE_THREAD_EXPANSION_FAILED,
    WARNING_TYPE_ITEM_DETAILS_UNAVAILABLE,
}


class WarningsCollector:
    """Thread-safe collector for non-fatal warnings during scan runs.

    Accumulates warning events with type, message, timestamp, and context.
    Supports serialization to JSON for logging or API responses.

    Example:
        >>> collector = WarningsCollector()
        >>> collector.append(
        ...     "thread_expansion_failed",
        ...     "Network Error: HTTP 500",
        ...     {"parent_id": "Ugx123", "container_id": "dQw4w9WgXcQ"}
        ... )
        >>> collector.to_json()
        '[{"type": "thread_expansion_failed", "message": "...", "timestamp": "...", "context": {...}}]'
    """

    def __init__(self):
        """Initialize an empty warnings collector."""
        self._warnings: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, warning_type: str, message: str, context: Dict[str, Any]) -> None:
        """Add a warning with type, message, timestamp, and context.

        Thread-safe via internal lock. Timestamp is auto-generated in ISO 8601 format (UTC).

        Args:
            warning_type: One of VALID_WARNING_TYPES
            message: Human-readable description of the warning
            context: Additional structured data (e.g., parent_id, container_id)

        Raises:
            ValueError: If warning_type is not in VALID_WARNING_TYPES
        """
        if warning_type not in VALID_WARNING_TYPES:
            raise ValueError(
                f"Invalid warning_type '{warning_type}'. "
                f"Must be one of: {', '.join(sorted(VALID_WARNING_TYPES))}"
            )

        warning = {
            "type": warning_type,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": context
        }

        with self._lock:
            self._warnings.append(warning)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Return a copy of the collected warnings."""
        with self._lock:
            return [dict(w) for w in self._warnings]

    def __len__(self) -> int:
        with self._lock:
            return len(self._warnings)

    def to_json(self) -> Optional[str]:
        """Serialize warnings to JSON array string.

        Returns:
            JSON array string of all warnings if any exist, None if no warnings collected.
        """
        with self._lock:
            if not self._warnings:
                return None
            return json.dumps(self._warnings)
