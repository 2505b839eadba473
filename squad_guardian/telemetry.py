"""Telemetry tracking for Squad Guardian."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    ROAST_ACTIVITY = "roast_activity"
    MISSION_LIFECYCLE = "mission_lifecycle"
    SETTLEMENT = "settlement"
    SYNC = "sync"
    ERROR_RATE = "error_rate"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry data for Squad Guardian."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path(os.getenv("SQUAD_GUARDIAN_TELEMETRY_DB", "telemetry.db"))
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # Flush to DB every 60 seconds
        self._last_flush = time.time()

    def _init_database(self):
        """Initialize telemetry database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_roast_activity(
        self,
        source: str,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Record latency/outcome information for a roast attempt."""

        metadata: Dict[str, Any] = {"duration_ms": duration_ms}
        if error:
            metadata["error"] = error
        self.record(
            MetricType.ROAST_ACTIVITY,
            source,
            duration_ms,
            tags={"success": "true" if success else "false"},
            metadata=metadata,
        )

    def track_mission_event(self, event: str, mission_id: str, **details: Any) -> None:
        """Track mission lifecycle transitions."""
        self.record(
            MetricType.MISSION_LIFECYCLE,
            event,
            1.0,
            tags={"mission_id": mission_id},
            metadata=details,
        )

    def track_settlement(
        self,
        mission_id: str,
        penalized: int,
        skipped: int,
        degraded: int,
        duration_ms: float,
    ) -> None:
        """Track the outcome of a settlement run."""
        self.record(
            MetricType.SETTLEMENT,
            "settlement",
            float(penalized),
            tags={"mission_id": mission_id},
            metadata={
                "skipped": skipped,
                "degraded_roasts": degraded,
                "duration_ms": duration_ms,
            },
        )

    def track_sync(self, action: str, success: bool, members: int = 0) -> None:
        """Track share-link export and import attempts."""
        self.record(
            MetricType.SYNC,
            action,
            1.0,
            tags={"success": str(success)},
            metadata={"members": members},
        )

    def track_error(self, error_type: str, error_details: Optional[str] = None):
        """Track errors and failures."""
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            metadata={"error_details": error_details} if error_details else {},
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Record internal health events such as the roast circuit opening."""

        tags = {}
        if source:
            tags["source"] = source

        metadata = {}
        if reason:
            metadata["reason"] = reason

        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags=tags,
            metadata=metadata,
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        # Auto-flush if buffer is getting large or enough time has passed
        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()

            logger.info(f"Flushed {len(self._metrics_buffer)} metrics to database")
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as e:
            logger.error(f"Failed to flush metrics: {e}")

    def get_roast_activity_summary(self, hours: int = 24) -> Dict[str, Dict[str, Any]]:
        """Summarise roast attempts per source over the given window."""

        self.flush()
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'true' THEN 1 ELSE 0 END) as success_count,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'false' THEN 1 ELSE 0 END) as failure_count,
                COUNT(*) as total_calls,
                AVG(value) as avg_duration
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [MetricType.ROAST_ACTIVITY.value, start_time])
            summary: Dict[str, Dict[str, Any]] = {}
            for row in cursor.fetchall():
                total = row[3] or 0
                successes = row[1] or 0
                summary[row[0]] = {
                    "total_calls": total,
                    "successes": successes,
                    "failures": row[2] or 0,
                    "success_rate": successes / total if total else 0.0,
                    "avg_duration_ms": row[4] or 0.0,
                }
            return summary

    def get_system_events(self, hours: int = 24, limit: int = 10) -> List[Dict[str, Any]]:
        """Return recent system events."""

        self.flush()
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                timestamp,
                json_extract(tags, '$.source') as source,
                json_extract(metadata, '$.reason') as reason
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [MetricType.SYSTEM_EVENT.value, start_time, limit])
            return [
                {
                    "event": row[0],
                    "timestamp": datetime.fromtimestamp(row[1]).isoformat(),
                    "source": row[2],
                    "reason": row[3],
                }
                for row in cursor.fetchall()
            ]


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


__all__ = ["MetricEvent", "MetricType", "TelemetryCollector", "get_telemetry"]
