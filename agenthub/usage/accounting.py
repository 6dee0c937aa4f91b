"""Per-agent usage counters.

Architectural role:
    Aggregates call counts and cumulative cost per agent for the status endpoints.
    State lives for the process lifetime; `save_snapshot` optionally writes it to
    disk on shutdown.

Concurrency:
    Every update and snapshot runs under one `threading.Lock`, so parallel requests
    never lose increments. No cross-agent transaction is needed.

Cost semantics:
    `None` means "no cost information" and is counted separately from a zero cost.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass

from agenthub.errors import InvalidArgument


logger = logging.getLogger(__name__)


@dataclass
class UsageRecord:
    calls: int = 0
    cumulative_cost: float = 0.0
    unpriced_calls: int = 0
    last_updated: float | None = None

    def to_dict(self):
        return {
            "calls": self.calls,
            "cumulativeCost": round(self.cumulative_cost, 8),
            "unpricedCalls": self.unpriced_calls,
            "lastUpdated": self.last_updated,
        }


class UsageAccounting:
    """Thread-safe per-agent usage aggregate."""

    def __init__(self):
        self._records = {}
        self._lock = threading.Lock()
        self._started_at = time.time()

    def record(self, agent_id, cost=None):
        """Count one call for `agent_id`.

        Args:
            agent_id: Agent that served the call.
            cost: Non-negative cost, or `None` when unknown.

        Raises:
            InvalidArgument: Negative or non-numeric cost.
        """
        if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0):
            raise InvalidArgument("cost must be a non-negative number")

        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                record = UsageRecord()
                self._records[agent_id] = record
            record.calls += 1
            if cost is None:
                record.unpriced_calls += 1
            else:
                record.cumulative_cost += float(cost)
            record.last_updated = time.time()

    def get_usage_stats(self):
        """Return `{agent_id: {calls, cumulativeCost, ...}}` as an independent copy."""
        with self._lock:
            return {agent_id: record.to_dict() for agent_id, record in self._records.items()}

    def totals(self):
        with self._lock:
            return {
                "calls": sum(r.calls for r in self._records.values()),
                "cumulativeCost": round(sum(r.cumulative_cost for r in self._records.values()), 8),
                "since": self._started_at,
            }

    def save_snapshot(self, path):
        """Write the current counters to `path` atomically as JSON."""
        snapshot = {
            "takenAt": time.time(),
            "totals": self.totals(),
            "agents": self.get_usage_stats(),
        }
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2)
        os.replace(tmp, path)
        logger.info("Usage snapshot written to %s", path)
