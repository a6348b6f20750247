"""Per-scope traffic counters."""

import time
from typing import Dict


class ScopeStats:
    """Request and byte counters for one location."""

    def __init__(self, path: str):
        self.path = path
        self.requests = 0
        self.errors = 0
        self.bytes_sent = 0
        self.bytes_received = 0  # request body bytes drained
        self.last_activity = 0.0
        self._prev_bytes_sent = 0
        self._prev_snapshot_time = 0.0

    def record(self, context) -> None:
        """Account for one finished request."""
        self.requests += 1
        if context.error is not None:
            self.errors += 1
        self.bytes_sent += context.bytes_sent
        if context.report is not None:
            self.bytes_received += context.report.bytes_read
        self.last_activity = time.monotonic()

    def get_stats(self) -> dict:
        """Return current counters and compute recent speed."""
        now = time.monotonic()
        dt = now - self._prev_snapshot_time if self._prev_snapshot_time else 0.0

        if dt > 0:
            send_speed = (self.bytes_sent - self._prev_bytes_sent) / dt
        else:
            send_speed = 0.0

        self._prev_bytes_sent = self.bytes_sent
        self._prev_snapshot_time = now

        idle_secs = now - self.last_activity if self.last_activity else None
        return {
            "requests": self.requests,
            "errors": self.errors,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "send_speed": send_speed,
            "idle_secs": idle_secs,
        }


class ServerStats:
    """Counters for every scope, created on first use."""

    def __init__(self):
        self.scopes: Dict[str, ScopeStats] = {}

    def for_scope(self, path: str) -> ScopeStats:
        if path not in self.scopes:
            self.scopes[path] = ScopeStats(path)
        return self.scopes[path]

    def record(self, context) -> None:
        path = context.scope.path if context.scope is not None else context.path
        self.for_scope(path).record(context)

    @property
    def total_requests(self) -> int:
        return sum(s.requests for s in self.scopes.values())
