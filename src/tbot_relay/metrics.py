# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Prometheus-compatible counters for the hub and the agent."""

import threading
import time


class PrometheusMetrics:
    """Thread-safe Prometheus-compatible metrics collector."""

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = time.time()

        # Counters (only increase)
        self._counters = {
            "tbot_messages_delivered_total": 0,
            "tbot_messages_queued_total": 0,
            "tbot_flush_delivered_total": 0,
            "tbot_dispatch_total": 0,
            "tbot_dispatch_failed_total": 0,
            "tbot_registrations_total": 0,
            "tbot_executions_total": 0,
            "tbot_executions_failed_total": 0,
        }

        self._help = {
            "tbot_messages_delivered_total": "Messages sent live to a reachable user",
            "tbot_messages_queued_total": "Messages queued for an unreachable user",
            "tbot_flush_delivered_total": "Queued messages delivered by a flush",
            "tbot_dispatch_total": "Commands dispatched to an agent",
            "tbot_dispatch_failed_total": "Dispatches that failed at the HTTP level",
            "tbot_registrations_total": "Agent registrations (sent by agents, received by hubs)",
            "tbot_executions_total": "Script executions started",
            "tbot_executions_failed_total": "Script executions that did not succeed",
            "tbot_start_time_seconds": "Unix timestamp when the process started",
        }

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name in self._counters:
                self._counters[name] += value

    def get(self, name: str) -> float:
        """Get current value of a metric."""
        with self._lock:
            return self._counters.get(name, 0)

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        with self._lock:
            lines.append(f"# HELP tbot_start_time_seconds {self._help['tbot_start_time_seconds']}")
            lines.append("# TYPE tbot_start_time_seconds gauge")
            lines.append(f"tbot_start_time_seconds {self._start_time}")

            for name, value in self._counters.items():
                if name in self._help:
                    lines.append(f"# HELP {name} {self._help[name]}")
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {value}")

        return "\n".join(lines) + "\n"

    def log_summary(self) -> str:
        """Return a human-readable summary for logging."""
        with self._lock:
            uptime = time.time() - self._start_time
            hours, remainder = divmod(int(uptime), 3600)
            minutes, seconds = divmod(remainder, 60)
            uptime_str = (
                f"{hours}h{minutes}m{seconds}s"
                if hours
                else f"{minutes}m{seconds}s"
                if minutes
                else f"{seconds}s"
            )
            c = self._counters
            return (
                f"uptime={uptime_str} "
                f"sent={c['tbot_messages_delivered_total']} "
                f"queued={c['tbot_messages_queued_total']} "
                f"flushed={c['tbot_flush_delivered_total']} "
                f"dispatch={c['tbot_dispatch_total']}/{c['tbot_dispatch_failed_total']} "
                f"exec={c['tbot_executions_total']}/{c['tbot_executions_failed_total']}"
            )


metrics = PrometheusMetrics()
