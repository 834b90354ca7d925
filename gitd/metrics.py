"""Prometheus metrics for the gitd server.

Metrics Categories:
- Requests: git smart HTTP requests per operation and response status
- Commands: spawned git processes, their duration and failures
"""

from prometheus_client import Counter, Gauge, Histogram


GIT_REQUESTS_TOTAL = Counter(
    "gitd_requests_total",
    "Git smart HTTP requests handled",
    ["operation", "status"],
)

GIT_COMMAND_FAILURES_TOTAL = Counter(
    "gitd_command_failures_total",
    "Git commands that failed to run to completion",
    ["command", "reason"],  # reason: spawn, pipe, exit
)

GIT_ACTIVE_COMMANDS = Gauge(
    "gitd_active_commands",
    "Git processes currently running",
)

GIT_COMMAND_DURATION_SECONDS = Histogram(
    "gitd_command_duration_seconds",
    "Wall time of git processes spawned for requests",
    ["command"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)
