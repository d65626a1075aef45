"""
Observer Package.

Discovers packages that need analysis and feeds them into the analysis queue.

Features:
- Realtime watcher following the registry change log from a persisted cursor
- Staleness scanner re-queueing packages with outdated analysis results
- Retrying enqueuer with bounded exponential backoff and fail-fast shutdown
- Supervisor owning startup, signal handling and the exit code

Guarantees:
- At-least-once delivery of every registry change across restarts
- Realtime discoveries outrank staleness refreshes in the queue
- Queue outages stop the process instead of buffering unboundedly
"""

__version__ = "1.0.0"
