"""Task queue and runner supervision for CLI coding agents.

Layout
~~~~~~
- ``lifecycle``: the state machine; the only code that writes ``Task.status``.
- ``queue_manager``: in-memory priority order of QUEUED tasks.
- ``recovery``: retry / restart-session / skip decisions and rate-limit backoff.
- ``supervisor``: the single execution slot and the live agent process.
- ``events``: fan-out of task events and system snapshots to observers.
- ``services``: wires the above; ``worker`` and ``controllers`` drive it.

The SQLite store is the source of truth. The queue is rebuilt from it on
startup, and CLI processes hand work for the live runner to the worker through
control requests stored on the task row.
"""
