"""Single-host automation loop.

Sensors inspect internal conditions and enqueue deduplicated tasks into a
SQLite-backed queue; the dispatch engine picks the most urgent pending task,
runs exactly one worker process for it and records the outcome, cost and
cycle log before committing the workspace.
"""

__version__ = "0.1.0"
