"""
retentiond - storage retention and capacity management engine.

This package contains the runtime components that measure, predict and
reclaim the space used by an embedded SQLite store: usage snapshots,
growth analysis, retention policies, batched cleanup, vacuum and scheduling.
"""

__version__ = "0.1.0"
__author__ = "Taamir Ransome"
__email__ = "taamir@example.com"
