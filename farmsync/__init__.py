"""
FarmSync offline write layer.

Keeps a farm-management client usable while disconnected: queued writes,
last-write-wins conflict resolution and bounded exponential-backoff retries.
"""

__version__ = "1.0.0"
