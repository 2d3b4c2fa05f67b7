"""
roundsync - client-side synchronization layer for rising-multiplier rounds.

Keeps one canonical view of the current round over an unreliable Socket.IO
feed and turns fire-and-forget commands into awaitable, exactly-once results.
"""

__version__ = "1.0.0"

from roundsync.client import RoundSyncClient
from roundsync.config import ClientConfig, ConfigError

__all__ = ["ClientConfig", "ConfigError", "RoundSyncClient", "__version__"]
