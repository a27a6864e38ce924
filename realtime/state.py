"""Shared in-memory state for the Socket.IO channel handlers.

Kept in its own module so HTTP routes can inspect loaded channels without
importing the handler module.
"""

import threading

# lower(channel name) -> {"name": str, "registered": bool, "users": {sid: username}}
LOADED_CHANNELS: dict[str, dict] = {}
LOADED_CHANNELS_LOCK = threading.Lock()
