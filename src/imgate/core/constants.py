"""Gateway constants."""

from __future__ import annotations

DEFAULT_READY_TIMEOUT = 15.0
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_IDENTITY_PREFIX = "game_"
DEFAULT_COMMAND_CODE = "game_cmd"

# Backend error code for a request that timed out on its side
TRANSIENT_TIMEOUT_CODE = 2801
ADMIN_SESSION_NAME = "admin"
