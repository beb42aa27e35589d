"""
Connection session state persistence

One JSON record holding ConnectionSessionState, overwritten on every
change. Writes go to a temp file that is then renamed over the record, so a
crash mid-write leaves the previous record intact.
"""

import json
import logging
import os
from pathlib import Path

from .models import ConnectionSessionState

logger = logging.getLogger(__name__)


class SessionStateStore:
    """
    Durable home of ConnectionSessionState.

    Features:
    - Atomic overwrite (write temp file, os.replace)
    - Missing or unreadable record loads as a fresh state
    """

    def __init__(self, path: str = './data/session_state.json'):
        """
        Args:
            path: JSON file holding the session record
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> ConnectionSessionState:
        if not self.path.exists():
            logger.info(f"No session state at {self.path}, starting fresh")
            return ConnectionSessionState()

        try:
            with open(self.path, 'r') as f:
                state = ConnectionSessionState.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Unreadable session state at {self.path} ({e}), starting fresh")
            return ConnectionSessionState()

        logger.info(
            f"Restored session state: {len(state.subscribed_keys)} subscriptions, "
            f"reconnect attempts={state.reconnect_attempt_count}"
        )
        return state

    def save(self, state: ConnectionSessionState):
        """Overwrite the record. Raises OSError if the write fails."""
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(state.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        logger.debug(f"Session state saved ({len(state.subscribed_keys)} subscriptions)")

    def clear(self):
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Session state cleared at {self.path}")
