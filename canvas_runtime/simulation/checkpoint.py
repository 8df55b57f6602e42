"""Checkpoint save/load for canvas sessions.

A checkpoint file is a session snapshot document (see export.py) with two
extra keys, ``reason`` and ``saved_at``. Version 1 checkpoints (no agent
code) are migrated on load.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..world.errors import MalformedSnapshotError
from ..world.event_log import atomic_write_text
from .export import parse_session, session_snapshot
from .types import SessionSnapshotData

if TYPE_CHECKING:
    from .session import CanvasSession

logger = logging.getLogger(__name__)

# Keys a checkpoint adds on top of the session snapshot
CHECKPOINT_EXTRA_KEYS = ("reason", "saved_at")


def save_checkpoint(session: "CanvasSession", checkpoint_file: str | Path, reason: str = "manual") -> Path:
    """Save the session to ``checkpoint_file`` for later resumption.

    Uses atomic write (temp file + rename) so an interrupted save leaves the
    previous checkpoint intact.

    Returns:
        Path to the saved checkpoint file
    """
    checkpoint: dict[str, Any] = dict(session_snapshot(session))
    checkpoint["reason"] = reason
    checkpoint["saved_at"] = datetime.now().isoformat()

    path = atomic_write_text(checkpoint_file, json.dumps(checkpoint, indent=2))
    logger.info("Checkpoint saved to %s (tick %d, %s)", path, session.ledger.tick, reason)
    return path


def load_checkpoint(checkpoint_file: str | Path) -> SessionSnapshotData | None:
    """Load a session snapshot from a checkpoint file.

    Returns:
        The validated snapshot, or None if the file does not exist.

    Raises:
        MalformedSnapshotError, UnsupportedSnapshotVersionError: for a file
            that exists but cannot be used.
    """
    checkpoint_path = Path(checkpoint_file)
    if not checkpoint_path.exists():
        return None

    try:
        with open(checkpoint_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedSnapshotError(f"{checkpoint_path}: not valid JSON: {e}") from None

    if isinstance(data, dict):
        for key in CHECKPOINT_EXTRA_KEYS:
            data.pop(key, None)
    return parse_session(data)


def restore_checkpoint(session: "CanvasSession", checkpoint_file: str | Path) -> bool:
    """Load ``checkpoint_file`` into ``session``. Returns False if it is missing."""
    data = load_checkpoint(checkpoint_file)
    if data is None:
        logger.warning("No checkpoint at %s", checkpoint_file)
        return False
    session.load_session_snapshot(data, reason="checkpoint")
    return True
