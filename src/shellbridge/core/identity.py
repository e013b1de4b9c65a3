"""
Device identity persistence — relay auth token and stable device id.

Both are plain text files (paths from RelayConfig). The token is issued by
the relay after browser login; the device id is generated once per machine.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def load_token(path: str | Path) -> str | None:
    """Return the saved relay token, or None if there is none."""
    p = Path(path)
    try:
        token = p.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not read token file {p}: {e}")
        return None
    return token or None


def save_token(path: str | Path, token: str) -> None:
    p = Path(path)
    p.write_text(token, encoding="utf-8")
    try:
        p.chmod(0o600)
    except OSError:
        logger.debug(f"Could not restrict permissions on {p}")
    logger.info("Relay token saved")


def clear_token(path: str | Path) -> None:
    Path(path).unlink(missing_ok=True)


def load_or_create_device_id(path: str | Path) -> str:
    """Return the persisted device id, creating one on first run."""
    p = Path(path)
    try:
        existing = p.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    except FileNotFoundError:
        pass

    device_id = str(uuid.uuid4())
    p.write_text(device_id, encoding="utf-8")
    logger.info(f"Generated new device id {device_id}")
    return device_id
