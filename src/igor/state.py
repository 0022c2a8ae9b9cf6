"""Last-communication state for Igor.

Reads and writes the JSON state file that remembers, per identity, when
each requester was last answered::

    {"alice": {"bob": "2020-01-02T15:10:00+00:00"}}

The responder core only reads these mappings; the runner records a new
moment after every successful reply and writes the file back.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

State = dict[str, dict[str, datetime]]


def read_state(path: Path) -> State:
    """Read the state file. Returns {} if missing or corrupt."""
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        logger.warning("Corrupt state file at %s, resetting", path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Unexpected state file layout at %s, resetting", path)
        return {}

    state: State = {}
    for identity, entries in data.items():
        if not isinstance(entries, dict):
            continue
        mapping: dict[str, datetime] = {}
        for user, stamp in entries.items():
            try:
                mapping[user] = datetime.fromisoformat(stamp)
            except (TypeError, ValueError):
                logger.warning("Dropping bad timestamp for %s/%s", identity, user)
        state[identity] = mapping
    return state


def write_state(state: State, path: Path) -> None:
    """Write state atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        identity: {user: moment.isoformat() for user, moment in entries.items()}
        for identity, entries in state.items()
    }
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)


def record_communication(
    state: State, identity: str, user: str, moment: datetime
) -> dict[str, datetime]:
    """Remember that *identity* answered *user* at *moment*.

    Returns:
        The identity's last-communication mapping.
    """
    mapping = state.setdefault(identity, {})
    mapping[user] = moment
    return mapping
