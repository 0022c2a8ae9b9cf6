"""Configuration loader for Igor.

Reads the YAML configuration (identities, away windows, templates,
credentials) and provides typed access to all settings.
Reads the config file once; IGOR_SITE_LOCATION in the environment
overrides the configured site location.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SITE_LOCATION = ""

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class UserEntry:
    """One identity Igor answers for.

    Attributes:
        identity: Key of this entry, also the last-communication state key.
        flowdock_username: Name that must be @-mentioned in flows.
        flowdock_token: Inline personal API token.
        token_env: Environment variable holding the token instead.
        message_format: Response template with From/Until fields.
        active_from: Start of the away window.
        active_until: End of the away window.
    """

    identity: str = ""
    flowdock_username: str = ""
    flowdock_token: str = ""
    token_env: str = ""
    message_format: str = ""
    active_from: datetime = _EPOCH
    active_until: datetime = _EPOCH

    def resolve_token(self) -> str:
        """Return the Flowdock token, reading token_env when set.

        Raises:
            ValueError: If no token is configured.
        """
        if self.flowdock_token:
            return self.flowdock_token
        if self.token_env:
            token = os.environ.get(self.token_env, "")
            if token:
                return token
            raise ValueError(
                f"{self.token_env} not set in environment for '{self.identity}'"
            )
        raise ValueError(f"No flowdock token configured for '{self.identity}'")


@dataclass(frozen=True)
class IgorConfig:
    """Top-level Igor configuration."""

    site_location: str = DEFAULT_SITE_LOCATION
    mention_limit: int = 10
    state_path: str = "igor-state.json"
    users: list[UserEntry] = field(default_factory=list)


def parse_moment(value: Any) -> datetime:
    """Convert a YAML timestamp or ISO-8601 string to an aware datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a timestamp.
    """
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        moment = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def _build_user(data: dict[str, Any]) -> UserEntry:
    """Build a UserEntry from a dict, ignoring unknown keys."""
    valid = {f.name for f in UserEntry.__dataclass_fields__.values()}
    filtered = {
        k: parse_moment(v) if k in ("active_from", "active_until") else str(v)
        for k, v in data.items()
        if k in valid and v is not None
    }
    if not filtered.get("flowdock_username"):
        filtered["flowdock_username"] = filtered.get("identity", "")
    return UserEntry(**filtered)


def load_config(config_path: Path) -> IgorConfig:
    """Load Igor configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration.

    Returns:
        Populated IgorConfig.

    Raises:
        FileNotFoundError: If config file does not exist.
        yaml.YAMLError: If YAML is malformed.
        ValueError: If a timestamp cannot be parsed.
    """
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        return IgorConfig()

    defaults = IgorConfig()

    users: list[UserEntry] = []
    users_raw = raw.get("users")
    if isinstance(users_raw, list):
        for entry in users_raw:
            if not isinstance(entry, dict):
                continue
            if not entry.get("identity"):
                logger.warning("Skipping user entry without identity")
                continue
            users.append(_build_user(entry))

    site_location = os.environ.get("IGOR_SITE_LOCATION", "") or raw.get(
        "site_location", defaults.site_location
    )

    return IgorConfig(
        site_location=site_location,
        mention_limit=int(raw.get("mention_limit", defaults.mention_limit)),
        state_path=str(raw.get("state_path", defaults.state_path)),
        users=users,
    )
