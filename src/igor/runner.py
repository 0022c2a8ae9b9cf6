"""Single polling pass over every configured identity.

For each identity inside its away window, fetches the mentions and
private messages still waiting for an answer, replies to each requester
once, and records the reply moment in the last-communication state.

A failed fetch aborts the pass for that identity only; a failed reply is
logged and the remaining replies still go out.

Usage:
    python -m igor.runner --config igor.yaml [--state igor-state.json]
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

import yaml

from igor.config import IgorConfig, UserEntry, load_config
from igor.flowdock_client import FlowdockClient
from igor.responder_config import (
    ChatClient,
    FetchError,
    ResponderConfig,
    ResponseError,
    TemplateConfigError,
)
from igor.state import State, read_state, record_communication, write_state

logger = logging.getLogger(__name__)


@dataclass
class PassSummary:
    """Outcome counters of one polling pass."""

    responded: int = 0
    failed_responses: int = 0
    failed_identities: int = 0
    inactive: int = 0

    @property
    def ok(self) -> bool:
        return not (self.failed_responses or self.failed_identities)


def _default_client_factory(token: str) -> ChatClient:
    return FlowdockClient(api_token=token)


def build_responder(
    entry: UserEntry,
    state: State,
    *,
    mention_limit: int = 10,
    client_factory: Callable[[str], ChatClient] = _default_client_factory,
) -> ResponderConfig:
    """Build the responder for one configured identity.

    Raises:
        TemplateConfigError: If the response template is malformed.
        ValueError: If no token is configured.
    """
    return ResponderConfig(
        entry.identity,
        entry.message_format,
        entry.flowdock_username,
        client_factory(entry.resolve_token()),
        entry.active_from,
        entry.active_until,
        state.setdefault(entry.identity, {}),
        mention_limit=mention_limit,
    )


def run_pass(
    config: IgorConfig,
    state: State,
    *,
    client_factory: Callable[[str], ChatClient] = _default_client_factory,
    now: datetime | None = None,
) -> PassSummary:
    """Answer pending mentions for every configured identity.

    Args:
        config: Loaded configuration.
        state: Last-communication state; updated in place after each reply.
        client_factory: Builds a chat client from a token (for testing).
        now: Moment of this pass, defaults to the current UTC time.

    Returns:
        PassSummary with per-pass counters.
    """
    now = now or datetime.now(UTC)
    summary = PassSummary()

    for entry in config.users:
        try:
            responder = build_responder(
                entry,
                state,
                mention_limit=config.mention_limit,
                client_factory=client_factory,
            )
        except (TemplateConfigError, ValueError) as exc:
            logger.error("Cannot set up responder for %s: %s", entry.identity, exc)
            summary.failed_identities += 1
            continue

        if not responder.is_active(now):
            logger.debug("Responder for %s is not active", entry.identity)
            summary.inactive += 1
            continue

        try:
            pending = responder.get_non_answered_mentions()
        except FetchError:
            logger.exception("Polling pass aborted for %s", entry.identity)
            summary.failed_identities += 1
            continue

        for nick, mention in pending.items():
            try:
                if mention.is_private:
                    responder.respond_to_person(mention.user_id, config.site_location)
                else:
                    responder.respond_to_flow(
                        mention.flow, mention.thread_id, config.site_location
                    )
            except ResponseError as exc:
                logger.warning(
                    "Failed to answer %s for %s: %s", nick, entry.identity, exc
                )
                summary.failed_responses += 1
                continue
            # A message sent after the pass started must still count as answered
            answered_at = max(now, mention.moment)
            record_communication(state, entry.identity, nick, answered_at)
            summary.responded += 1

    logger.info(
        "Pass complete: %d responded, %d failed responses, "
        "%d failed identities, %d inactive",
        summary.responded,
        summary.failed_responses,
        summary.failed_identities,
        summary.inactive,
    )
    return summary


# ---------------------------------------------------------------------------
# CLI entrypoint
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint for one polling pass.

    Exit code:
        0 = pass completed cleanly
        1 = configuration error, or some identity/reply failed
    """
    parser = argparse.ArgumentParser(
        description="Answer Flowdock mentions while you are away"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("IGOR_CONFIG", "igor.yaml")),
        help="YAML configuration file",
    )
    parser.add_argument("--state", type=Path, help="Override state_path")
    parser.add_argument("--site-location", help="Override site_location")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        config = load_config(args.config)
    except (OSError, yaml.YAMLError, ValueError) as exc:
        logger.error("Could not load config %s: %s", args.config, exc)
        return 1

    if args.site_location:
        config = replace(config, site_location=args.site_location)
    if not config.site_location:
        logger.error("No site_location configured")
        return 1

    state_path = args.state or Path(config.state_path)
    state = read_state(state_path)
    summary = run_pass(config, state)
    write_state(state, state_path)
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
