"""Away responder core: finds unanswered mentions and replies to them.

A ResponderConfig is built from one configured identity. It fetches
mentions and unread private messages through a ChatClient, keeps the ones
that still need an answer, and renders/sends the out-of-office reply.

The last-communication mapping is owned by the caller. This module only
reads it; the caller records a new moment after each successful reply.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import jinja2

from igor.flowdock_client import FlowdockClient, IncomingMessage, UserDetails

logger = logging.getLogger(__name__)

# Sender id Flowdock uses for integrations and bots
SYSTEM_USER_ID = "0"

PRODUCT_NAME = "Igor"
DEFAULT_MENTION_LIMIT = 10

# RFC 822 layout: 02 Jan 06 15:04 MST
TIME_FORMAT = "%d %b %y %H:%M"

_GO_FIELD_RE = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")
_EXPRESSION_RE = re.compile(r"\{\{.*?\}\}", re.DOTALL)
_BLOCK_OPENER_RE = re.compile(r"\{[%#]")

_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ResponderError(Exception):
    """Base class for away responder errors."""


class TemplateConfigError(ResponderError):
    """The configured response template cannot be parsed."""


class FetchError(ResponderError):
    """Mentions, private messages or sender details could not be fetched."""


class ResponseError(ResponderError):
    """A reply could not be rendered for the given target."""

    def __init__(self, message: str, target: str):
        super().__init__(message)
        self.target = target


class DeliveryError(ResponseError):
    """The chat client failed to deliver a rendered reply."""

    def __init__(self, message: str, target: str, cause: Exception):
        super().__init__(message, target)
        self.cause = cause


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


class ChatClient(Protocol):
    """Operations the responder needs from the chat service."""

    def get_my_mentions(self, limit: int = 10) -> list[IncomingMessage]: ...

    def get_my_unread_private_messages(self) -> list[IncomingMessage]: ...

    def details_for_user(self, user_id: str) -> UserDetails: ...

    def respond_to_flow(self, flow: str, thread_id: str, text: str) -> None: ...

    def respond_to_person(self, user_id: str, text: str) -> None: ...


@dataclass
class PendingMention:
    """A requester still waiting for the away reply."""

    user: str
    user_id: str
    message: str
    moment: datetime
    flow: str = ""
    thread_id: str = ""

    @property
    def is_private(self) -> bool:
        return not self.flow


def compile_template(message_format: str) -> jinja2.Template:
    """Compile a response template.

    Go-style field references (``{{.From}}``) are accepted alongside
    native Jinja2 ones (``{{ From }}``). Outside ``{{ }}`` the text is
    literal, so ``{%`` and ``{#`` are not Jinja2 block or comment openers.

    Raises:
        TemplateConfigError: If the template is malformed.
    """
    parts = []
    pos = 0
    for match in _EXPRESSION_RE.finditer(message_format):
        parts.append(_escape_literal(message_format[pos : match.start()]))
        parts.append(_GO_FIELD_RE.sub(r"{{ \1 }}", match.group(0)))
        pos = match.end()
    parts.append(_escape_literal(message_format[pos:]))
    try:
        return _ENV.from_string("".join(parts))
    except jinja2.TemplateSyntaxError as exc:
        raise TemplateConfigError(f"Invalid response template: {exc}") from exc


def _escape_literal(text: str) -> str:
    return _BLOCK_OPENER_RE.sub(lambda m: '{{ "%s" }}' % m.group(0), text)


def format_moment(moment: datetime) -> str:
    """Format a window boundary for the response template.

    Zones without an abbreviation are printed as a numeric offset
    (``+0200``), the way Go's RFC 822 layout does.
    """
    zone = moment.tzname() or ""
    if zone.startswith(("UTC+", "UTC-")):
        zone = moment.strftime("%z")
    return f"{moment.strftime(TIME_FORMAT)} {zone}".rstrip()


def add_suffix(message: str, site_location: str) -> str:
    """Append the attribution suffix to an outgoing message."""
    return f"{message} Powered by [{PRODUCT_NAME}]({site_location})"


def message_moment(message: IncomingMessage) -> datetime:
    """Return the second-resolution UTC moment a message was sent."""
    return datetime.fromtimestamp(message.sent // 1000, tz=UTC)


# ---------------------------------------------------------------------------
# Responder
# ---------------------------------------------------------------------------


class ResponderConfig:
    """Away responder bound to one identity and one chat client.

    Args:
        identity: Identity the configuration belongs to.
        message_format: Response template with From/Until fields.
        flowdock_username: Name that must be @-mentioned in flows.
        client: Chat client used for fetching and replying.
        active_from: Start of the away window (exclusive).
        active_until: End of the away window (exclusive).
        last_communication: Read-only view of requester nick to the moment
            they were last answered. Owned and updated by the caller.
        mention_limit: Maximum number of mentions fetched per query.

    Raises:
        TemplateConfigError: If message_format is malformed.
    """

    def __init__(
        self,
        identity: str,
        message_format: str,
        flowdock_username: str,
        client: ChatClient,
        active_from: datetime,
        active_until: datetime,
        last_communication: Mapping[str, datetime] | None = None,
        *,
        mention_limit: int = DEFAULT_MENTION_LIMIT,
    ) -> None:
        self.identity = identity
        self.active_from = active_from
        self.active_until = active_until
        self.template = compile_template(message_format)
        self.name_regex = re.compile(
            rf"@{re.escape(flowdock_username)}(?!\w)", re.IGNORECASE
        )
        self.client = client
        self.last_communication: Mapping[str, datetime] = (
            last_communication if last_communication is not None else {}
        )
        self.mention_limit = mention_limit

    @classmethod
    def create(
        cls,
        identity: str,
        message_format: str,
        flowdock_username: str,
        flowdock_token: str,
        active_from: datetime,
        active_until: datetime,
        last_communication: Mapping[str, datetime] | None = None,
        *,
        mention_limit: int = DEFAULT_MENTION_LIMIT,
    ) -> ResponderConfig:
        """Build a responder talking to Flowdock with the given token."""
        return cls(
            identity,
            message_format,
            flowdock_username,
            FlowdockClient(api_token=flowdock_token),
            active_from,
            active_until,
            last_communication,
            mention_limit=mention_limit,
        )

    def is_active(self, now: datetime | None = None) -> bool:
        """Return True strictly inside the away window."""
        now = now or datetime.now(UTC)
        return self.active_from < now < self.active_until

    def get_non_answered_mentions(self) -> dict[str, PendingMention]:
        """Return one pending mention per requester that still needs a reply.

        Mentions are processed before private messages; the first
        qualifying message of each requester wins.

        Raises:
            FetchError: If any fetch or sender lookup fails. No partial
                result is returned in that case.
        """
        result: dict[str, PendingMention] = {}

        try:
            mentions = self.client.get_my_mentions(self.mention_limit)
        except Exception as exc:
            raise FetchError(f"Could not fetch flowdock mentions: {exc}") from exc
        for mention in mentions:
            self._add_message_to_result(mention, result)

        try:
            private_messages = self.client.get_my_unread_private_messages()
        except Exception as exc:
            raise FetchError(
                f"Could not fetch flowdock private messages: {exc}"
            ) from exc
        for private_message in private_messages:
            self._add_message_to_result(private_message, result)

        return result

    def _add_message_to_result(
        self, message: IncomingMessage, result: dict[str, PendingMention]
    ) -> None:
        if message.user_id == SYSTEM_USER_ID:
            return
        if not message.private and not self.name_regex.search(message.content):
            logger.debug("Ignoring flow message without explicit mention")
            return

        moment = message_moment(message)
        try:
            user = self.client.details_for_user(message.user_id)
        except Exception as exc:
            raise FetchError(
                f"Could not fetch details for user {message.user_id}: {exc}"
            ) from exc

        if moment < self.active_from:
            return
        last_comm = self.last_communication.get(user.nick)
        if last_comm is not None and last_comm >= moment:
            logger.debug("Already answered %s at %s", user.nick, last_comm)
            return
        if user.nick in result:
            return

        result[user.nick] = PendingMention(
            user=user.nick,
            user_id=user.id,
            message=message.content,
            moment=moment,
            flow=message.flow,
            thread_id=message.thread_id,
        )

    def get_response_message(self) -> str:
        """Render the response template for the configured window.

        Raises:
            jinja2.TemplateError: If the template references unknown fields.
        """
        return self.template.render(
            From=format_moment(self.active_from),
            Until=format_moment(self.active_until),
        )

    def respond_to_flow(self, flow: str, thread_id: str, site_location: str) -> None:
        """Reply inside a flow thread.

        Raises:
            ResponseError: If the message cannot be rendered.
            DeliveryError: If the client fails to post it.
        """
        target = f"flow {flow}, thread {thread_id}"
        text = self._render_for(target, site_location)
        logger.info("Responding to %s, msg %s", target, text)
        try:
            self.client.respond_to_flow(flow, thread_id, text)
        except Exception as exc:
            raise DeliveryError(
                f"Could not deliver answer to {target}: {exc}", target, exc
            ) from exc

    def respond_to_person(self, user_id: str, site_location: str) -> None:
        """Reply with a private message.

        Raises:
            ResponseError: If the message cannot be rendered.
            DeliveryError: If the client fails to post it.
        """
        target = f"user {user_id}"
        text = self._render_for(target, site_location)
        logger.info("Responding to %s, msg %s", target, text)
        try:
            self.client.respond_to_person(user_id, text)
        except Exception as exc:
            raise DeliveryError(
                f"Could not deliver answer to {target}: {exc}", target, exc
            ) from exc

    def _render_for(self, target: str, site_location: str) -> str:
        try:
            msg = self.get_response_message()
        except jinja2.TemplateError as exc:
            raise ResponseError(
                f"Could not answer to {target} because of {exc}", target
            ) from exc
        return add_suffix(msg, site_location)
