"""Flowdock REST API client for Igor.

Fetches mentions and unread private messages, resolves user details, and
posts replies into flows/threads or private conversations. Stdlib-only
(urllib) -- no third-party dependencies.

Authentication uses the personal API token as the HTTP basic auth user
name, the way the Flowdock API expects it.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

FLOWDOCK_API_BASE = "https://api.flowdock.com"


class FlowdockAPIError(Exception):
    """Error communicating with the Flowdock API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class IncomingMessage:
    """A single message event fetched from Flowdock.

    Attributes:
        user_id: Sender id. "0" for integrations and bots.
        content: Message text.
        sent: Epoch milliseconds.
        flow: Flow id, empty for private messages.
        thread_id: Thread the message belongs to, if any.
        private: True for private (1:1) conversation messages.
        display_name: Sender nick when the payload carries it.
    """

    user_id: str
    content: str
    sent: int
    flow: str = ""
    thread_id: str = ""
    private: bool = False
    display_name: str = ""

    @classmethod
    def from_json(
        cls, data: dict[str, Any], *, private: bool = False
    ) -> IncomingMessage:
        """Build a message from a Flowdock message event payload."""
        content = data.get("content", "")
        if not isinstance(content, str):
            # Non-text events (e.g. file uploads) carry a dict here
            content = json.dumps(content)
        flow = data.get("flow") or ""
        return cls(
            user_id=str(data.get("user", "")),
            content=content,
            sent=int(data.get("sent", 0) or 0),
            flow=flow,
            thread_id=data.get("thread_id") or "",
            private=private or not flow,
            display_name=data.get("nick", "") or "",
        )


@dataclass
class UserDetails:
    """Public details of a Flowdock user."""

    id: str
    nick: str
    name: str = ""


@dataclass
class FlowdockClient:
    """Client for the Flowdock REST API.

    Args:
        api_token: Personal API token of the account Igor acts for.
        api_url: Base URL of the API.
        private_limit: Messages fetched per unread private conversation.
    """

    api_token: str
    api_url: str = FLOWDOCK_API_BASE
    private_limit: int = 10

    @classmethod
    def from_env(cls) -> FlowdockClient:
        """Create client from environment variables.

        Reads FLOWDOCK_TOKEN and the optional FLOWDOCK_API_URL.

        Raises:
            FlowdockAPIError: If FLOWDOCK_TOKEN is not set.
        """
        token = os.environ.get("FLOWDOCK_TOKEN", "")
        if not token:
            raise FlowdockAPIError("FLOWDOCK_TOKEN not set in environment")
        url = os.environ.get("FLOWDOCK_API_URL", FLOWDOCK_API_BASE)
        return cls(api_token=token, api_url=url.rstrip("/"))

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an HTTP request to the Flowdock API.

        Args:
            method: HTTP method.
            path: API path starting with '/'.
            query: Query string parameters.
            params: JSON body parameters.

        Returns:
            Parsed JSON response (dict or list), or None for empty bodies.

        Raises:
            FlowdockAPIError: On HTTP, connection or decoding errors.
        """
        url = f"{self.api_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        credentials = base64.b64encode(f"{self.api_token}:".encode()).decode("ascii")
        headers = {
            "Authorization": f"Basic {credentials}",
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8",
        }
        body = json.dumps(params).encode("utf-8") if params is not None else None

        req = urllib.request.Request(url, data=body, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=30) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise FlowdockAPIError(
                f"{method} {path} -> HTTP {exc.code}: {detail}",
                status_code=exc.code,
            ) from exc
        except urllib.error.URLError as exc:
            raise FlowdockAPIError(
                f"{method} {path} -> Connection failed: {exc.reason}"
            ) from exc

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise FlowdockAPIError(f"{method} {path} -> Invalid JSON: {exc}") from exc

    def get_my_mentions(self, limit: int = 10) -> list[IncomingMessage]:
        """Fetch the latest messages mentioning the token owner.

        Args:
            limit: Maximum number of mentions to return.

        Returns:
            List of IncomingMessage objects in API order.
        """
        data = self._request(
            "GET", "/notifications/mentions", query={"limit": limit}
        )
        if not isinstance(data, list):
            raise FlowdockAPIError("GET /notifications/mentions -> expected a list")
        messages = []
        for item in data:
            if not isinstance(item, dict):
                continue
            payload = item.get("message", item)
            if isinstance(payload, dict):
                messages.append(IncomingMessage.from_json(payload))
        return messages

    def get_my_unread_private_messages(self) -> list[IncomingMessage]:
        """Fetch messages from private conversations with unread mentions.

        Returns:
            Private IncomingMessage objects, oldest first per conversation.
        """
        conversations = self._request("GET", "/private")
        if not isinstance(conversations, list):
            raise FlowdockAPIError("GET /private -> expected a list")

        messages: list[IncomingMessage] = []
        for conv in conversations:
            if not isinstance(conv, dict) or not conv.get("unread_mentions"):
                continue
            user_id = conv.get("id")
            path = f"/private/{urllib.parse.quote(str(user_id))}/messages"
            data = self._request(
                "GET", path, query={"event": "message", "limit": self.private_limit}
            )
            if not isinstance(data, list):
                continue
            messages.extend(
                IncomingMessage.from_json(m, private=True)
                for m in data
                if isinstance(m, dict)
            )
        return messages

    def details_for_user(self, user_id: str) -> UserDetails:
        """Resolve a Flowdock user id to nick and full name.

        Raises:
            FlowdockAPIError: If the user cannot be fetched.
        """
        path = f"/users/{urllib.parse.quote(str(user_id))}"
        data = self._request("GET", path)
        if not isinstance(data, dict):
            raise FlowdockAPIError(f"GET {path} -> expected an object")
        return UserDetails(
            id=str(data.get("id", user_id)),
            nick=data.get("nick", "") or str(user_id),
            name=data.get("name", "") or "",
        )

    def respond_to_flow(self, flow: str, thread_id: str, text: str) -> None:
        """Post a message into a flow, inside the given thread."""
        params: dict[str, Any] = {"flow": flow, "event": "message", "content": text}
        if thread_id:
            params["thread_id"] = thread_id
        self._request("POST", "/messages", params=params)

    def respond_to_person(self, user_id: str, text: str) -> None:
        """Send a private message to a user."""
        path = f"/private/{urllib.parse.quote(str(user_id))}/messages"
        self._request("POST", path, params={"event": "message", "content": text})
