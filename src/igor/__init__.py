"""Igor: answers Flowdock mentions and private messages while you are away."""

__version__ = "0.1.0"

from igor.flowdock_client import (
    FlowdockAPIError,
    FlowdockClient,
    IncomingMessage,
    UserDetails,
)
from igor.responder_config import (
    DeliveryError,
    FetchError,
    PendingMention,
    ResponderConfig,
    ResponderError,
    ResponseError,
    TemplateConfigError,
    add_suffix,
)

__all__ = [
    # flowdock_client
    "FlowdockAPIError",
    "FlowdockClient",
    "IncomingMessage",
    "UserDetails",
    # responder_config
    "DeliveryError",
    "FetchError",
    "PendingMention",
    "ResponderConfig",
    "ResponderError",
    "ResponseError",
    "TemplateConfigError",
    "add_suffix",
]
