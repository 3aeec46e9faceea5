"""Public package surface for llm_relay.

Expose the primary entry points used by consumers of the package.
"""

__version__ = "0.1.0"

from llm_relay.config import settings
from llm_relay.dispatcher import Dispatcher
from llm_relay.errors import (
    MissingCredential,
    NoReplyProduced,
    RelayError,
    UpstreamCallFailure,
    UpstreamUnavailable,
)
from llm_relay.models import ChatRequest, ModelCapability, ReasoningEffort
from llm_relay.relay import Relay

__all__ = [
    "ChatRequest",
    "Dispatcher",
    "MissingCredential",
    "ModelCapability",
    "NoReplyProduced",
    "ReasoningEffort",
    "Relay",
    "RelayError",
    "UpstreamCallFailure",
    "UpstreamUnavailable",
    "__version__",
    "settings",
]
