"""chatwire: rate-limit compliant REST and sharded gateway client core."""

from chatwire.client import Client
from chatwire.config import ClientConfig, ConfigurationError
from chatwire.errors import ChatwireError
from chatwire.gateway import EventChannel, GatewayConfig, Intents, ShardCoordinator
from chatwire.rest import RequestDispatcher, RestConfig

__version__ = "0.1.0"

__all__ = [
    "ChatwireError",
    "Client",
    "ClientConfig",
    "ConfigurationError",
    "EventChannel",
    "GatewayConfig",
    "Intents",
    "RequestDispatcher",
    "RestConfig",
    "ShardCoordinator",
    "__version__",
]
