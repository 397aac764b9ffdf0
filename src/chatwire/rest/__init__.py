"""REST request layer: route keys, per-route buckets and the dispatcher."""

from chatwire.rest.dispatcher import RequestDispatcher
from chatwire.rest.errors import (
    HTTPError,
    NetworkError,
    RateLimitedError,
    RequestDescription,
    RESTError,
    flatten_errors,
)
from chatwire.rest.routes import route_key, route_template, snowflake_created_at
from chatwire.rest.types import (
    REST_VERSION,
    DispatcherMetrics,
    FileAttachment,
    RestConfig,
)

__all__ = [
    "REST_VERSION",
    "DispatcherMetrics",
    "FileAttachment",
    "HTTPError",
    "NetworkError",
    "RESTError",
    "RateLimitedError",
    "RequestDescription",
    "RequestDispatcher",
    "RestConfig",
    "flatten_errors",
    "route_key",
    "route_template",
    "snowflake_created_at",
]
