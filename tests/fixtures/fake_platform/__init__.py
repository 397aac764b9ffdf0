"""In-process fakes of the platform's gateway and gateway-lookup endpoints."""

from tests.fixtures.fake_platform.gateway import (
    FakeGateway,
    collect_until,
    wait_for_event,
    wait_until,
)

__all__ = ["FakeGateway", "collect_until", "wait_for_event", "wait_until"]
