"""Virtual datacenter API mock for integration testing.

This module provides an in-memory implementation of the platform's REST API
served through httpx.MockTransport, so the full request engine (transport,
retries, async request polling, power transitions) runs without network
access.

Key Features:
- In-memory servers, relations, objects and pinned DHCP addresses
- Async request lifecycle with scripted status sequences
- Fault injection per method and path (status codes, rate limits, exceptions)
- Recording of every request with its arrival time

Usage:
    from vdc_mock import MockPlatform, make_config

    platform = MockPlatform()
    server = platform.state.add_server(power=True)
    async with Client(make_config(platform)) as client:
        await PowerOrchestrator(client).stop(ctx, server.object_uuid)

    assert platform.mutation_summary() == [("PATCH", f"/objects/servers/{id}/power")]
"""

from __future__ import annotations

from typing import Any

import httpx

from vdcops.config import Config

from .platform import InjectedFault, MockPlatform, RecordedRequest, path_for
from .state import MockPlatformState, MockServer, new_id

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"
TEST_API_TOKEN = "test-token"
TEST_API_URL = "https://api.test"


def make_config(platform: MockPlatform, **options: Any) -> Config:
    """Client configuration whose HTTP client talks to `platform`.

    Delays default to a few milliseconds so polling tests run fast.
    """
    values: dict[str, Any] = {
        "user_id": TEST_USER_ID,
        "api_token": TEST_API_TOKEN,
        "api_url": TEST_API_URL,
        "delay_interval": 0.01,
        "max_delay_interval": 0.05,
        "request_completion_timeout": 2.0,
        "power_state_timeout": 2.0,
        "max_retries": 3,
        "http_client": httpx.AsyncClient(transport=platform.transport()),
    }
    values.update(options)
    return Config(**values)


__all__ = [
    "InjectedFault",
    "MockPlatform",
    "MockPlatformState",
    "MockServer",
    "RecordedRequest",
    "TEST_API_TOKEN",
    "TEST_API_URL",
    "TEST_USER_ID",
    "make_config",
    "new_id",
    "path_for",
]
