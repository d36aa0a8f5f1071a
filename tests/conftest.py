"""Pytest configuration and fixtures."""

import sys
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for vdc_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from vdc_mock import MockPlatform, make_config  # noqa: E402

from vdcops.client import Client  # noqa: E402
from vdcops.context import RequestContext  # noqa: E402


@pytest.fixture
def platform() -> MockPlatform:
    """Fresh mock platform with no objects."""
    return MockPlatform()


@pytest_asyncio.fixture
async def client(platform: MockPlatform) -> AsyncGenerator[Client, None]:
    """Synchronous-mode client talking to the mock platform."""
    config = make_config(platform)
    async with Client(config) as c:
        yield c
    assert config.http_client is not None
    await config.http_client.aclose()


@pytest.fixture
def ctx() -> RequestContext:
    """Context with a deadline generous enough for every polling test."""
    return RequestContext.with_timeout(30)
