"""Shared fixtures for ServiceDesk Plus MCP tests."""

from collections.abc import Callable
from typing import Any
from unittest.mock import Mock

import pytest
import requests
from pydantic import SecretStr

from mcp_servicedesk.client import ServiceDeskClient
from mcp_servicedesk.config import Config
from tests.helpers import API_KEY, BASE_URL


@pytest.fixture
def config() -> Config:
    return Config(base_url=BASE_URL, api_key=SecretStr(API_KEY))


@pytest.fixture
def session() -> Mock:
    """Mock session; set ``session.request.return_value`` or ``side_effect`` per test."""
    return Mock(spec=requests.Session)


@pytest.fixture
def sdp_client(config: Config, session: Mock) -> ServiceDeskClient:
    return ServiceDeskClient(config=config, session=session)


@pytest.fixture
def decorator_capturer() -> Callable[[Callable[..., Any]], tuple[dict[str, Callable[..., Any]], Callable[..., Any]]]:
    """Capture functions registered through a FastMCP decorator.

    Usage:
        test_tools, capture_tool = decorator_capturer(server.mcp.tool)
        server.mcp.tool = capture_tool
        server._setup_tools()
        test_tools["sdp_ping"]()
    """

    def _capturer(
        original: Callable[..., Any],  # noqa: ARG001
    ) -> tuple[dict[str, Callable[..., Any]], Callable[..., Any]]:
        captured: dict[str, Callable[..., Any]] = {}

        def capture(*_args: Any, **_kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
            def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
                captured[func.__name__] = func
                return func

            return decorator

        return captured, capture

    return _capturer
