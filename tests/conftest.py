"""Pytest configuration and fixtures."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from reserve_flow_tracker.flows.windows import Window


@pytest.fixture
def window() -> Window:
    """One week in February 2024 (UTC)."""
    return Window(
        start=datetime(2024, 2, 1, tzinfo=UTC),
        end=datetime(2024, 2, 8, tzinfo=UTC),
    )


@pytest.fixture
def mock_http() -> MagicMock:
    """HttpClient double; tests configure get_json/post_json side effects."""
    http = MagicMock()
    http.get_json = AsyncMock()
    http.post_json = AsyncMock()
    http.aclose = AsyncMock()
    return http
