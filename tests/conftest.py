"""
Shared pytest fixtures for QueryRelay tests.

This module provides common fixtures including:
- InMemoryStore-backed protocol modules (dispatcher, channels, observer, binding)
- Seeded target and template registries
- Redis mocks for RedisStore unit tests
- A scripted QueryRunner for executor tests
"""

import os
import sys
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from queryrelay.modules.channel import ResultChannelModule
from queryrelay.modules.dispatcher import Dispatcher
from queryrelay.modules.executor import ExecutorBinding, QueryResult
from queryrelay.modules.observer import WATCH_PULL, StatusObserver
from queryrelay.modules.registry import (
    QueryTemplate,
    StoreTargetRegistry,
    StoreTemplateRepository,
    Target,
)
from queryrelay.modules.storage import InMemoryStore

TARGET_ID = "acme"
TARGET_NAME = "Acme Corp"
AGENT_ID = "agent-acme"
ISSUER_ID = "engineer-1"
TEMPLATE_ID = "sales-by-range"
TEMPLATE_SQL = "SELECT id, total FROM sales WHERE day BETWEEN {{fromDate}} AND {{toDate}} ORDER BY id"


# =============================================================================
# Protocol Fixtures
# =============================================================================


class ScriptedRunner:
    """QueryRunner double returning canned results and recording queries."""

    def __init__(self, result: Optional[QueryResult] = None, error: Optional[Exception] = None):
        self.result = result or QueryResult(rows=[], columns=[])
        self.error = error
        self.queries: List[str] = []
        self.params: List[List[Any]] = []

    async def run(self, query_text: str, params=()) -> QueryResult:
        self.queries.append(query_text)
        self.params.append(list(params))
        if self.error is not None:
            raise self.error
        return self.result


def rows_result(rows: List[Dict[str, Any]]) -> QueryResult:
    columns = list(rows[0].keys()) if rows else []
    return QueryResult(rows=rows, columns=columns, rows_affected=len(rows))


@pytest.fixture
def store():
    """Fresh in-memory shared store."""
    return InMemoryStore()


@pytest.fixture
def channels(store):
    return ResultChannelModule(store)


@pytest.fixture
def targets(store):
    return StoreTargetRegistry(store)


@pytest.fixture
def templates(store):
    return StoreTemplateRepository(store)


@pytest_asyncio.fixture
async def seeded(targets, templates):
    """Registries holding one active target and one template."""
    await targets.save(Target(id=TARGET_ID, name=TARGET_NAME, agent_principal_id=AGENT_ID))
    await templates.save(QueryTemplate(id=TEMPLATE_ID, name="Sales by range", sql_text=TEMPLATE_SQL))
    return targets, templates


@pytest.fixture
def dispatcher(store, targets, templates):
    return Dispatcher(store, targets, templates)


@pytest.fixture
def observer(store, channels):
    """Pull-mode observer with a short interval."""
    return StatusObserver(store, channels, mode=WATCH_PULL, poll_interval=0.01, max_duration=5.0)


@pytest.fixture
def binding(store, channels, templates):
    return ExecutorBinding(
        store,
        channels,
        principal_id=AGENT_ID,
        target_id=TARGET_ID,
        template_store=templates,
        backoff_initial=0.001,
        backoff_max=0.01,
    )


# =============================================================================
# Redis Mocking Infrastructure
# =============================================================================


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for async operations."""
    redis = AsyncMock()

    # Basic operations
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.mget = AsyncMock(return_value=[])
    redis.delete = AsyncMock(return_value=1)
    redis.incr = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)

    # Sorted set operations
    redis.zadd = AsyncMock(return_value=1)
    redis.zrange = AsyncMock(return_value=[])
    redis.zrem = AsyncMock(return_value=1)

    # Pub/sub
    redis.publish = AsyncMock(return_value=0)
    pubsub = AsyncMock()
    pubsub.get_message = AsyncMock(return_value=None)
    redis.pubsub = MagicMock(return_value=pubsub)

    # Pipeline support
    pipeline = AsyncMock()
    pipeline.execute = AsyncMock(return_value=[True])
    pipeline.multi = MagicMock()
    pipeline.set = MagicMock()
    pipeline.__aenter__ = AsyncMock(return_value=pipeline)
    pipeline.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=pipeline)

    return redis


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: Integration tests requiring infrastructure"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end protocol scenarios"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take a long time to run"
    )
