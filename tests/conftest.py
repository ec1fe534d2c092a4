"""
Pytest configuration and fixtures for redis_connector tests.

Provides:
- A patched ``redis.asyncio.Redis`` factory with scriptable endpoints
- Configuration fixtures for direct and Sentinel scenarios
- Integration test markers and CLI options
"""

import pytest
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError

from redis_connector import RedisConnector


# ============================================================================
# Pytest Hooks for Integration Tests
# ============================================================================

def pytest_addoption(parser):
    """Add custom command line options for pytest."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires running Redis instance)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires running Redis)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is provided."""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================================================
# Fake Redis
# ============================================================================

def replica_state(host: str, port: int = 6379, **flags) -> Dict:
    """Build a parsed SENTINEL SLAVES entry as redis-py returns it."""
    state = {
        "ip": host,
        "port": port,
        "is_sdown": False,
        "is_odown": False,
        "is_disconnected": False,
        "master-link-status": "ok",
    }
    state.update(flags)
    return state


def make_mock_client(pool) -> AsyncMock:
    """Create a mock async Redis client that connects successfully."""
    client = AsyncMock()
    client.connection_pool = pool
    client.kwargs = pool.connection_kwargs
    client.initialize = AsyncMock(return_value=client)
    client.execute_command = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.connection = MagicMock()
    return client


class FakeRedisFactory:
    """
    Stands in for ``redis.asyncio.Redis``.

    Clients are built on the real ``ConnectionPool`` the connector passes
    in; ``client.kwargs`` is that pool's connection settings. Endpoints
    are keyed as ``"host:port"`` (or the socket path). Unknown endpoints
    connect successfully; endpoints registered with ``down`` fail to dial,
    ``bad_password`` fail the AUTH handshake, and ``sentinel`` answer
    master/replica queries.
    """

    def __init__(self):
        self.down: Dict[str, Exception] = {}
        self.auth_errors: Dict[str, Exception] = {}
        self.select_errors: Dict[str, Exception] = {}
        self.sentinels: Dict[str, Tuple[Optional[Tuple[str, int]], List[Dict]]] = {}
        self.query_errors: Dict[str, Dict[str, Exception]] = {}
        self.created: List[Tuple[str, AsyncMock]] = []

    def mark_down(self, key: str, error: Optional[Exception] = None) -> None:
        self.down[key] = error or ConnectionError(f"Connection refused ({key})")

    def bad_password(self, key: str, error: Exception) -> None:
        self.auth_errors[key] = error

    def bad_select(self, key: str, error: Exception) -> None:
        self.select_errors[key] = error

    def sentinel(self, key: str, master=None, replicas=()) -> None:
        self.sentinels[key] = (master, list(replicas))

    def fail_query(self, key: str, method: str, error: Exception) -> None:
        """Make a Sentinel query method raise on this endpoint."""
        self.query_errors.setdefault(key, {})[method] = error

    def __call__(self, connection_pool, **kwargs) -> AsyncMock:
        settings = connection_pool.connection_kwargs
        key = settings.get("path") or f"{settings['host']}:{settings['port']}"
        client = make_mock_client(connection_pool)
        client.client_kwargs = kwargs
        if key in self.down:
            client.initialize.side_effect = self.down[key]
        if key in self.auth_errors:
            client.initialize.side_effect = self.auth_errors[key]
        if key in self.select_errors:
            client.execute_command.side_effect = self.select_errors[key]
        if key in self.sentinels:
            master, replicas = self.sentinels[key]
            client.sentinel_get_master_addr_by_name = AsyncMock(return_value=master)
            client.sentinel_slaves = AsyncMock(return_value=replicas)
        for method, error in self.query_errors.get(key, {}).items():
            setattr(client, method, AsyncMock(side_effect=error))
        self.created.append((key, client))
        return client

    @property
    def dialled(self) -> List[str]:
        return [key for key, _ in self.created]

    def client_for(self, key: str) -> AsyncMock:
        """Most recently created client for an endpoint."""
        for created_key, client in reversed(self.created):
            if created_key == key:
                return client
        raise KeyError(key)


@pytest.fixture
def fake_redis():
    """Patch redis.asyncio.Redis with a scriptable fake."""
    factory = FakeRedisFactory()
    with patch("redis_connector.redis.Redis", side_effect=factory):
        yield factory


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def direct_params() -> Dict:
    return {"host": "redis.example.com", "port": 6380, "password": "secret123", "db": 1}


@pytest.fixture
def sentinel_params() -> Dict:
    """Sentinel (HA) configuration with three Sentinels."""
    return {
        "sentinels": [
            ("sentinel1.example.com", 26379),
            ("sentinel2.example.com", 26379),
            ("sentinel3.example.com", 26379),
        ],
        "master_name": "mymaster",
        "role": "master",
    }


@pytest.fixture
def mock_logger() -> MagicMock:
    """Create a mock logger for testing log output."""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger


@pytest.fixture
def connector(mock_logger) -> RedisConnector:
    """Connector with default configuration and a mock logger."""
    return RedisConnector(logger=mock_logger)
