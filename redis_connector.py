"""
Redis Connector Module

Resolves a declarative configuration into a single live, authenticated,
db-selected Redis connection:
- Direct host / unix socket connections
- Sentinel (HA) master and replica discovery with role-based failover
- DSN parsing for ``redis://`` and ``sentinel://`` connection strings

Every failure seen along the way is returned in a ``ConnectionResult``
rather than raised, so callers can inspect the full history.

"""

import copy
import logging
import re
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.exceptions import AuthenticationError, RedisError
from redis.utils import str_if_bytes

__version__ = "0.3.0"

LOCALHOST = "127.0.0.1"


# =============================================================================
# Errors
# =============================================================================

class ConnectorError(Exception):
    """Base class for errors produced by the connector itself."""


class ConfigurationError(ConnectorError, ValueError):
    """Unknown or invalid configuration field."""


class NoHostsAvailableError(ConnectorError):
    """The candidate endpoint list was empty."""


class SentinelConnectionError(ConnectorError):
    """None of the configured Sentinels could be reached."""


class MasterNotFoundError(ConnectorError):
    """Sentinel has no master registered under the requested name."""


class ClusterNotImplementedError(ConnectorError, NotImplementedError):
    """Cluster startup nodes were configured; cluster mode is not supported."""


class ReleaseError(ConnectorError):
    """The connection is not in a state that can be returned to the pool."""


# =============================================================================
# Types
# =============================================================================

class Role(str, Enum):
    """
    Which Sentinel-managed node a connection should target.

    ``ANY`` prefers the master and falls back to a replica when the
    master cannot be reached.
    """
    MASTER = "master"
    SLAVE = "slave"
    REPLICA = "slave"
    ANY = "any"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.lower() == "replica":
            return cls.SLAVE
        return None


def _as_int(value: Any, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"invalid {name}: {value!r}") from None


@dataclass(frozen=True)
class Endpoint:
    """
    One dialable target.

    Either ``path`` (unix socket) or ``host``/``port`` is used; ``password``
    and ``db`` are optional per-endpoint overrides.
    """
    host: str = LOCALHOST
    port: Optional[int] = 6379
    path: Optional[str] = None
    password: Optional[str] = None
    db: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "port", _as_int(self.port, "port"))
        object.__setattr__(self, "db", _as_int(self.db, "db"))
        if self.path == "":
            object.__setattr__(self, "path", None)

    def __str__(self) -> str:
        if self.path:
            return self.path
        return f"{self.host}:{self.port}"

    @classmethod
    def coerce(cls, value: Any) -> "Endpoint":
        """
        Build an Endpoint from the shapes accepted in configuration.

        Accepts an ``Endpoint``, a ``(host, port)`` tuple, a ``"host:port"``
        or ``"/path/to.sock"`` string, or a mapping of Endpoint fields.

        Raises:
            ConfigurationError: if the value cannot describe an endpoint
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            known = {f.name for f in fields(cls)}
            for key in value:
                if key not in known:
                    raise ConfigurationError(f"field {key} does not exist")
            return cls(**value)
        if isinstance(value, str):
            if value.startswith("/"):
                return cls(path=value)
            host, sep, port = value.rpartition(":")
            if not sep or not host:
                raise ConfigurationError(f"invalid endpoint: {value!r}")
            return cls(host=host, port=port)
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls(host=value[0], port=value[1])
        raise ConfigurationError(f"invalid endpoint: {value!r}")


@dataclass(frozen=True)
class ConnectorConfig:
    """
    Closed configuration schema for the connector.

    Every field has a default; ``merge_defaults`` rejects any key that is
    not one of these fields.

    Attributes:
        connect_timeout: Seconds allowed for establishing a connection
        read_timeout: Seconds allowed for each socket read once connected
        connection_options: Extra keyword arguments for each pooled connection,
                            laid over the timeout and keepalive settings
        keepalive_timeout: Idle seconds before a pooled connection is
                           health-checked on reuse
        keepalive_poolsize: Maximum connections held by an endpoint's pool
        host: Redis host (direct mode)
        port: Redis port (direct mode)
        path: Unix socket path, takes precedence over host/port
        password: Password sent with AUTH when non-empty
        db: Logical database selected after connecting
        master_name: Name of the Sentinel-monitored master
        role: Which node to connect to via Sentinel
        sentinels: Sentinel endpoints; non-empty selects Sentinel mode
        cluster_startup_nodes: Reserved for cluster mode (not implemented)
        url: Optional ``redis://`` or ``sentinel://`` DSN
    """
    connect_timeout: float = 0.1
    read_timeout: float = 1.0
    connection_options: Optional[Dict[str, Any]] = None
    keepalive_timeout: float = 60.0
    keepalive_poolsize: int = 30

    host: str = LOCALHOST
    port: int = 6379
    path: str = ""
    password: str = ""
    db: Optional[int] = 0

    master_name: str = "mymaster"
    role: Role = Role.MASTER
    sentinels: Tuple[Endpoint, ...] = ()

    cluster_startup_nodes: Tuple[Endpoint, ...] = ()

    url: Optional[str] = None

    def __post_init__(self):
        try:
            role = Role(self.role)
        except ValueError:
            raise ConfigurationError(f"invalid role: {self.role!r}") from None
        object.__setattr__(self, "role", role)
        object.__setattr__(self, "port", _as_int(self.port, "port"))
        object.__setattr__(self, "db", _as_int(self.db, "db"))
        object.__setattr__(
            self, "sentinels", tuple(Endpoint.coerce(s) for s in self.sentinels or ())
        )
        object.__setattr__(
            self,
            "cluster_startup_nodes",
            tuple(Endpoint.coerce(n) for n in self.cluster_startup_nodes or ()),
        )

    def to_params(self) -> Dict[str, Any]:
        """Return the configuration as a plain dict of field values."""
        return {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}

    def endpoint(self) -> Endpoint:
        """The direct-mode endpoint described by this configuration."""
        return Endpoint(
            host=self.host,
            port=self.port,
            path=self.path or None,
            password=self.password,
            db=self.db,
        )


@dataclass
class ConnectionResult:
    """
    Outcome of a connection attempt.

    Holds either a live ``connection`` or a headline ``error``; in both
    cases ``previous_errors`` lists the failures that came before, oldest
    first. The headline error is never repeated in ``previous_errors``.
    """
    connection: Optional[redis.Redis] = None
    error: Optional[Exception] = None
    previous_errors: List[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.connection is not None

    def __bool__(self) -> bool:
        return self.ok

    @property
    def errors(self) -> List[Exception]:
        """Every failure encountered, the headline error last."""
        if self.error is None:
            return list(self.previous_errors)
        return list(self.previous_errors) + [self.error]

    def unwrap(self) -> redis.Redis:
        """Return the connection, or raise the headline error."""
        if self.connection is None:
            raise self.error or NoHostsAvailableError("no hosts available")
        return self.connection


# =============================================================================
# Config Normalizer
# =============================================================================

def _merge_value(value: Any, default: Any) -> Any:
    if isinstance(value, Mapping) and isinstance(default, Mapping):
        merged = {k: _merge_value(v, default.get(k)) for k, v in value.items()}
        for key, default_value in default.items():
            if key not in value:
                merged[key] = copy.deepcopy(default_value)
        return merged
    return copy.deepcopy(value)


def merge_defaults(
    overrides: Union[Mapping[str, Any], ConnectorConfig, None],
    defaults: ConnectorConfig,
) -> ConnectorConfig:
    """
    Merge ``overrides`` over ``defaults`` into a new configuration.

    Nested mappings are merged recursively; everything else in
    ``overrides`` replaces the default. Neither input is mutated and the
    result shares no mutable state with either.

    Args:
        overrides: Partial configuration (mapping or ConnectorConfig)
        defaults: Complete configuration supplying missing fields

    Returns:
        A fresh ConnectorConfig

    Raises:
        ConfigurationError: if ``overrides`` names a field that does not exist
    """
    if overrides is None:
        overrides = {}
    elif isinstance(overrides, ConnectorConfig):
        overrides = overrides.to_params()

    known = {f.name for f in fields(defaults)}
    merged: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(f"field {key} does not exist")
        merged[key] = _merge_value(value, getattr(defaults, key))
    for name in known:
        if name not in merged:
            merged[name] = copy.deepcopy(getattr(defaults, name))
    return ConnectorConfig(**merged)


DEFAULTS = ConnectorConfig()


# =============================================================================
# DSN Parser
# =============================================================================

DSN_PATTERN = re.compile(
    r"^(?:(?P<scheme>redis|sentinel)://)"
    r"(?:(?P<password>[^@]*)@)?"
    r"(?P<target>[^:/@]+)"
    r":(?P<qualifier>\d+|[msa])"
    r"(?:/(?P<db>\d*))?$"
)

DSN_ROLES = {"m": "master", "s": "slave", "a": "any"}


def parse_dsn(
    params: Mapping[str, Any],
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """
    Fill connection parameters from ``params["url"]``.

    ``redis://[password@]host:port[/db]`` fills host, port, db and password.
    ``sentinel://[password@]master_name:role[/db]`` fills master_name,
    role (``m``/``s``/``a`` -> master/slave/any), db and password.

    Values are filled as the strings found in the URL. A field already
    present in ``params`` is never overwritten, and a password is only
    filled when the URL carries one. A URL that does not parse is logged
    as ``could not parse DSN: <cause>`` and ``params`` come back unchanged.

    Returns:
        A new dict; ``params`` itself is not modified.
    """
    logger = logger or logging.getLogger("RedisDSN")
    result = dict(params)
    url = params.get("url")
    if not url:
        return result

    match = DSN_PATTERN.match(url)
    if not match:
        logger.error(f"could not parse DSN: {url!r} does not match "
                     "scheme://[password@]host:port[/db]")
        return result

    scheme = match.group("scheme")
    qualifier = match.group("qualifier")
    if scheme == "redis":
        if not qualifier.isdigit():
            logger.error(f"could not parse DSN: invalid port {qualifier!r}")
            return result
        parsed = {"host": match.group("target"), "port": qualifier}
    else:
        if qualifier not in DSN_ROLES:
            logger.error(f"could not parse DSN: invalid role {qualifier!r}")
            return result
        parsed = {"master_name": match.group("target"), "role": DSN_ROLES[qualifier]}

    if match.group("password") is not None:
        parsed["password"] = match.group("password")
    if match.group("db"):
        parsed["db"] = match.group("db")

    for key, value in parsed.items():
        if params.get(key) is None:
            result[key] = value
    return result


# =============================================================================
# Sentinel queries
# =============================================================================

async def get_master(sentinel: redis.Redis, master_name: str) -> Endpoint:
    """
    Ask a Sentinel for the current master address of ``master_name``.

    Raises:
        MasterNotFoundError: if the Sentinel does not know the master
        RedisError: if the query itself fails
    """
    address = await sentinel.sentinel_get_master_addr_by_name(master_name)
    if not address:
        raise MasterNotFoundError(f"invalid master name {master_name!r}")
    host, port = address
    return Endpoint(host=str_if_bytes(host), port=port)


async def get_replicas(sentinel: redis.Redis, master_name: str) -> List[Endpoint]:
    """
    Ask a Sentinel for the healthy replicas of ``master_name``.

    Replicas flagged down or disconnected, or with a broken link to the
    master, are left out. Order is as reported by the Sentinel.
    """
    replicas = await sentinel.sentinel_slaves(master_name)
    endpoints = []
    for state in replicas or []:
        if state.get("is_sdown") or state.get("is_odown") or state.get("is_disconnected"):
            continue
        link_status = state.get("master-link-status")
        if link_status is not None and str_if_bytes(link_status) != "ok":
            continue
        endpoints.append(Endpoint(host=str_if_bytes(state["ip"]), port=state["port"]))
    return endpoints


def sort_by_localhost(replicas: Sequence[Endpoint]) -> List[Endpoint]:
    """Move replicas on 127.0.0.1 to the front, keeping the rest in order."""
    return sorted(replicas, key=lambda replica: replica.host != LOCALHOST)


# =============================================================================
# Connector
# =============================================================================

class RedisConnector:
    """
    Connects to Redis directly or through Sentinel.

    Per-call parameters are merged over the instance configuration without
    modifying it. Connections are drawn from one ``ConnectionPool`` per
    endpoint and settings, and ``set_keepalive`` returns them there for
    reuse by later calls. ``close`` disconnects every pool.

    Usage::

        async with RedisConnector({"port": 6379}) as connector:
            result = await connector.connect()
            if result:
                await result.connection.set("key", "value")
                await connector.set_keepalive(result.connection)

        # Sentinel, falling back to a replica if the master is down
        connector = RedisConnector({
            "sentinels": [("sentinel1", 26379), ("sentinel2", 26379)],
            "master_name": "mymaster",
            "role": "any",
        })
        result = await connector.connect()
        redis = result.unwrap()
    """

    def __init__(
        self,
        config: Union[Mapping[str, Any], ConnectorConfig, None] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            config: Partial configuration merged over ``DEFAULTS``.
            logger: Custom logger instance. Creates one if not provided.

        Raises:
            ConfigurationError: on unknown or invalid fields
        """
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        if isinstance(config, ConnectorConfig):
            config = config.to_params()
        self._params: Dict[str, Any] = _merge_value(dict(config or {}), {})
        self.config = merge_defaults(self._params, DEFAULTS)
        self._pools: Dict[Tuple, redis.ConnectionPool] = {}

    def _update(self, **params: Any) -> None:
        self._params = _merge_value(params, self._params)
        self.config = merge_defaults(self._params, DEFAULTS)

    def set_connect_timeout(self, timeout: float) -> None:
        self._update(connect_timeout=timeout)

    def set_read_timeout(self, timeout: float) -> None:
        self._update(read_timeout=timeout)

    def set_connection_options(self, options: Optional[Dict[str, Any]]) -> None:
        # Replaces rather than merges the previous options
        self._params.pop("connection_options", None)
        self._update(connection_options=options)

    def effective_config(
        self,
        params: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> ConnectorConfig:
        """
        Build the configuration for one call.

        Call parameters are merged over the instance's own, then any
        ``url`` is parsed to fill fields neither supplied explicitly.

        Raises:
            ConfigurationError: on unknown or invalid fields
        """
        call_params = dict(params or {})
        call_params.update(kwargs)
        merged = _merge_value(call_params, self._params)
        if merged.get("url"):
            merged = parse_dsn(merged)
        return merge_defaults(merged, DEFAULTS)

    async def connect(
        self,
        params: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> ConnectionResult:
        """
        Resolve and open a connection.

        Dispatches to Sentinel resolution when sentinels are configured,
        otherwise connects directly to host/port (or path).

        Returns:
            ConnectionResult with the live connection, or the error and the
            errors that preceded it.

        Raises:
            ConfigurationError: if the call parameters are invalid
        """
        config = self.effective_config(params, **kwargs)

        if config.sentinels:
            return await self.connect_via_sentinel(config)
        if config.cluster_startup_nodes:
            # TODO: resolve slots from the startup nodes once cluster mode lands
            return ConnectionResult(
                error=ClusterNotImplementedError("Redis Cluster not yet implemented")
            )
        connection, error = await self.connect_to_host(config.endpoint(), config)
        return ConnectionResult(connection=connection, error=error)

    async def connect_via_sentinel(
        self,
        config: Optional[ConnectorConfig] = None,
    ) -> ConnectionResult:
        """
        Discover and connect to the master or a replica via Sentinel.

        With role ``any`` a master that cannot be found or reached is
        recorded in the error history and replicas are tried instead.
        """
        config = config or self.config
        master_name = config.master_name
        role = config.role

        result = await self.try_hosts(config.sentinels, config)
        if not result:
            error = SentinelConnectionError(
                f"could not connect to any sentinel: {result.error}"
            )
            error.__cause__ = result.error
            return ConnectionResult(error=error, previous_errors=result.previous_errors)
        sentinel = result.connection

        history: List[Exception] = []
        if role in (Role.MASTER, Role.ANY):
            try:
                master = await get_master(sentinel, master_name)
            except (ConnectorError, RedisError, OSError) as e:
                self.logger.error(f"Failed to get master {master_name}: {type(e).__name__}: {e}")
                if role is Role.MASTER:
                    await self._release_sentinel(sentinel)
                    return ConnectionResult(error=e)
                history.append(e)
            else:
                master = replace(master, db=config.db, password=config.password)
                connection, error = await self.connect_to_host(master, config)
                if connection is not None:
                    await self._release_sentinel(sentinel)
                    self.logger.info(f"Connected to {master_name} master at {master}")
                    return ConnectionResult(connection=connection)
                if role is Role.MASTER:
                    await self._release_sentinel(sentinel)
                    return ConnectionResult(error=error)
                self.logger.warning(
                    f"Master {master_name} at {master} unreachable, trying replicas"
                )
                history.append(error)

        try:
            replicas = await get_replicas(sentinel, master_name)
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to get replicas of {master_name}: {type(e).__name__}: {e}")
            return ConnectionResult(error=e, previous_errors=history)
        finally:
            await self._release_sentinel(sentinel)

        replicas = [
            replace(replica, db=config.db, password=config.password)
            for replica in sort_by_localhost(replicas)
        ]

        result = await self.try_hosts(replicas, config)
        result.previous_errors = history + result.previous_errors
        if result:
            self.logger.info(f"Connected to {master_name} replica")
        return result

    async def try_hosts(
        self,
        hosts: Sequence[Any],
        config: Optional[ConnectorConfig] = None,
    ) -> ConnectionResult:
        """
        Try each host in order until one connects.

        Returns:
            On success, the connection with every earlier failure in
            ``previous_errors``. On exhaustion, the last failure as
            ``error`` and the ones before it in ``previous_errors``.
        """
        config = config or self.config
        if not hosts:
            return ConnectionResult(error=NoHostsAvailableError("no hosts available"))

        errors: List[Exception] = []
        for host in hosts:
            connection, error = await self.connect_to_host(Endpoint.coerce(host), config)
            if connection is not None:
                return ConnectionResult(connection=connection, previous_errors=errors)
            errors.append(error)
        last = errors.pop()
        return ConnectionResult(error=last, previous_errors=errors)

    def _get_pool(
        self,
        host: Endpoint,
        config: ConnectorConfig,
    ) -> Tuple[Tuple, redis.ConnectionPool]:
        """
        Return the shared pool for an endpoint, creating it on first use.

        ``connection_options`` are laid over the timeout and keepalive
        settings; the target address always comes from ``host``. The
        password is part of the connection settings, so every connection
        the pool opens (including reconnects) authenticates in its
        handshake.
        """
        kwargs: Dict[str, Any] = {
            "socket_connect_timeout": config.connect_timeout,
            "socket_timeout": config.read_timeout,
            "health_check_interval": config.keepalive_timeout,
            "max_connections": config.keepalive_poolsize,
        }
        kwargs.update(config.connection_options or {})
        if host.path:
            kwargs.pop("host", None)
            kwargs.pop("port", None)
            kwargs["connection_class"] = redis.UnixDomainSocketConnection
            kwargs["path"] = host.path
        else:
            kwargs["host"] = host.host
            kwargs["port"] = host.port
        if host.password:
            kwargs["password"] = host.password

        key = (tuple(sorted((k, repr(v)) for k, v in kwargs.items())), host.db)
        pool = self._pools.get(key)
        if pool is None:
            pool = redis.ConnectionPool(**kwargs)
            self._pools[key] = pool
        return key, pool

    async def connect_to_host(
        self,
        host: Endpoint,
        config: Optional[ConnectorConfig] = None,
    ) -> Tuple[Optional[redis.Redis], Optional[Exception]]:
        """
        Open one connection to one endpoint.

        Dials with ``connect_timeout``, reads with ``read_timeout`` and
        authenticates during the handshake when a password is set, then
        selects ``db`` when given. A failed SELECT is logged but does not
        fail the connection; a successful one is recorded on the
        connection and its pool so reconnects return to the same db.

        Returns:
            ``(connection, None)`` or ``(None, error)``
        """
        config = config or self.config
        key, pool = self._get_pool(host, config)
        client = redis.Redis(connection_pool=pool, single_connection_client=True)

        try:
            await client.initialize()
        except AuthenticationError as e:
            self.logger.error(f"AUTH failed for {host}: {e}")
            await client.aclose(close_connection_pool=False)
            return None, e
        except (RedisError, OSError) as e:
            self.logger.error(f"{type(e).__name__}: {e} for {host}")
            await client.aclose(close_connection_pool=False)
            return None, e
        except TypeError as e:
            # Unknown keyword in connection_options
            self._pools.pop(key, None)
            await client.aclose(close_connection_pool=False)
            error = ConfigurationError(f"invalid connection_options: {e}")
            error.__cause__ = e
            self.logger.error(f"{error} for {host}")
            return None, error

        if host.db is not None:
            try:
                await client.execute_command("SELECT", host.db)
            except (RedisError, OSError) as e:
                self.logger.warning(f"SELECT {host.db} failed for {host}: {e}")
            else:
                client.connection.db = host.db
                pool.connection_kwargs["db"] = host.db

        return client, None

    async def set_keepalive(
        self,
        connection: Union[redis.Redis, PubSub],
    ) -> Tuple[bool, Optional[Exception]]:
        """
        Return a connection to its pool.

        Connections in subscribed state, or already released, are refused.
        The pool itself stays open for the next ``connect``.

        Returns:
            ``(True, None)`` or ``(False, error)``
        """
        if isinstance(connection, PubSub):
            if connection.subscribed:
                return False, ReleaseError("subscribed state")
            await connection.aclose()
            return True, None

        if getattr(connection, "connection", None) is None:
            return False, ReleaseError("closed")

        try:
            await connection.aclose(close_connection_pool=False)
        except (RedisError, OSError) as e:
            return False, e
        return True, None

    async def close(self) -> None:
        """
        Disconnect every pooled connection.

        Call this during application shutdown.
        """
        pools = list(self._pools.values())
        self._pools.clear()
        for pool in pools:
            await pool.disconnect()
        if pools:
            self.logger.info(f"Closed {len(pools)} Redis connection pool(s)")

    async def __aenter__(self) -> "RedisConnector":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit with cleanup."""
        await self.close()

    async def _release_sentinel(self, sentinel: redis.Redis) -> None:
        ok, error = await self.set_keepalive(sentinel)
        if not ok:
            self.logger.warning(f"Failed to release sentinel connection: {error}")
