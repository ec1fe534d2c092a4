"""
redis_connector — Sample
========================

Walks through the connection modes of redis_connector against a local
Redis (and, optionally, a Sentinel deployment).

Prerequisites:
    redis-server on 127.0.0.1:6379
    (optional) redis-sentinel on 127.0.0.1:26379 monitoring "mymaster"
    pip install redis

Run:
    python sample.py
"""

import asyncio
import logging

from redis_connector import ConnectionResult, RedisConnector, Role, parse_dsn

# ─────────────────────────────────────────────────────────────
# Logging — see dial failures, fallbacks and DSN problems
# ─────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(name)-20s  %(levelname)-7s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("sample")


SENTINEL_CONFIG = {
    "sentinels": [
        ("127.0.0.1", 26379),
        ("127.0.0.1", 26380),
        ("127.0.0.1", 26381),
    ],
    "master_name": "mymaster",
    "role": Role.ANY,
    "connect_timeout": 0.5,
    "read_timeout": 2.0,
}


def banner(title: str) -> None:
    width = 60
    log.info("")
    log.info("=" * width)
    log.info(f"  {title}")
    log.info("=" * width)


def report(result: ConnectionResult) -> None:
    if result:
        log.info(f"Connected: {result.connection}")
    else:
        log.info(f"Failed: {type(result.error).__name__}: {result.error}")
    for i, error in enumerate(result.previous_errors, 1):
        log.info(f"  earlier failure {i}: {type(error).__name__}: {error}")


# ─────────────────────────────────────────────────────────────
# 1. DSN parsing (no I/O)
# ─────────────────────────────────────────────────────────────
def demo_dsn() -> None:
    banner("DSN Parsing")
    for url in (
        "redis://foo@127.0.0.1:6379/4",
        "sentinel://foo@mymaster:s/2",
        "redis://missing-port",
    ):
        log.info(f"{url} -> {parse_dsn({'url': url})}")


# ─────────────────────────────────────────────────────────────
# 2. Direct connection
# ─────────────────────────────────────────────────────────────
async def demo_direct() -> None:
    banner("Direct Connection")
    connector = RedisConnector({"port": 6379})

    result = await connector.connect()
    report(result)
    if result:
        redis = result.connection
        await redis.set("sample:key", "hello")
        log.info(f"GET sample:key -> {await redis.get('sample:key')}")
        await redis.delete("sample:key")
        ok, error = await connector.set_keepalive(redis)
        log.info(f"Released to pool: {ok} {error or ''}")

    # Per-call overrides never touch the connector's own configuration
    report(await connector.connect(url="redis://127.0.0.1:6379/2"))
    log.info(f"Connector db is still {connector.config.db}")
    await connector.close()


# ─────────────────────────────────────────────────────────────
# 3. Trying several hosts in order
# ─────────────────────────────────────────────────────────────
async def demo_try_hosts() -> None:
    banner("Host Trial Loop")
    connector = RedisConnector()
    result = await connector.try_hosts([("127.0.0.1", 1), ("127.0.0.1", 6379)])
    report(result)
    if result:
        await connector.set_keepalive(result.connection)
    await connector.close()


# ─────────────────────────────────────────────────────────────
# 4. Sentinel resolution
# ─────────────────────────────────────────────────────────────
async def demo_sentinel() -> None:
    banner("Sentinel Resolution")
    async with RedisConnector(SENTINEL_CONFIG) as connector:
        for role in (Role.MASTER, Role.SLAVE, Role.ANY):
            log.info(f"role={role.value}")
            result = await connector.connect(role=role)
            report(result)
            if result:
                await connector.set_keepalive(result.connection)


async def main() -> None:
    demo_dsn()
    await demo_direct()
    await demo_try_hosts()
    await demo_sentinel()


if __name__ == "__main__":
    asyncio.run(main())
