import logging

import redis

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.types import HealthStatus

logger = logging.getLogger(__name__)


def create_client() -> redis.Redis:
    r = redis.Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        db=config.REDIS_DB,
        decode_responses=True,
        socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
    )
    try:
        r.ping()
    except redis.exceptions.ConnectionError:
        logger.error("cannot connect to Redis at %s:%s", config.REDIS_HOST, config.REDIS_PORT)
        raise errors.StoreUnavailableError(f"connect {config.REDIS_HOST}:{config.REDIS_PORT}")
    return r


def health_check(client: redis.Redis) -> HealthStatus:
    connected = False
    keys = 0
    uptime = 0.0

    try:
        connected = bool(client.ping())
        keys = client.dbsize()
        uptime = float(client.info("server").get("uptime_in_seconds", 0))
    except redis.exceptions.ConnectionError:
        connected = False
    except redis.exceptions.ResponseError as e:
        logger.debug("INFO not available: %s", e)

    return HealthStatus(
        store_connected=connected,
        key_count=keys,
        uptime_seconds=uptime,
    )


def close(client: redis.Redis) -> None:
    client.close()
