"""
Optimistic WATCH/MULTI/EXEC transactions.

``body(pipe)`` runs with the pipeline in immediate mode: it may WATCH more
keys and read them, validate, then call ``pipe.multi()`` and queue writes.
If any watched key changes before EXEC the whole body runs again against
fresh state. Domain errors raised by the body propagate untouched and
nothing is written.
"""

import logging
from typing import Callable, Iterable, TypeVar

import redis

from Willo_Vault.willo_shared import config, errors

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_optimistic(
    client: redis.Redis,
    watch_keys: Iterable[str],
    body: Callable[[redis.client.Pipeline], T],
    operation: str,
    retries: int = config.OPTIMISTIC_LOCK_RETRIES,
) -> T:
    keys = list(watch_keys)
    try:
        for attempt in range(retries):
            with client.pipeline(transaction=True) as pipe:
                try:
                    if keys:
                        pipe.watch(*keys)
                    result = body(pipe)
                    pipe.execute()
                    return result
                except redis.WatchError:
                    logger.debug("%s: watched key changed, retry %d", operation, attempt + 1)
                    continue

        logger.warning("%s: gave up after %d conflicting attempts", operation, retries)
        raise errors.ConcurrencyConflict(operation)
    except redis.exceptions.ConnectionError:
        raise errors.StoreUnavailableError(operation)
