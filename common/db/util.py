import asyncio
import logging
from redis.exceptions import ConnectionError, TimeoutError, RedisError, WatchError
from redis.sentinel import MasterNotFoundError

from common import config


async def retry_db_call(func, *args, retries=None, delay=None, **kwargs):
    retries = config.DB_RETRIES if retries is None else retries
    delay = config.DB_RETRY_DELAY if delay is None else delay
    for attempt in range(retries):
        try:
            return await func(*args, **kwargs)
        except WatchError:
            # conflicts are retry_on_conflict's to handle
            raise
        except (MasterNotFoundError, ConnectionError, TimeoutError, RedisError) as e:
            logging.info(f"Attempt {attempt + 1} failed: {e},  {type(e).__name__}:")
            if attempt < retries - 1:
                await asyncio.sleep(delay)
                continue
            else:
                raise e


async def retry_on_conflict(func, *args, max_conflicts=10, **kwargs):
    """Re-run an optimistic WATCH/MULTI unit of work until it commits without a conflict."""
    for attempt in range(max_conflicts):
        try:
            return await func(*args, **kwargs)
        except WatchError:
            logging.warning(f"Concurrency conflict detected (attempt {attempt + 1}). Transaction aborted, retrying.")
            if attempt == max_conflicts - 1:
                raise
