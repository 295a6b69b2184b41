from redis.asyncio import Redis, Sentinel

from common import config


def create_redis():
    """Connect to the service's Redis, through Sentinel when REDIS_SENTINEL_HOSTS is set."""
    if config.REDIS_SENTINEL_HOSTS:
        sentinel = Sentinel(
            [
                (host.split(':')[0].strip(), int(host.split(':')[1]))
                for host in config.REDIS_SENTINEL_HOSTS.split(',')
            ],
            password=config.REDIS_PASSWORD
        )
        return sentinel.master_for(
            service_name=config.REDIS_SERVICE_NAME,
            password=config.REDIS_PASSWORD,
            db=config.REDIS_DB
        )
    return Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        password=config.REDIS_PASSWORD,
        db=config.REDIS_DB
    )


async def next_id(db, sequence: str) -> int:
    """Store-assigned identifier, like an identity column."""
    return int(await db.incr(sequence))
