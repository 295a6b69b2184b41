import asyncio
import logging
import time
import uuid
from typing import Optional

from msgspec import msgpack, Struct

from common.kafka.events import encode_event

OUTBOX_PENDING = "outbox:pending"


def outbox_key(entry_id: str) -> str:
    return f"outbox:{entry_id}"


class OutboxEntry(Struct):
    id: str
    topic: str
    key: Optional[str]
    payload: bytes
    created_at: float
    attempts: int = 0


class Outbox:
    """Outbound events persisted in the same transaction as the state change.

    The post-commit publish removes the entry once the broker acknowledged it;
    anything left behind (crash between commit and publish, broker down) is
    picked up by ``dispatch_pending``.
    """

    def __init__(self, logger, db, producer, grace_period: float = 10.0):
        self.logger = logger
        self.db = db
        self.producer = producer
        self.grace_period = grace_period

    def stage(self, tx, topic: str, key: Optional[str], event) -> OutboxEntry:
        entry = OutboxEntry(
            id=str(uuid.uuid4()),
            topic=topic,
            key=key,
            payload=encode_event(event),
            created_at=time.time(),
        )
        tx.set(outbox_key(entry.id), msgpack.encode(entry))
        tx.sadd(OUTBOX_PENDING, entry.id)
        return entry

    async def publish(self, entry: OutboxEntry) -> bool:
        try:
            await self.producer.send_event(entry.topic, entry.key, entry.payload)
        except Exception as e:
            self.logger.error(f"Failed to publish outbox entry {entry.id} to {entry.topic}: {e}")
            return False
        async with self.db.pipeline(transaction=True) as pipe:
            pipe.srem(OUTBOX_PENDING, entry.id)
            pipe.delete(outbox_key(entry.id))
            await pipe.execute()
        return True

    async def pending(self) -> list[OutboxEntry]:
        entry_ids = await self.db.smembers(OUTBOX_PENDING)
        entries = []
        for entry_id in entry_ids:
            entry_id = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
            raw = await self.db.get(outbox_key(entry_id))
            if raw is None:
                await self.db.srem(OUTBOX_PENDING, entry_id)
                continue
            entries.append(msgpack.decode(raw, type=OutboxEntry))
        return sorted(entries, key=lambda e: e.created_at)

    async def dispatch_pending(self, now: float = None) -> int:
        """Publish entries older than the grace period. Returns how many went out."""
        now = time.time() if now is None else now
        published = 0
        for entry in await self.pending():
            if now - entry.created_at < self.grace_period:
                continue
            entry.attempts += 1
            await self.db.set(outbox_key(entry.id), msgpack.encode(entry))
            self.logger.info(f"Re-publishing outbox entry {entry.id} to {entry.topic} (attempt {entry.attempts})")
            if await self.publish(entry):
                published += 1
        return published


class OutboxDispatcher:

    def __init__(self, outbox: Outbox, interval: float):
        self.outbox = outbox
        self.interval = interval
        self._task = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            try:
                await self.outbox.dispatch_pending()
            except Exception as e:
                logging.error(f"Outbox dispatch failed: {e}")
            await asyncio.sleep(self.interval)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info("Outbox dispatcher stopped")
            self._task = None
