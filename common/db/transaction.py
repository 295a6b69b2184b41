import inspect
import logging
from typing import Callable

from common.kafka.events import event_key


class Transaction:
    """One local atomic unit of work over a Redis WATCH/MULTI/EXEC pipeline.

    Reads happen after ``watch`` and before the first write; writes are queued
    and applied together on exit. Actions registered with ``after_commit``
    (typically event publication) run only once EXEC succeeded: an exception
    inside the block, a ``discard()``, or a failed EXEC drops them unrun.

        async with Transaction(db, producer) as tx:
            await tx.watch(key)
            value = await tx.get(key)
            tx.set(key, new_value)
            tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, event)

    A concurrent change to a watched key makes the exit raise ``WatchError``;
    callers re-run the whole block (see ``retry_on_conflict``).
    """

    def __init__(self, db, producer=None, outbox=None, logger=None):
        self.db = db
        self.producer = producer
        self.outbox = outbox
        self.logger = logger or logging.getLogger(__name__)
        self._pipe = None
        self._callbacks: list[tuple[Callable, tuple, dict]] = []
        self._discarded = False
        self.committed = False

    async def __aenter__(self):
        self._pipe = self.db.pipeline(transaction=True)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc_type is not None or self._discarded:
                self._callbacks.clear()
                return False
            self.multi()
            try:
                await self._pipe.execute()
            except BaseException:
                self._callbacks.clear()
                raise
            self.committed = True
        finally:
            await self._pipe.reset()
        await self._run_callbacks()
        return False

    async def watch(self, *keys):
        await self._pipe.watch(*keys)

    async def get(self, key):
        if self._pipe.explicit_transaction:
            raise RuntimeError("Reads must happen before the first queued write")
        if not self._pipe.watching:
            return await self.db.get(key)
        return await self._pipe.get(key)

    def multi(self):
        if not self._pipe.explicit_transaction:
            self._pipe.multi()

    def set(self, key, value, **kwargs):
        self.multi()
        self._pipe.set(key, value, **kwargs)

    def sadd(self, key, *members):
        self.multi()
        self._pipe.sadd(key, *members)

    def srem(self, key, *members):
        self.multi()
        self._pipe.srem(key, *members)

    def delete(self, *keys):
        self.multi()
        self._pipe.delete(*keys)

    def discard(self):
        """Leave without writing anything; pending after-commit actions are dropped."""
        self._discarded = True

    def after_commit(self, callback: Callable, *args, **kwargs):
        self._callbacks.append((callback, args, kwargs))

    def publish_after_commit(self, topic: str, event, key: str = None):
        key = key if key is not None else event_key(event)
        if self.outbox is not None:
            entry = self.outbox.stage(self, topic, key, event)
            self.after_commit(self.outbox.publish, entry)
        else:
            self.after_commit(self._publish, topic, key, event)

    async def _publish(self, topic, key, event):
        await self.producer.send_event(topic, key, event)

    async def _run_callbacks(self):
        callbacks, self._callbacks = self._callbacks, []
        for callback, args, kwargs in callbacks:
            try:
                result = callback(*args, **kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # Committed state stays committed; with the outbox enabled the entry is still pending.
                self.logger.error(f"After-commit action {getattr(callback, '__name__', callback)} failed: {e}", exc_info=True)
