from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from core.models import RemoveRequest
from storage.strikes import StrikeStore, make_removal_key


class Topic:
    """Ordered single-consumer queue with at most one message waiting and one in flight.

    ``publish`` blocks while the previous message is still waiting, so
    producers never run ahead of the consumer by more than one message.
    """

    def __init__(self, name: str, handler: Callable[[Any], Awaitable[None]], *, depth: int = 1) -> None:
        self.name = name
        self.handler = handler
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=depth)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._consume(), name=f'topic:{self.name}')

    async def publish(self, message: Any) -> None:
        if not self.running:
            self.start()
        await self._queue.put(message)

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.handler(message)
            except Exception as e:
                logging.error(f'{self.name} consumer failed: {e}')
            finally:
                self._queue.task_done()


class RemovalPipeline:
    def __init__(
        self,
        arr: Any,
        publisher: Any,
        strikes: StrikeStore,
        *,
        search_enabled: bool = True,
        search_delay: float = 30,
    ) -> None:
        self.arr = arr
        self.publisher = publisher
        self.strikes = strikes
        self.search_enabled = search_enabled
        self.search_delay = search_delay
        self.removals = Topic('removal', self._handle)

    def configure(self, *, search_enabled: bool, search_delay: float) -> None:
        self.search_enabled = search_enabled
        self.search_delay = search_delay

    async def submit(self, request: RemoveRequest) -> None:
        await self.removals.publish(request)

    async def join(self) -> None:
        await self.removals.join()

    async def stop(self) -> None:
        await self.removals.stop()

    async def _handle(self, request: RemoveRequest) -> None:
        instance = request.instance
        record = request.record
        try:
            await self.arr.delete_queue_item(instance, record, request.remove_from_client, request.reason)

            searched = False
            if self.search_enabled and request.search_item is not None:
                searched = await self.arr.search_items(instance, request.search_item)
            await self.publisher.notify_queue_item_deleted(request)

            # keep replacement searches from hammering the trackers
            if searched and self.search_delay > 0:
                await asyncio.sleep(self.search_delay)
        except Exception as e:
            logging.error(f'failed to remove queue item | {record.title} | {instance.url} | {e}')
        finally:
            self.strikes.unmark(make_removal_key(record.download_id, instance.url))
