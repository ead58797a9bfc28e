from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from core.models import CleanCategory, CleanReason, DownloadItem, RemoveRequest, StrikeType
from core.removal import Topic


class EventBus:
    def __init__(self, *, structured_logs: bool, logger) -> None:
        self.structured_logs = structured_logs
        self.logger = logger

    def log(self, event: str, **fields) -> None:
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))
            else:
                self.logger.info(f"{event}: {fields}")
        except Exception:
            self.logger.info(str(payload))


class NotificationPublisher:
    """Fire-and-forget notification events.

    Every event is logged on the event bus and then handed to ``sink`` through
    a single-consumer topic. Sink failures are logged and never reach the
    caller, so a mutation already performed is never rolled back.
    """

    def __init__(self, bus: EventBus, sink: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None) -> None:
        self.bus = bus
        self.sink = sink
        self.topic = Topic('notification', self._deliver)
        self._pending: Set[asyncio.Task] = set()

    async def _deliver(self, event: Dict[str, Any]) -> None:
        if self.sink is None:
            return
        try:
            await self.sink(event)
        except Exception as e:
            logging.warning(f'failed to deliver {event.get("event")} notification: {e}')

    async def publish(self, event: str, **fields) -> None:
        self.bus.log(event, **fields)
        try:
            await self.topic.publish({"event": event, **fields})
        except Exception as e:
            logging.warning(f'failed to publish {event} notification: {e}')

    async def notify_strike(self, strike_type: StrikeType, download_hash: str, count: int, name: Optional[str]) -> None:
        await self.publish('strike', strike_type=strike_type.value, hash=download_hash, strikes=count, title=name)

    def strike_listener(self, strike_type: StrikeType, download_hash: str, count: int, name: Optional[str]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.bus.log('strike', strike_type=strike_type.value, hash=download_hash, strikes=count, title=name)
            return
        task = loop.create_task(self.notify_strike(strike_type, download_hash, count, name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def notify_queue_item_deleted(self, request: RemoveRequest) -> None:
        await self.publish(
            'queue_item_deleted',
            instance=request.instance.url,
            instance_type=request.instance.type.value,
            id=request.record.id,
            hash=request.record.download_id,
            title=request.record.title,
            reason=request.reason.value,
            remove_from_client=request.remove_from_client,
        )

    async def notify_download_cleaned(self, item: DownloadItem, category: CleanCategory, reason: CleanReason) -> None:
        await self.publish(
            'download_cleaned',
            hash=item.hash,
            title=item.name,
            category=category.name,
            ratio=item.ratio,
            seeding_hours=round(item.seeding_time / 3600.0, 2),
            reason=reason.value,
        )

    async def notify_category_changed(self, item: DownloadItem, old: Optional[str], new: str, is_tag: bool = False) -> None:
        await self.publish(
            'category_changed',
            hash=item.hash,
            title=item.name,
            old_category=old,
            new_category=new,
            is_tag=is_tag,
            reason='Unlinked',
        )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.topic.join()

    async def stop(self) -> None:
        await self.drain()
        await self.topic.stop()
