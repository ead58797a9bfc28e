from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from core.actions import build_search_item
from core.blocklist import BlocklistProvider
from core.config import ConfigAccessor
from core.models import ArrInstance, DeleteReason, DownloadCheckResult, QueueRecord, RemoveRequest
from core.removal import RemovalPipeline
from core.rules import is_torrent
from core.utils import parse_bool
from integrations.arr import ArrClient
from integrations.clients import login_all
from integrations.clients.base import DownloadService
from storage.strikes import StrikeStore, make_removal_key

# which queue_cleaner section owns the delete_private flag for a client-side decision
_DELETE_PRIVATE_SECTION = {
    DeleteReason.STALLED: 'stalled',
    DeleteReason.DOWNLOADING_METADATA: 'stalled',
    DeleteReason.SLOW: 'slow',
    DeleteReason.ALL_FILES_SKIPPED: 'content_blocker',
    DeleteReason.ALL_FILES_BLOCKED: 'content_blocker',
}


def group_by_download_id(records: List[QueueRecord]) -> Dict[str, List[QueueRecord]]:
    groups: Dict[str, List[QueueRecord]] = {}
    for record in records:
        groups.setdefault(record.download_id, []).append(record)
    return groups


def remove_from_client(result: DownloadCheckResult, failed_import: bool, settings: Dict[str, Any]) -> bool:
    """Private downloads stay in the client unless the deciding check allows deleting them."""
    if not result.is_private:
        return True
    if result.should_remove:
        section = _DELETE_PRIVATE_SECTION.get(result.reason)
        if section and not parse_bool((settings.get(section) or {}).get('delete_private'), False):
            return False
    if failed_import and not parse_bool((settings.get('failed_import') or {}).get('delete_private'), False):
        return False
    return True


class QueueCleaner:
    def __init__(
        self,
        arr: ArrClient,
        pipeline: RemovalPipeline,
        blocklists: BlocklistProvider,
        strikes: StrikeStore,
    ) -> None:
        self.arr = arr
        self.pipeline = pipeline
        self.blocklists = blocklists
        self.strikes = strikes

    async def run(self, cfg: ConfigAccessor, services: List[DownloadService], stop: Optional[asyncio.Event] = None) -> int:
        """Walk every Arr queue once; returns the number of removal requests enqueued."""
        stop = stop or asyncio.Event()
        settings = cfg.queue_cleaner()
        if not parse_bool(settings.get('enabled'), True):
            logging.debug('queue cleaner is disabled')
            return 0

        content_blocker = settings.get('content_blocker') or {}
        if parse_bool(content_blocker.get('enabled'), False):
            await self.blocklists.load(content_blocker)

        if not services:
            logging.warning('No download clients configured')
        clients = await login_all(services)
        ignored = cfg.ignored_downloads()

        enqueued = 0
        for instance in cfg.instances():
            if stop.is_set():
                logging.info('queue cleaner stopped')
                break
            try:
                enqueued += await self.process_instance(instance, clients, ignored, settings, stop)
            except Exception as e:
                logging.error(f'failed to clean {instance.type.value} instance {instance.url}: {e}')
        return enqueued

    async def process_instance(
        self,
        instance: ArrInstance,
        clients: List[DownloadService],
        ignored: List[str],
        settings: Dict[str, Any],
        stop: asyncio.Event,
    ) -> int:
        enqueued = 0
        async for page in self.arr.iterate_queue(instance):
            for group in group_by_download_id(page).values():
                if stop.is_set():
                    return enqueued
                if await self.process_group(instance, group, clients, ignored, settings):
                    enqueued += 1
        return enqueued

    async def process_group(
        self,
        instance: ArrInstance,
        group: List[QueueRecord],
        clients: List[DownloadService],
        ignored: List[str],
        settings: Dict[str, Any],
    ) -> bool:
        if not all(self.arr.is_record_valid(r) for r in group):
            return False
        record = group[0]
        logging.debug(f'processing | {record.title} | {record.download_id}')

        if record.download_id.lower() in {i.lower() for i in ignored}:
            logging.info(f'skip | {record.title} | ignored')
            return False

        removal_key = make_removal_key(record.download_id, instance.url)
        if self.strikes.is_marked(removal_key):
            logging.debug(f'skip | already marked for removal | {record.title}')
            return False

        result = DownloadCheckResult()
        if is_torrent(record):
            result = await self._find_and_evaluate(instance, record, clients, ignored)
            if not result.found:
                logging.warning(f'skip | download not found {record.title}')
                return False

        failed_import = self.arr.should_remove_failed_import(
            instance, record, result.is_private, settings.get('failed_import') or {}
        )
        if not result.should_remove and not failed_import:
            logging.info(f'skip | {record.title}')
            return False

        reason = result.reason if result.should_remove else DeleteReason.FAILED_IMPORT
        request = RemoveRequest(
            instance=instance,
            record=record,
            search_item=build_search_item(instance, group),
            is_pack=len(group) > 1,
            remove_from_client=remove_from_client(result, failed_import, settings),
            reason=reason,
        )
        self.strikes.mark(removal_key)
        await self.pipeline.submit(request)
        return True

    async def _find_and_evaluate(
        self,
        instance: ArrInstance,
        record: QueueRecord,
        clients: List[DownloadService],
        ignored: List[str],
    ) -> DownloadCheckResult:
        for service in clients:
            try:
                result = await service.evaluate_queue_item(record.download_id, ignored, instance.type)
            except Exception as e:
                logging.error(f'error checking download {record.download_id} with download client {service.name}: {e}')
                continue
            if result.found:
                return result
        return DownloadCheckResult()
