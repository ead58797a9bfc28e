from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from core.actions import build_search_command
from core.dryrun import DryRunInterceptor
from core.errors import ClientRequestError
from core.models import ArrInstance, DeleteReason, InstanceType, QueueRecord, SearchItem, StrikeType
from core.rules import is_import_failed, matches_ignore_pattern
from core.utils import parse_bool
from integrations.services import RequestManager
from storage.strikes import StrikeStore

MAX_PAGE_SIZE = 200

_UNKNOWN_ITEMS_FLAG = {
    InstanceType.SONARR: 'includeUnknownSeriesItems',
    InstanceType.RADARR: 'includeUnknownMovieItems',
    InstanceType.LIDARR: 'includeUnknownArtistItems',
}


class ArrClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        requests: RequestManager,
        dry_run: DryRunInterceptor,
        strikes: StrikeStore,
    ) -> None:
        self.session = session
        self.requests = requests
        self.dry_run = dry_run
        self.strikes = strikes

    async def _request(self, instance: ArrInstance, path: str, **kwargs):
        url = f'{instance.api_url}/{path}'
        return await self.requests.throttled_request(self.session, instance.type.value, url, instance.api_key, **kwargs)

    async def get_queue_page(self, instance: ArrInstance, page: int, page_size: int) -> Optional[Dict[str, Any]]:
        params = {'page': page, 'pageSize': page_size, _UNKNOWN_ITEMS_FLAG[instance.type]: 'true'}
        return await self._request(instance, 'queue', params=params)

    async def iterate_queue(self, instance: ArrInstance) -> AsyncIterator[List[QueueRecord]]:
        """Yield the queue one page of records at a time; a failed page raises ``ClientRequestError``."""
        first = await self.get_queue_page(instance, 1, 1)
        if first is None or 'totalRecords' not in first:
            raise ClientRequestError(f'failed to fetch queue from {instance.url}')
        total = int(first.get('totalRecords') or 0)
        logging.debug(f'{instance.type.value} {instance.name}: queue size {total}')
        if not total:
            return
        page_size = min(total, MAX_PAGE_SIZE)
        pages = (total + page_size - 1) // page_size
        for page in range(1, pages + 1):
            data = await self.get_queue_page(instance, page, page_size)
            if data is None or not isinstance(data.get('records'), list):
                raise ClientRequestError(f'failed to fetch queue page {page}/{pages} from {instance.url}')
            yield [QueueRecord.from_api(r) for r in data['records'] if isinstance(r, dict)]

    async def fetch_queue(self, instance: ArrInstance) -> List[QueueRecord]:
        records: List[QueueRecord] = []
        async for page in self.iterate_queue(instance):
            records.extend(page)
        return records

    @staticmethod
    def is_record_valid(record: QueueRecord) -> bool:
        if not record.download_id:
            logging.debug(f'skip | download id is null for {record.title}')
            return False
        return True

    def should_remove_failed_import(
        self,
        instance: ArrInstance,
        record: QueueRecord,
        is_private: bool,
        settings: Dict[str, Any],
    ) -> bool:
        if parse_bool(settings.get('ignore_private'), False) and is_private:
            logging.debug(f'skip failed import check | download is private | {record.title}')
            return False
        if not is_import_failed(record, instance.type):
            return False
        if matches_ignore_pattern(record, settings.get('ignore_patterns') or []):
            logging.info(f'skip failed import check | contains ignored pattern | {record.title}')
            return False
        max_strikes = int(settings.get('max_strikes') or 0)
        if max_strikes == 0:
            return False
        return self.strikes.strike_and_check_limit(record.download_id, StrikeType.FAILED_IMPORT, max_strikes, record.title)

    async def _delete(self, instance: ArrInstance, record: QueueRecord, remove_from_client: bool) -> None:
        params = {
            'blocklist': 'true',
            'removeFromClient': 'true' if remove_from_client else 'false',
            'skipImport': 'true',
        }
        resp = await self._request(instance, f'queue/{record.id}', params=params, method='delete')
        if resp is None:
            raise ClientRequestError(f'failed to delete queue item {record.id} from {instance.url}')

    async def delete_queue_item(
        self,
        instance: ArrInstance,
        record: QueueRecord,
        remove_from_client: bool,
        reason: DeleteReason,
    ) -> None:
        await self.dry_run.intercept(self._delete, instance, record, remove_from_client, name='delete_queue_item')
        logging.info(
            f'queue item deleted | {instance.url} | {record.title} | reason {reason.value} | removeFromClient={remove_from_client}'
        )

    async def _search(self, instance: ArrInstance, command: Dict[str, Any]) -> None:
        resp = await self._request(instance, 'command', json_data=command, method='post')
        if resp is None:
            raise ClientRequestError(f'failed to trigger {command.get("name")} on {instance.url}')

    async def search_items(self, instance: ArrInstance, item: SearchItem) -> bool:
        command = build_search_command(instance.type, item)
        if command is None:
            logging.warning(f'no search command for {instance.type.value} item {item}')
            return False
        await self.dry_run.intercept(self._search, instance, command, name='search_items')
        logging.info(f'{command["name"]} triggered | {instance.url}')
        return True
