from __future__ import annotations

import logging
import posixpath
from typing import Any, Dict, List, Optional

import aiohttp

from core.errors import ClientRequestError, FatalClientError
from core.models import ClientType, DownloadClientConfig, DownloadFile, DownloadItem, DownloadState
from core.utils import category_from_path, parse_bool, to_float, to_int
from integrations.clients.base import DownloadService, ServiceDeps
from integrations.services import send_with_retry

TORRENT_FIELDS = [
    'id', 'hashString', 'name', 'status', 'isPrivate', 'totalSize', 'rateDownload', 'eta',
    'downloadedEver', 'uploadRatio', 'secondsSeeding', 'downloadDir', 'trackers', 'labels',
    'files', 'fileStats', 'percentDone',
]

SESSION_HEADER = 'X-Transmission-Session-Id'


def transmission_state(status: Optional[int]) -> DownloadState:
    mapping = {
        0: DownloadState.PAUSED,
        1: DownloadState.CHECKING,
        2: DownloadState.CHECKING,
        3: DownloadState.QUEUED,
        4: DownloadState.DOWNLOADING,
        5: DownloadState.SEEDING,
        6: DownloadState.SEEDING,
    }
    try:
        return mapping.get(int(status), DownloadState.UNKNOWN)
    except (TypeError, ValueError):
        return DownloadState.UNKNOWN


class TransmissionSession:
    """RPC session; replays the request once when the server hands out a new session id (409)."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        config: DownloadClientConfig,
        *,
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        debug_logging: bool = False,
    ) -> None:
        self.http = http
        url = config.base_url
        self.url = url if config.url_base else url + '/transmission/rpc'
        username, password = config.username, config.password
        self.auth = aiohttp.BasicAuth(username or '', password or '') if (username or password) else None
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging
        self.session_id: Optional[str] = None

    async def _post(self, body: Dict[str, Any], label: str):
        async def _send():
            headers: Dict[str, str] = {}
            if self.session_id:
                headers[SESSION_HEADER] = self.session_id
            return await self.http.post(
                self.url, json=body, headers=headers, auth=self.auth,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            )

        resp = await send_with_retry(
            _send, label=label, retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff, debug_logging=self.debug_logging,
        )
        if getattr(resp, 'status', None) == 409:
            sid = getattr(resp, 'headers', {}).get(SESSION_HEADER)
            if sid:
                self.session_id = sid
                resp = await send_with_retry(
                    _send, label=label, retry_attempts=self.retry_attempts,
                    retry_backoff=self.retry_backoff, debug_logging=self.debug_logging,
                )
        return resp

    async def call(self, method: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = {"method": method, "arguments": arguments or {}}
        label = f'Transmission {method}'
        resp = await self._post(body, label)
        status = getattr(resp, 'status', None)
        if status == 401:
            raise FatalClientError('Transmission refused credentials (401)')
        if status not in (200, 204):
            raise ClientRequestError(f'{label} -> {status}', status)
        try:
            j = await resp.json()
        except Exception as e:
            raise ClientRequestError(f'{label} returned invalid json: {e}')
        if (j or {}).get('result') != 'success':
            raise ClientRequestError(f"{label} failed: {(j or {}).get('result')}")
        return (j or {}).get('arguments') or {}

    async def login(self) -> None:
        await self.call('session-get', {'fields': ['version']})

    async def torrent_get(self, ids: Optional[List[Any]] = None, fields: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        arguments: Dict[str, Any] = {'fields': fields or TORRENT_FIELDS}
        if ids is not None:
            arguments['ids'] = ids
        data = await self.call('torrent-get', arguments)
        torrents = data.get('torrents')
        return torrents if isinstance(torrents, list) else []

    async def set_files_unwanted(self, torrent_id: Any, indexes: List[int]) -> None:
        await self.call('torrent-set', {'ids': [torrent_id], 'files-unwanted': indexes})

    async def remove(self, torrent_id: Any, delete_local_data: bool = True) -> None:
        await self.call('torrent-remove', {'ids': [torrent_id], 'delete-local-data': delete_local_data})

    async def set_location(self, torrent_id: Any, location: str, move: bool = True) -> None:
        await self.call('torrent-set-location', {'ids': [torrent_id], 'location': location, 'move': move})


class TransmissionService(DownloadService):
    client_type = ClientType.TRANSMISSION

    def __init__(self, config: DownloadClientConfig, deps: ServiceDeps) -> None:
        super().__init__(config, deps)
        self.api = TransmissionSession(
            deps.session,
            config,
            request_timeout=deps.request_timeout,
            retry_attempts=deps.retry_attempts,
            retry_backoff=deps.retry_backoff,
            debug_logging=deps.debug_logging,
        )

    async def login(self) -> None:
        await self.api.login()

    def _to_item(self, t: Dict[str, Any]) -> DownloadItem:
        download_dir = str(t.get('downloadDir') or '')
        trackers = t.get('trackers') if isinstance(t.get('trackers'), list) else []
        labels = t.get('labels') if isinstance(t.get('labels'), list) else []
        item = DownloadItem(
            hash=str(t.get('hashString') or '').lower(),
            name=str(t.get('name') or ''),
            state=transmission_state(t.get('status')),
            is_private=parse_bool(t.get('isPrivate'), False),
            size=to_int(t.get('totalSize')),
            download_speed=to_int(t.get('rateDownload')),
            eta=to_int(t.get('eta')),
            downloaded=to_int(t.get('downloadedEver')),
            ratio=to_float(t.get('uploadRatio')),
            seeding_time=to_int(t.get('secondsSeeding')),
            category=category_from_path(download_dir),
            save_path=download_dir,
            tags=[str(l) for l in labels],
            trackers=[str(x.get('announce')) for x in trackers if isinstance(x, dict) and x.get('announce')],
            client_id=self.config.id,
            client_ref=t.get('id'),
        )
        item.files = self._files_from(t)
        return item

    @staticmethod
    def _files_from(t: Dict[str, Any]) -> List[DownloadFile]:
        files = t.get('files') if isinstance(t.get('files'), list) else []
        stats = t.get('fileStats') if isinstance(t.get('fileStats'), list) else []
        out: List[DownloadFile] = []
        for idx, f in enumerate(files):
            wanted = True
            if idx < len(stats) and isinstance(stats[idx], dict):
                wanted = parse_bool(stats[idx].get('wanted'), True)
            name = str(f.get('name') or '')
            out.append(DownloadFile(index=idx, name=name, priority=1 if wanted else 0, size=to_int(f.get('length')), path=name))
        return out

    def _is_stalled(self, item: DownloadItem) -> bool:
        return item.state == DownloadState.DOWNLOADING and item.eta <= 0 and item.download_speed <= 0

    def _ref(self, item: DownloadItem) -> Any:
        return item.client_ref if item.client_ref is not None else item.hash

    async def _get_item(self, download_hash: str) -> Optional[DownloadItem]:
        torrents = await self.api.torrent_get([download_hash.lower()])
        if not torrents:
            return None
        return self._to_item(torrents[0])

    async def _get_files(self, item: DownloadItem) -> List[DownloadFile]:
        torrents = await self.api.torrent_get([self._ref(item)], ['id', 'files', 'fileStats'])
        return self._files_from(torrents[0]) if torrents else []

    async def _set_unwanted(self, item: DownloadItem, files: List[DownloadFile]) -> None:
        await self.api.set_files_unwanted(self._ref(item), [f.index for f in files])

    async def _delete(self, download_hash: str) -> None:
        await self.api.remove(download_hash.lower(), True)

    async def _get_seeding(self) -> List[DownloadItem]:
        torrents = await self.api.torrent_get()
        items = [self._to_item(t) for t in torrents]
        return [i for i in items if i.state == DownloadState.SEEDING]

    async def _create_category(self, name: str) -> None:
        # categories are plain directories here; the move creates them
        return None

    async def _change_category(self, item: DownloadItem, category: str) -> None:
        location = posixpath.join(item.save_path, category)
        await self.api.set_location(self._ref(item), location, move=True)
        item.save_path = location
        logging.debug(f'moved {item.name} to {location}')
