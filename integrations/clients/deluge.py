from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from core.errors import ClientRequestError, FatalClientError
from core.models import ClientType, DownloadClientConfig, DownloadFile, DownloadItem, DownloadState
from core.utils import parse_bool, to_float, to_int
from integrations.clients.base import DownloadService, ServiceDeps
from integrations.services import send_with_retry

STATUS_FIELDS = [
    'hash', 'name', 'state', 'private', 'total_size', 'download_payload_rate', 'eta',
    'total_done', 'ratio', 'seeding_time', 'label', 'download_location', 'trackers',
]

_STATES = {
    'downloading': DownloadState.DOWNLOADING,
    'seeding': DownloadState.SEEDING,
    'paused': DownloadState.PAUSED,
    'queued': DownloadState.QUEUED,
    'checking': DownloadState.CHECKING,
    'allocating': DownloadState.CHECKING,
    'moving': DownloadState.CHECKING,
    'error': DownloadState.ERROR,
}

# deluge-web "Not authenticated" error code
_NOT_AUTHENTICATED = 1


def deluge_state(state: Optional[str]) -> DownloadState:
    return _STATES.get((state or '').lower(), DownloadState.UNKNOWN)


def flatten_files(tree: Dict[str, Any]) -> List[DownloadFile]:
    """Walk the nested ``web.get_torrent_files`` tree into a flat file list."""
    out: List[DownloadFile] = []
    contents = tree.get('contents') if isinstance(tree, dict) else None
    for name, node in (contents or {}).items():
        if not isinstance(node, dict):
            continue
        if node.get('type') == 'dir':
            out.extend(flatten_files(node))
        elif node.get('type') == 'file':
            out.append(DownloadFile(
                index=to_int(node.get('index')),
                name=name,
                priority=to_int(node.get('priority'), 1),
                size=to_int(node.get('size')),
                path=str(node.get('path') or name),
            ))
    return out


class DelugeSession:
    """JSON-RPC session against deluge-web; keeps the ``_session_id`` cookie."""

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
        self.url = url if url.endswith('/json') else url + '/json'
        self.password = config.password or ''
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging
        self.session_id: Optional[str] = None
        self._ids = itertools.count(1)

    async def call(self, method: str, params: List[Any], *, relogin: bool = True) -> Any:
        body = {"method": method, "params": params, "id": next(self._ids)}
        cookies = {'_session_id': self.session_id} if self.session_id else None

        async def _send():
            return await self.http.post(self.url, json=body, cookies=cookies, timeout=aiohttp.ClientTimeout(total=self.request_timeout))

        resp = await send_with_retry(
            _send, label=f'Deluge {method}', retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff, debug_logging=self.debug_logging,
        )
        status = getattr(resp, 'status', None)
        if status not in (200, 204):
            raise ClientRequestError(f'Deluge {method} -> {status}', status)
        try:
            j = await resp.json()
        except Exception as e:
            raise ClientRequestError(f'Deluge {method} returned invalid json: {e}')
        cookie = resp.cookies.get('_session_id') if getattr(resp, 'cookies', None) else None
        if cookie is not None:
            self.session_id = getattr(cookie, 'value', cookie)

        error = (j or {}).get('error')
        if error:
            if relogin and isinstance(error, dict) and error.get('code') == _NOT_AUTHENTICATED:
                await self.login()
                return await self.call(method, params, relogin=False)
            message = error.get('message') if isinstance(error, dict) else error
            raise ClientRequestError(f'Deluge {method} error: {message}')
        return (j or {}).get('result')

    async def login(self) -> None:
        ok = await self.call('auth.login', [self.password], relogin=False)
        if not ok:
            raise FatalClientError('Deluge login failed: bad password')
        if await self.call('web.connected', [], relogin=False):
            return
        hosts = await self.call('web.get_hosts', [], relogin=False) or []
        if hosts:
            await self.call('web.connect', [hosts[0][0]], relogin=False)
        if not await self.call('web.connected', [], relogin=False):
            raise FatalClientError('Deluge WebUI is not connected to the daemon')

    async def get_torrent_status(self, info_hash: str) -> Optional[Dict[str, Any]]:
        result = await self.call('core.get_torrent_status', [info_hash, STATUS_FIELDS])
        return result if isinstance(result, dict) and result else None

    async def get_torrents_status(self, filters: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        result = await self.call('core.get_torrents_status', [filters, STATUS_FIELDS])
        return result if isinstance(result, dict) else {}

    async def get_torrent_files(self, info_hash: str) -> Dict[str, Any]:
        result = await self.call('web.get_torrent_files', [info_hash])
        return result if isinstance(result, dict) else {}

    async def set_file_priorities(self, info_hash: str, priorities: List[int]) -> None:
        await self.call('core.set_torrent_options', [[info_hash], {'file_priorities': priorities}])

    async def remove_torrent(self, info_hash: str, remove_data: bool = True) -> None:
        await self.call('core.remove_torrent', [info_hash, remove_data])

    async def get_labels(self) -> List[str]:
        result = await self.call('label.get_labels', [])
        return [str(x) for x in result] if isinstance(result, list) else []

    async def add_label(self, label: str) -> None:
        await self.call('label.add', [label])

    async def set_torrent_label(self, info_hash: str, label: str) -> None:
        await self.call('label.set_torrent', [info_hash, label])


class DelugeService(DownloadService):
    client_type = ClientType.DELUGE

    def __init__(self, config: DownloadClientConfig, deps: ServiceDeps) -> None:
        super().__init__(config, deps)
        self.api = DelugeSession(
            deps.session,
            config,
            request_timeout=deps.request_timeout,
            retry_attempts=deps.retry_attempts,
            retry_backoff=deps.retry_backoff,
            debug_logging=deps.debug_logging,
        )

    async def login(self) -> None:
        await self.api.login()

    def _to_item(self, info_hash: str, status: Dict[str, Any]) -> DownloadItem:
        trackers = status.get('trackers') if isinstance(status.get('trackers'), list) else []
        return DownloadItem(
            hash=str(status.get('hash') or info_hash).lower(),
            name=str(status.get('name') or ''),
            state=deluge_state(status.get('state')),
            is_private=parse_bool(status.get('private'), False),
            size=to_int(status.get('total_size')),
            download_speed=to_int(status.get('download_payload_rate')),
            eta=to_int(status.get('eta')),
            downloaded=to_int(status.get('total_done')),
            ratio=to_float(status.get('ratio')),
            seeding_time=to_int(status.get('seeding_time')),
            category=status.get('label') or None,
            save_path=str(status.get('download_location') or ''),
            trackers=[str(t.get('url')) for t in trackers if isinstance(t, dict) and t.get('url')],
            client_id=self.config.id,
        )

    async def _get_item(self, download_hash: str) -> Optional[DownloadItem]:
        info_hash = download_hash.lower()
        status = await self.api.get_torrent_status(info_hash)
        if status is None:
            return None
        item = self._to_item(info_hash, status)
        item.files = await self._get_files(item)
        return item

    async def _get_files(self, item: DownloadItem) -> List[DownloadFile]:
        tree = await self.api.get_torrent_files(item.hash)
        return flatten_files(tree)

    async def _set_unwanted(self, item: DownloadItem, files: List[DownloadFile]) -> None:
        # Deluge only accepts the full priority vector, ordered by file index
        blocked = {f.index for f in files}
        ordered = sorted(item.files, key=lambda f: f.index)
        priorities = [0 if f.index in blocked else f.priority for f in ordered]
        await self.api.set_file_priorities(item.hash, priorities)

    async def _delete(self, download_hash: str) -> None:
        await self.api.remove_torrent(download_hash.lower(), True)

    async def _get_seeding(self) -> List[DownloadItem]:
        statuses = await self.api.get_torrents_status({})
        items = [self._to_item(h, s) for h, s in statuses.items() if isinstance(s, dict)]
        return [i for i in items if i.state == DownloadState.SEEDING]

    async def _create_category(self, name: str) -> None:
        labels = await self.api.get_labels()
        if name.lower() in (l.lower() for l in labels):
            return
        await self.api.add_label(name)
        logging.info(f'label {name} created on {self.name}')

    async def _change_category(self, item: DownloadItem, category: str) -> None:
        await self.api.set_torrent_label(item.hash, category)
