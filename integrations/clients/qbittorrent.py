from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from core.errors import ClientRequestError, FatalClientError
from core.models import ClientType, DownloadClientConfig, DownloadFile, DownloadItem, DownloadState
from core.utils import parse_bool, to_float, to_int
from integrations.clients.base import DownloadService, ServiceDeps
from integrations.services import send_with_retry

_STATES = {
    'downloading': DownloadState.DOWNLOADING,
    'forcedDL': DownloadState.DOWNLOADING,
    'stalledDL': DownloadState.STALLED,
    'metaDL': DownloadState.METADATA,
    'forcedMetaDL': DownloadState.METADATA,
    'uploading': DownloadState.SEEDING,
    'stalledUP': DownloadState.SEEDING,
    'forcedUP': DownloadState.SEEDING,
    'pausedUP': DownloadState.PAUSED,
    'stoppedUP': DownloadState.PAUSED,
    'pausedDL': DownloadState.PAUSED,
    'stoppedDL': DownloadState.PAUSED,
    'queuedDL': DownloadState.QUEUED,
    'queuedUP': DownloadState.QUEUED,
    'checkingDL': DownloadState.CHECKING,
    'checkingUP': DownloadState.CHECKING,
    'checkingResumeData': DownloadState.CHECKING,
    'allocating': DownloadState.CHECKING,
    'moving': DownloadState.CHECKING,
    'error': DownloadState.ERROR,
    'missingFiles': DownloadState.ERROR,
}


def qbittorrent_state(state: Optional[str]) -> DownloadState:
    return _STATES.get(state or '', DownloadState.UNKNOWN)


class QBittorrentSession:
    """Web API v2 session; keeps the SID cookie and logs in again when it expires."""

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
        self.base_url = config.base_url
        self.username = config.username or ''
        self.password = config.password or ''
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging
        self.sid: Optional[str] = None

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.request_timeout)

    def _cookies(self) -> Optional[Dict[str, str]]:
        return {'SID': self.sid} if self.sid else None

    async def login(self) -> None:
        login_url = self.base_url + '/api/v2/auth/login'

        async def _send():
            form = aiohttp.FormData()
            form.add_field('username', self.username)
            form.add_field('password', self.password)
            return await self.http.post(login_url, data=form, timeout=self._timeout())

        resp = await send_with_retry(
            _send, label='qBittorrent login', retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff, debug_logging=self.debug_logging,
        )
        status = getattr(resp, 'status', None)
        if status in (401, 403):
            raise FatalClientError(f'qBittorrent refused login ({status})')
        if status != 200:
            raise ClientRequestError(f'qBittorrent login failed ({status})', status)
        text = await _read_text(resp)
        if text is not None and text.strip() == 'Fails.':
            raise FatalClientError('qBittorrent login failed: bad credentials')
        cookie = getattr(resp, 'cookies', {}).get('SID') if getattr(resp, 'cookies', None) else None
        if cookie is not None:
            self.sid = getattr(cookie, 'value', cookie)

    async def _request(self, method: str, path: str, *, params=None, fields: Optional[Dict[str, str]] = None, relogin: bool = True):
        url = self.base_url + path

        async def _send():
            if method == 'GET':
                return await self.http.get(url, params=params, cookies=self._cookies(), timeout=self._timeout())
            form = aiohttp.FormData()
            for k, v in (fields or {}).items():
                form.add_field(k, v)
            return await self.http.post(url, data=form, cookies=self._cookies(), timeout=self._timeout())

        resp = await send_with_retry(
            _send, label=f'qBittorrent {path}', retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff, debug_logging=self.debug_logging,
        )
        status = getattr(resp, 'status', None)
        if status == 403 and relogin:
            # session expired
            await self.login()
            return await self._request(method, path, params=params, fields=fields, relogin=False)
        if status not in (200, 204):
            raise ClientRequestError(f'qBittorrent {path} -> {status}', status)
        return resp

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._request('GET', path, params=params)
        try:
            return await resp.json()
        except Exception as e:
            raise ClientRequestError(f'qBittorrent {path} returned invalid json: {e}')

    async def post(self, path: str, fields: Dict[str, str]) -> None:
        await self._request('POST', path, fields=fields)

    async def torrents_info(self, *, hashes: Optional[str] = None, filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {}
        if hashes:
            params['hashes'] = hashes
        if filter:
            params['filter'] = filter
        data = await self.get_json('/api/v2/torrents/info', params)
        return data if isinstance(data, list) else []

    async def torrent_files(self, info_hash: str) -> List[Dict[str, Any]]:
        data = await self.get_json('/api/v2/torrents/files', {'hash': info_hash})
        return data if isinstance(data, list) else []

    async def torrent_trackers(self, info_hash: str) -> List[Dict[str, Any]]:
        data = await self.get_json('/api/v2/torrents/trackers', {'hash': info_hash})
        return data if isinstance(data, list) else []

    async def torrent_properties(self, info_hash: str) -> Dict[str, Any]:
        data = await self.get_json('/api/v2/torrents/properties', {'hash': info_hash})
        return data if isinstance(data, dict) else {}

    async def set_file_priority(self, info_hash: str, indexes: Iterable[int], priority: int) -> None:
        ids = '|'.join(str(i) for i in indexes)
        await self.post('/api/v2/torrents/filePrio', {'hash': info_hash, 'id': ids, 'priority': str(priority)})

    async def delete_torrents(self, hashes: str, delete_files: bool = True) -> None:
        await self.post('/api/v2/torrents/delete', {'hashes': hashes, 'deleteFiles': 'true' if delete_files else 'false'})

    async def categories(self) -> Dict[str, Any]:
        data = await self.get_json('/api/v2/torrents/categories')
        return data if isinstance(data, dict) else {}

    async def create_category(self, name: str) -> None:
        await self.post('/api/v2/torrents/createCategory', {'category': name, 'savePath': ''})

    async def set_category(self, hashes: str, category: str) -> None:
        await self.post('/api/v2/torrents/setCategory', {'hashes': hashes, 'category': category})

    async def add_tags(self, hashes: str, tags: str) -> None:
        await self.post('/api/v2/torrents/addTags', {'hashes': hashes, 'tags': tags})


async def _read_text(resp) -> Optional[str]:
    reader = getattr(resp, 'text', None)
    if reader is None:
        return None
    try:
        return await reader()
    except Exception:
        return None


class QBittorrentService(DownloadService):
    client_type = ClientType.QBITTORRENT

    def __init__(self, config: DownloadClientConfig, deps: ServiceDeps) -> None:
        super().__init__(config, deps)
        self.api = QBittorrentSession(
            deps.session,
            config,
            request_timeout=deps.request_timeout,
            retry_attempts=deps.retry_attempts,
            retry_backoff=deps.retry_backoff,
            debug_logging=deps.debug_logging,
        )

    async def login(self) -> None:
        await self.api.login()

    def _to_item(self, info: Dict[str, Any]) -> DownloadItem:
        tags = [t.strip() for t in str(info.get('tags') or '').split(',') if t.strip()]
        return DownloadItem(
            hash=str(info.get('hash') or ''),
            name=str(info.get('name') or ''),
            state=qbittorrent_state(info.get('state')),
            is_private=parse_bool(info.get('private', info.get('is_private')), False),
            size=to_int(info.get('size')),
            download_speed=to_int(info.get('dlspeed')),
            eta=to_int(info.get('eta')),
            downloaded=to_int(info.get('downloaded', info.get('completed'))),
            ratio=to_float(info.get('ratio')),
            seeding_time=to_int(info.get('seeding_time')),
            category=info.get('category') or None,
            save_path=str(info.get('save_path') or ''),
            tags=tags,
            client_id=self.config.id,
        )

    def _is_stalled(self, item: DownloadItem) -> bool:
        # only stalledDL counts; downloading with no ETA is left to the slow check
        return item.state == DownloadState.STALLED

    async def _get_item(self, download_hash: str) -> Optional[DownloadItem]:
        infos = await self.api.torrents_info(hashes=download_hash)
        if not infos:
            return None
        info = infos[0]
        item = self._to_item(info)
        if 'private' not in info and 'is_private' not in info:
            props = await self.api.torrent_properties(item.hash)
            item.is_private = parse_bool(props.get('is_private'), False)
        trackers = await self.api.torrent_trackers(item.hash)
        # DHT/PeX/LSD pseudo-trackers look like "** [DHT] **"
        item.trackers = [str(t.get('url')) for t in trackers if t.get('url') and not str(t.get('url')).startswith('**')]
        item.files = await self._get_files(item)
        return item

    async def _get_files(self, item: DownloadItem) -> List[DownloadFile]:
        files = await self.api.torrent_files(item.hash)
        out: List[DownloadFile] = []
        for pos, f in enumerate(files):
            name = str(f.get('name') or '')
            out.append(DownloadFile(
                index=to_int(f.get('index'), pos),
                name=name,
                priority=to_int(f.get('priority'), 1),
                size=to_int(f.get('size')),
                path=name,
            ))
        return out

    async def _set_unwanted(self, item: DownloadItem, files: List[DownloadFile]) -> None:
        await self.api.set_file_priority(item.hash, [f.index for f in files], 0)

    async def _delete(self, download_hash: str) -> None:
        await self.api.delete_torrents(download_hash, delete_files=True)

    async def _get_seeding(self) -> List[DownloadItem]:
        infos = await self.api.torrents_info(filter='completed')
        return [self._to_item(i) for i in infos if i.get('hash')]

    async def _create_category(self, name: str) -> None:
        existing = await self.api.categories()
        if any(str(k).lower() == name.lower() for k in existing):
            return
        await self.api.create_category(name)
        logging.info(f'category {name} created on {self.name}')

    def _uses_tag_for_unlinked(self) -> bool:
        return parse_bool(self._dc.get('unlinked_use_tag'), False)

    async def _change_category(self, item: DownloadItem, category: str) -> None:
        if self._uses_tag_for_unlinked():
            await self.api.add_tags(item.hash, category)
            return
        await self.api.set_category(item.hash, category)

    async def create_category(self, name: str) -> None:
        # tags need no setup
        if self._uses_tag_for_unlinked():
            return
        await super().create_category(name)
