import re

import aiohttp
import pytest
from aioresponses import aioresponses

from core.dryrun import DryRunInterceptor
from core.errors import ClientRequestError
from core.models import ArrInstance, DeleteReason, InstanceType, QueueRecord, SearchItem, StrikeType
from integrations.arr import ArrClient
from integrations.services import RequestManager
from storage.strikes import StrikeStore


pytestmark = pytest.mark.asyncio

SONARR = ArrInstance(name='sonarr', type=InstanceType.SONARR, url='http://sonarr:8989', api_key='key')
RADARR = ArrInstance(name='radarr', type=InstanceType.RADARR, url='http://radarr:7878/', api_key='key')
SONARR_QUEUE = re.compile(r'^http://sonarr:8989/api/v3/queue\?.*$')


def _arr(session, dry_run=False):
    return ArrClient(session, RequestManager(retry_attempts=0, retry_backoff=0), DryRunInterceptor(dry_run), StrikeStore(3600))


def _calls(m, method):
    out = []
    for (meth, url), calls in m.requests.items():
        if meth == method:
            out.extend((url, c) for c in calls)
    return out


def _record(i, download_id='abc'):
    return {'id': i, 'downloadId': download_id, 'title': f'Show {i}', 'protocol': 'torrent', 'episodeId': 100 + i}


async def test_iterate_queue_probes_then_pages():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            m.get(SONARR_QUEUE, payload={'totalRecords': 450, 'records': [_record(1)]})
            m.get(SONARR_QUEUE, payload={'totalRecords': 450, 'records': [_record(1), _record(2)]})
            m.get(SONARR_QUEUE, payload={'totalRecords': 450, 'records': [_record(3)]})
            m.get(SONARR_QUEUE, payload={'totalRecords': 450, 'records': [_record(4, 'def')]})
            pages = [page async for page in arr.iterate_queue(SONARR)]
            params = [c.kwargs['params'] for _, c in _calls(m, 'GET')]
    assert [[r.id for r in p] for p in pages] == [[1, 2], [3], [4]]
    assert pages[2][0].download_id == 'def'
    assert params == [
        {'page': 1, 'pageSize': 1, 'includeUnknownSeriesItems': 'true'},
        {'page': 1, 'pageSize': 200, 'includeUnknownSeriesItems': 'true'},
        {'page': 2, 'pageSize': 200, 'includeUnknownSeriesItems': 'true'},
        {'page': 3, 'pageSize': 200, 'includeUnknownSeriesItems': 'true'},
    ]


async def test_empty_queue_yields_nothing():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            m.get(SONARR_QUEUE, payload={'totalRecords': 0, 'records': []})
            assert await arr.fetch_queue(SONARR) == []
            assert len(_calls(m, 'GET')) == 1


async def test_failed_probe_raises():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            m.get(SONARR_QUEUE, status=500)
            with pytest.raises(ClientRequestError):
                await arr.fetch_queue(SONARR)


async def test_failed_page_raises():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            m.get(SONARR_QUEUE, payload={'totalRecords': 2, 'records': []})
            m.get(SONARR_QUEUE, status=404)
            with pytest.raises(ClientRequestError):
                await arr.fetch_queue(SONARR)


async def test_radarr_unknown_items_flag_and_api_version():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            m.get(re.compile(r'^http://radarr:7878/api/v3/queue\?.*$'), payload={'totalRecords': 0})
            await arr.fetch_queue(RADARR)
            (url, call), = _calls(m, 'GET')
    assert call.kwargs['params']['includeUnknownMovieItems'] == 'true'
    assert call.kwargs['headers']['X-Api-Key'] == 'key'


async def test_delete_queue_item_params():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        record = QueueRecord(id=5, download_id='abc', title='Show')
        with aioresponses() as m:
            m.delete(re.compile(r'^http://sonarr:8989/api/v3/queue/5.*$'), status=200, body='')
            await arr.delete_queue_item(SONARR, record, False, DeleteReason.STALLED)
            (url, call), = _calls(m, 'DELETE')
    assert call.kwargs['params'] == {'blocklist': 'true', 'removeFromClient': 'false', 'skipImport': 'true'}


async def test_delete_failure_raises():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        record = QueueRecord(id=5, download_id='abc', title='Show')
        with aioresponses() as m:
            m.delete(re.compile(r'^http://sonarr:8989/api/v3/queue/5.*$'), status=404)
            with pytest.raises(ClientRequestError):
                await arr.delete_queue_item(SONARR, record, True, DeleteReason.STALLED)


async def test_search_posts_command():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            m.post('http://sonarr:8989/api/v3/command', payload={'id': 1})
            assert await arr.search_items(SONARR, SearchItem(search_type='episode', ids=[11, 12])) is True
            (url, call), = _calls(m, 'POST')
    assert call.kwargs['json'] == {'name': 'EpisodeSearch', 'episodeIds': [11, 12]}


async def test_search_without_command_is_skipped():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session)
        with aioresponses() as m:
            assert await arr.search_items(SONARR, SearchItem(search_type='episode')) is False
            assert len(m.requests) == 0


async def test_dry_run_skips_arr_mutations():
    async with aiohttp.ClientSession() as session:
        arr = _arr(session, dry_run=True)
        record = QueueRecord(id=5, download_id='abc', title='Show')
        with aioresponses() as m:
            await arr.delete_queue_item(SONARR, record, True, DeleteReason.FAILED_IMPORT)
            assert await arr.search_items(SONARR, SearchItem(search_type='episode', ids=[1])) is True
            assert len(m.requests) == 0


def _failed(title='Show', messages=None):
    return QueueRecord(
        id=1,
        download_id='abc',
        title=title,
        tracked_download_status='warning',
        tracked_download_state='importBlocked',
        status_messages=messages or [],
    )


def test_should_remove_failed_import():
    arr = ArrClient(None, RequestManager(), DryRunInterceptor(False), StrikeStore(3600))
    settings = {'max_strikes': 2, 'ignore_private': True, 'ignore_patterns': ['not an upgrade']}

    assert arr.should_remove_failed_import(SONARR, _failed(), True, settings) is False
    ok = QueueRecord(id=1, download_id='abc', title='Show', tracked_download_status='ok')
    assert arr.should_remove_failed_import(SONARR, ok, False, settings) is False
    ignored = _failed(messages=[{'title': 'x', 'messages': ['Not an upgrade for existing file']}])
    assert arr.should_remove_failed_import(SONARR, ignored, False, settings) is False
    assert arr.strikes.get_count('abc', StrikeType.FAILED_IMPORT) == 0

    assert arr.should_remove_failed_import(SONARR, _failed(), False, settings) is False
    assert arr.should_remove_failed_import(SONARR, _failed(), False, settings) is True

    assert arr.should_remove_failed_import(SONARR, _failed(), False, {'max_strikes': 0}) is False


def test_failed_import_ignore_private_accepts_quoted_false():
    arr = ArrClient(None, RequestManager(), DryRunInterceptor(False), StrikeStore(3600))
    settings = {'max_strikes': 3, 'ignore_private': 'false'}
    arr.should_remove_failed_import(SONARR, _failed(), True, settings)
    assert arr.strikes.get_count('abc', StrikeType.FAILED_IMPORT) == 1


def test_record_validity():
    assert ArrClient.is_record_valid(QueueRecord(id=1, download_id='', title='x')) is False
    assert ArrClient.is_record_valid(QueueRecord(id=1, download_id='abc', title='x')) is True
