import asyncio
import importlib

import pytest

from core.models import ArrInstance, DeleteReason, InstanceType, QueueRecord, RemoveRequest, SearchItem
from storage.strikes import StrikeStore, make_removal_key


pytestmark = pytest.mark.asyncio

removal = importlib.import_module('core.removal')

SONARR = ArrInstance(name='sonarr', type=InstanceType.SONARR, url='http://sonarr:8989', api_key='k')


class FakeArr:
    def __init__(self, calls, fail_delete=False):
        self.calls = calls
        self.fail_delete = fail_delete

    async def delete_queue_item(self, instance, record, remove_from_client, reason):
        self.calls.append(('delete', record.download_id, remove_from_client, reason))
        if self.fail_delete:
            raise RuntimeError('arr down')

    async def search_items(self, instance, item):
        self.calls.append(('search', item.ids))
        return True


class FakePublisher:
    def __init__(self, calls):
        self.calls = calls

    async def notify_queue_item_deleted(self, request):
        self.calls.append(('notify', request.record.download_id))


def _request(download_id='abc', search=True):
    return RemoveRequest(
        instance=SONARR,
        record=QueueRecord(id=1, download_id=download_id, title=f'Show {download_id}'),
        search_item=SearchItem(search_type='episode', ids=[7]) if search else None,
        is_pack=False,
        remove_from_client=True,
        reason=DeleteReason.STALLED,
    )


def _pipeline(calls, strikes, fail_delete=False, **kw):
    return removal.RemovalPipeline(FakeArr(calls, fail_delete), FakePublisher(calls), strikes, **kw)


async def test_delete_then_search_then_notify_and_unmark():
    calls = []
    strikes = StrikeStore(3600)
    key = make_removal_key('abc', SONARR.url)
    strikes.mark(key)
    pipeline = _pipeline(calls, strikes, search_delay=0)
    await pipeline.submit(_request())
    await pipeline.join()
    await pipeline.stop()
    assert calls == [
        ('delete', 'abc', True, DeleteReason.STALLED),
        ('search', [7]),
        ('notify', 'abc'),
    ]
    assert strikes.is_marked(key) is False


async def test_search_disabled_skips_search_and_delay(monkeypatch):
    calls = []
    slept = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        slept.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(removal.asyncio, 'sleep', fake_sleep)
    pipeline = _pipeline(calls, StrikeStore(3600), search_enabled=False, search_delay=30)
    await pipeline.submit(_request())
    await pipeline.join()
    assert [c[0] for c in calls] == ['delete', 'notify']
    assert 30 not in slept

    pipeline.configure(search_enabled=True, search_delay=30)
    await pipeline.submit(_request('def'))
    await pipeline.join()
    await pipeline.stop()
    assert [c[0] for c in calls[2:]] == ['delete', 'search', 'notify']
    assert 30 in slept


async def test_failed_delete_still_unmarks(caplog):
    calls = []
    strikes = StrikeStore(3600)
    key = make_removal_key('abc', SONARR.url)
    strikes.mark(key)
    pipeline = _pipeline(calls, strikes, fail_delete=True, search_delay=0)
    with caplog.at_level('ERROR'):
        await pipeline.submit(_request())
        await pipeline.join()
    await pipeline.stop()
    assert [c[0] for c in calls] == ['delete']
    assert strikes.is_marked(key) is False
    assert 'failed to remove queue item' in caplog.text


async def test_requests_are_handled_in_order():
    calls = []
    pipeline = _pipeline(calls, StrikeStore(3600), search_delay=0)
    for download_id in ('a', 'b', 'c', 'd'):
        await pipeline.submit(_request(download_id, search=False))
    await pipeline.join()
    await pipeline.stop()
    assert [c[1] for c in calls if c[0] == 'delete'] == ['a', 'b', 'c', 'd']


class SlowArr(FakeArr):
    async def delete_queue_item(self, instance, record, remove_from_client, reason):
        self.calls.append(('start', record.id))
        await asyncio.sleep(0.01)
        self.calls.append(('end', record.id))


async def test_same_hash_requests_never_overlap():
    calls = []
    pipeline = removal.RemovalPipeline(SlowArr(calls), FakePublisher([]), StrikeStore(3600), search_delay=0)
    first, second = _request('abc', search=False), _request('abc', search=False)
    second.record.id = 2
    await pipeline.submit(first)
    await pipeline.submit(second)
    await pipeline.join()
    await pipeline.stop()
    assert calls == [('start', 1), ('end', 1), ('start', 2), ('end', 2)]


async def test_topic_survives_handler_errors():
    seen = []

    async def handler(message):
        if message == 'bad':
            raise ValueError(message)
        seen.append(message)

    topic = removal.Topic('test', handler)
    for message in ('one', 'bad', 'two'):
        await topic.publish(message)
    await topic.join()
    assert topic.running
    await topic.stop()
    assert not topic.running
    assert seen == ['one', 'two']
