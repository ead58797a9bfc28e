import logging
import os

import pytest

from core.blocklist import Blocklist, BlocklistProvider
from core.dryrun import DryRunInterceptor
from core.events import EventBus, NotificationPublisher
from core.hardlinks import HardlinkInspector
from core.models import (
    BlocklistType,
    CleanCategory,
    ClientType,
    DeleteReason,
    DownloadClientConfig,
    DownloadFile,
    DownloadItem,
    DownloadState,
    InstanceType,
    StrikeType,
)
from integrations.clients.base import DownloadService, ServiceDeps
from storage.strikes import StrikeStore


pytestmark = pytest.mark.asyncio


class FakeService(DownloadService):
    client_type = ClientType.QBITTORRENT

    def __init__(self, deps, items=None):
        super().__init__(DownloadClientConfig(id='fake', type=ClientType.QBITTORRENT, host='http://fake'), deps)
        self.items = {i.hash: i for i in (items or [])}
        self.calls = []

    async def login(self):
        return None

    async def _get_item(self, download_hash):
        return self.items.get(download_hash)

    async def _get_files(self, item):
        return item.files

    async def _set_unwanted(self, item, files):
        self.calls.append(('set_unwanted', item.hash, [f.index for f in files]))

    async def _delete(self, download_hash):
        self.calls.append(('delete', download_hash))

    async def _get_seeding(self):
        return list(self.items.values())

    async def _create_category(self, name):
        self.calls.append(('create_category', name))

    async def _change_category(self, item, category):
        self.calls.append(('change_category', item.hash, category))


class RecordingPublisher(NotificationPublisher):
    def __init__(self):
        super().__init__(EventBus(structured_logs=False, logger=logging.getLogger('test.events')))
        self.events = []

    async def publish(self, event, **fields):
        self.events.append((event, fields))


def _deps(queue_cleaner=None, download_cleaner=None, blocklists=None, dry_run=False):
    return ServiceDeps(
        session=None,
        strikes=StrikeStore(3600),
        dry_run=DryRunInterceptor(dry_run),
        hardlinks=HardlinkInspector(),
        blocklists=blocklists or BlocklistProvider(),
        publisher=RecordingPublisher(),
        queue_cleaner=queue_cleaner or {},
        download_cleaner=download_cleaner or {},
    )


def _files(*entries):
    return [DownloadFile(index=i, name=name, priority=prio) for i, (name, prio) in enumerate(entries)]


async def test_missing_item_is_not_found():
    svc = FakeService(_deps())
    result = await svc.evaluate_queue_item('nope', [])
    assert result.found is False
    assert result.should_remove is False


async def test_ignored_item_is_kept():
    item = DownloadItem(hash='h', name='n', state=DownloadState.STALLED, category='keep',
                        files=_files(('a.mkv', 0)))
    svc = FakeService(_deps(queue_cleaner={'stalled': {'max_strikes': 1}}), [item])
    result = await svc.evaluate_queue_item('h', ['KEEP'])
    assert result.found is True
    assert result.should_remove is False


async def test_ignored_by_tracker_domain():
    item = DownloadItem(hash='h', name='n', trackers=['https://announce.tracker.example.org:443/x'])
    assert item.should_ignore(['example.org']) is True
    assert item.should_ignore(['ample.org']) is False


async def test_all_files_skipped():
    item = DownloadItem(hash='h', name='n', is_private=True, files=_files(('a.mkv', 0), ('b.mkv', 0)))
    svc = FakeService(_deps(), [item])
    result = await svc.evaluate_queue_item('h', [])
    assert result.should_remove is True
    assert result.reason == DeleteReason.ALL_FILES_SKIPPED
    assert result.is_private is True


def _blocklists(patterns, bl_type=BlocklistType.BLACKLIST):
    provider = BlocklistProvider()
    provider._lists[InstanceType.SONARR] = Blocklist(type=bl_type, patterns=patterns)
    return provider


async def test_all_files_blocked():
    item = DownloadItem(hash='h', name='n', files=_files(('a.exe', 1), ('sample.mkv', 0)))
    deps = _deps(queue_cleaner={'content_blocker': {'enabled': True}}, blocklists=_blocklists(['*.exe']))
    svc = FakeService(deps, [item])
    result = await svc.evaluate_queue_item('h', [], InstanceType.SONARR)
    assert result.should_remove is True
    assert result.reason == DeleteReason.ALL_FILES_BLOCKED
    assert svc.calls == []


async def test_partially_blocked_marks_files_unwanted():
    item = DownloadItem(hash='h', name='n', files=_files(('e01.mkv', 1), ('setup.exe', 1), ('readme.txt', 1)))
    deps = _deps(queue_cleaner={'content_blocker': {'enabled': True}}, blocklists=_blocklists(['*.exe', '*.txt']))
    svc = FakeService(deps, [item])
    result = await svc.evaluate_queue_item('h', [], InstanceType.SONARR)
    assert result.should_remove is False
    assert svc.calls == [('set_unwanted', 'h', [1, 2])]
    assert [f.priority for f in item.files] == [1, 0, 0]


async def test_content_blocker_ignores_private():
    item = DownloadItem(hash='h', name='n', is_private=True, files=_files(('a.exe', 1)))
    deps = _deps(
        queue_cleaner={'content_blocker': {'enabled': True, 'ignore_private': True}},
        blocklists=_blocklists(['*.exe']),
    )
    svc = FakeService(deps, [item])
    result = await svc.evaluate_queue_item('h', [], InstanceType.SONARR)
    assert result.should_remove is False


async def test_slow_download_strikes_until_limit():
    item = DownloadItem(hash='h', name='n', state=DownloadState.DOWNLOADING, download_speed=1024, eta=60,
                        files=_files(('a.mkv', 1)))
    deps = _deps(queue_cleaner={'slow': {'max_strikes': 2, 'min_speed': '10KB'}})
    svc = FakeService(deps, [item])
    first = await svc.evaluate_queue_item('h', [])
    assert first.should_remove is False
    assert deps.strikes.get_count('h', StrikeType.SLOW) == 1
    second = await svc.evaluate_queue_item('h', [])
    assert second.should_remove is True
    assert second.reason == DeleteReason.SLOW


async def test_slow_by_eta_and_size_limit():
    item = DownloadItem(hash='h', name='n', state=DownloadState.DOWNLOADING, download_speed=10 ** 7,
                        eta=3 * 3600, size=10, files=_files(('a.mkv', 1)))
    deps = _deps(queue_cleaner={'slow': {'max_strikes': 1, 'max_time': 2}})
    result = await FakeService(deps, [item]).evaluate_queue_item('h', [])
    assert result.reason == DeleteReason.SLOW

    deps = _deps(queue_cleaner={'slow': {'max_strikes': 1, 'max_time': 2, 'ignore_above_size': '5'}})
    result = await FakeService(deps, [item]).evaluate_queue_item('h', [])
    assert result.should_remove is False


async def test_fast_download_resets_slow_strikes():
    item = DownloadItem(hash='h', name='n', state=DownloadState.DOWNLOADING, download_speed=10 ** 6, eta=60,
                        files=_files(('a.mkv', 1)))
    deps = _deps(queue_cleaner={'slow': {'max_strikes': 5, 'min_speed': '10KB'}})
    deps.strikes.strike_and_check_limit('h', StrikeType.SLOW, 5)
    await FakeService(deps, [item]).evaluate_queue_item('h', [])
    assert deps.strikes.get_count('h', StrikeType.SLOW) == 0


async def test_stalled_strikes_and_progress_reset():
    item = DownloadItem(hash='h', name='n', state=DownloadState.STALLED, downloaded=100, files=_files(('a.mkv', 1)))
    deps = _deps(queue_cleaner={'stalled': {'max_strikes': 3}})
    svc = FakeService(deps, [item])
    await svc.evaluate_queue_item('h', [])
    await svc.evaluate_queue_item('h', [])
    assert deps.strikes.get_count('h', StrikeType.STALLED) == 2

    item.downloaded = 200
    result = await svc.evaluate_queue_item('h', [])
    assert result.should_remove is False
    assert deps.strikes.get_count('h', StrikeType.STALLED) == 1

    await svc.evaluate_queue_item('h', [])
    result = await svc.evaluate_queue_item('h', [])
    assert result.should_remove is True
    assert result.reason == DeleteReason.STALLED


async def test_downloading_with_no_speed_counts_as_stalled():
    item = DownloadItem(hash='h', name='n', state=DownloadState.DOWNLOADING, download_speed=0, eta=0,
                        files=_files(('a.mkv', 1)))
    deps = _deps(queue_cleaner={'stalled': {'max_strikes': 1}})
    result = await FakeService(deps, [item]).evaluate_queue_item('h', [])
    assert result.reason == DeleteReason.STALLED


async def test_downloading_metadata():
    item = DownloadItem(hash='h', name='n', state=DownloadState.METADATA)
    deps = _deps(queue_cleaner={'stalled': {'max_strikes': 0, 'downloading_metadata_max_strikes': 2}})
    svc = FakeService(deps, [item])
    assert (await svc.evaluate_queue_item('h', [])).should_remove is False
    result = await svc.evaluate_queue_item('h', [])
    assert result.should_remove is True
    assert result.reason == DeleteReason.DOWNLOADING_METADATA


async def test_stalled_ignores_private():
    item = DownloadItem(hash='h', name='n', state=DownloadState.STALLED, is_private=True, files=_files(('a.mkv', 1)))
    deps = _deps(queue_cleaner={'stalled': {'max_strikes': 1, 'ignore_private': True}})
    result = await FakeService(deps, [item]).evaluate_queue_item('h', [])
    assert result.should_remove is False
    assert deps.strikes.get_count('h', StrikeType.STALLED) == 0


async def test_private_metadata_downloads_are_still_struck():
    item = DownloadItem(hash='h', name='n', state=DownloadState.METADATA, is_private=True)
    deps = _deps(queue_cleaner={'stalled': {
        'max_strikes': 3, 'downloading_metadata_max_strikes': 3, 'ignore_private': True,
    }})
    await FakeService(deps, [item]).evaluate_queue_item('h', [])
    assert deps.strikes.get_count('h', StrikeType.DOWNLOADING_METADATA) == 1


# -- seeding ---------------------------------------------------------------------

def _seeding(hash, ratio, hours, category='tv', private=False):
    return DownloadItem(hash=hash, name=hash.upper(), state=DownloadState.SEEDING, ratio=ratio,
                        seeding_time=int(hours * 3600), category=category, is_private=private)


async def test_clean_seeding_rules_and_exclusions():
    items = [
        _seeding('done', 2.0, 1),
        _seeding('used', 2.0, 1),
        _seeding('young', 0.1, 1),
        _seeding('private', 5.0, 1, private=True),
        _seeding('other', 5.0, 1, category='music'),
        _seeding('kept', 5.0, 1, category='tv'),
    ]
    deps = _deps()
    svc = FakeService(deps, items)
    cats = [CleanCategory(name='tv', max_ratio=1.0)]
    cleaned = await svc.clean_seeding(items, cats, {'used'}, ['kept'])
    assert cleaned == 1
    assert svc.calls == [('delete', 'done')]
    event, fields = deps.publisher.events[0]
    assert event == 'download_cleaned'
    assert fields['reason'] == 'MaxRatioReached'
    assert fields['category'] == 'tv'


async def test_clean_seeding_deletes_private_when_allowed():
    items = [_seeding('private', 5.0, 1, private=True)]
    deps = _deps(download_cleaner={'delete_private': True})
    svc = FakeService(deps, items)
    assert await svc.clean_seeding(items, [CleanCategory(name='tv', max_ratio=1.0)], set(), []) == 1


async def test_clean_seeding_dry_run_still_reports():
    items = [_seeding('done', 2.0, 1)]
    deps = _deps(dry_run=True)
    svc = FakeService(deps, items)
    assert await svc.clean_seeding(items, [CleanCategory(name='tv', max_ratio=1.0)], set(), []) == 1
    assert svc.calls == []


async def test_filters():
    items = [_seeding('a', 1, 1, category='TV'), _seeding('b', 1, 1, category=None), _seeding('c', 1, 1, category='x')]
    assert [i.hash for i in DownloadService.filter_by_categories(items, [CleanCategory(name='tv')])] == ['a']
    assert [i.hash for i in DownloadService.filter_by_category_names(items, ['X', 'tv'])] == ['a', 'c']


async def test_reclassify_unlinked(tmp_path):
    linked_dir = tmp_path / 'linked'
    lone_dir = tmp_path / 'lone'
    linked_dir.mkdir()
    lone_dir.mkdir()
    (linked_dir / 'a.mkv').write_text('x')
    os.link(str(linked_dir / 'a.mkv'), str(tmp_path / 'library.mkv'))
    (lone_dir / 'b.mkv').write_text('x')

    linked = _seeding('linked', 0, 1)
    linked.save_path = str(linked_dir)
    linked.files = [DownloadFile(index=0, name='a.mkv', priority=1)]
    lone = _seeding('lone', 0, 1)
    lone.save_path = str(lone_dir)
    # skipped files never count
    lone.files = [DownloadFile(index=0, name='b.mkv', priority=1), DownloadFile(index=1, name='gone.nfo', priority=0)]
    missing = _seeding('missing', 0, 1)
    missing.save_path = str(tmp_path / 'nowhere')
    missing.files = [DownloadFile(index=0, name='c.mkv', priority=1)]

    deps = _deps(download_cleaner={'unlinked_target_category': 'unlinked'})
    svc = FakeService(deps, [linked, lone, missing])
    changed = await svc.reclassify_unlinked([linked, lone, missing], set(), [])
    assert changed == 1
    assert svc.calls == [('change_category', 'lone', 'unlinked')]
    assert lone.category == 'unlinked'
    event, fields = deps.publisher.events[0]
    assert event == 'category_changed'
    assert fields['old_category'] == 'tv'
    assert fields['new_category'] == 'unlinked'
    assert fields['is_tag'] is False


async def test_reclassify_without_target_does_nothing():
    svc = FakeService(_deps(), [])
    assert await svc.reclassify_unlinked([_seeding('a', 0, 1)], set(), []) == 0
