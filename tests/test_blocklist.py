import re

import pytest

from core.blocklist import Blocklist, BlocklistProvider, is_valid, parse_blocklist
from core.models import BlocklistType, InstanceType


pytestmark = pytest.mark.asyncio


def test_blacklist_substring_and_anchors():
    patterns = ['sample', '*.exe', 'readme*']
    assert is_valid('Show.S01E01.mkv', BlocklistType.BLACKLIST, patterns, []) is True
    assert is_valid('Show.S01E01.SAMPLE.mkv', BlocklistType.BLACKLIST, patterns, []) is False
    assert is_valid('setup.exe', BlocklistType.BLACKLIST, patterns, []) is False
    # suffix anchor only matches at the end
    assert is_valid('setup.exe.mkv', BlocklistType.BLACKLIST, patterns, []) is True
    assert is_valid('README.txt', BlocklistType.BLACKLIST, patterns, []) is False
    assert is_valid('show.readme.txt', BlocklistType.BLACKLIST, patterns, []) is True


def test_whitelist_requires_a_match():
    assert is_valid('movie.mkv', BlocklistType.WHITELIST, ['*.mkv'], []) is True
    assert is_valid('movie.nfo', BlocklistType.WHITELIST, ['*.mkv'], []) is False
    # nothing configured means nothing is allowed
    assert is_valid('movie.mkv', BlocklistType.WHITELIST, [], []) is False
    assert is_valid('movie.mkv', BlocklistType.BLACKLIST, [], []) is True


def test_regex_entries():
    patterns, regexes = parse_blocklist(['', '  ', 'regex:^sample\\.', '*.lnk'])
    assert patterns == ['*.lnk']
    assert len(regexes) == 1
    bl = Blocklist(type=BlocklistType.BLACKLIST, patterns=patterns, regexes=regexes)
    assert bl.is_valid('Sample.mkv') is False
    assert bl.is_valid('movie.sample.mkv') is True
    assert bl.is_valid('shortcut.LNK') is False


def test_invalid_regex_is_skipped(caplog):
    with caplog.at_level('WARNING'):
        patterns, regexes = parse_blocklist(['regex:([unclosed', 'ok'])
    assert patterns == ['ok']
    assert regexes == []
    assert 'invalid regex' in caplog.text


def test_regex_matches_case_insensitive():
    regexes = [re.compile('x264', re.IGNORECASE)]
    assert is_valid('Movie.X264.mkv', BlocklistType.BLACKLIST, [], regexes) is False


async def test_provider_loads_local_file_and_reloads_on_settings_change(tmp_path):
    first = tmp_path / 'sonarr.txt'
    first.write_text('*.exe\nregex:sample\n')
    second = tmp_path / 'radarr.txt'
    second.write_text('*.mkv\n')

    provider = BlocklistProvider()
    settings = {
        'sonarr': {'enabled': True, 'path': str(first), 'type': 'blacklist'},
        'radarr': {'enabled': True, 'path': str(second), 'type': 'whitelist'},
        'lidarr': {'enabled': False, 'path': str(first)},
    }
    await provider.load(settings)
    sonarr = provider.get(InstanceType.SONARR)
    radarr = provider.get(InstanceType.RADARR)
    assert provider.get(InstanceType.LIDARR) is None
    assert provider.get(None) is None
    assert sonarr.type == BlocklistType.BLACKLIST
    assert sonarr.patterns == ['*.exe']
    assert radarr.type == BlocklistType.WHITELIST
    assert radarr.is_valid('movie.mkv') is True

    # unchanged settings keep the cached list even if the file changed
    first.write_text('*.iso\n')
    await provider.load(settings)
    assert provider.get(InstanceType.SONARR) is sonarr

    settings['sonarr'] = {'enabled': True, 'path': str(first), 'type': 'whitelist'}
    await provider.load(settings)
    reloaded = provider.get(InstanceType.SONARR)
    assert reloaded is not sonarr
    assert reloaded.patterns == ['*.iso']
    assert reloaded.type == BlocklistType.WHITELIST


async def test_provider_missing_file_logs_error(tmp_path, caplog):
    provider = BlocklistProvider()
    with caplog.at_level('ERROR'):
        await provider.load({'sonarr': {'enabled': True, 'path': str(tmp_path / 'nope.txt')}})
    assert provider.get(InstanceType.SONARR) is None
    assert 'failed to load Sonarr blocklist' in caplog.text


async def test_provider_disabling_drops_list(tmp_path):
    path = tmp_path / 'list.txt'
    path.write_text('*.exe\n')
    provider = BlocklistProvider()
    await provider.load({'sonarr': {'enabled': True, 'path': str(path)}})
    assert provider.get(InstanceType.SONARR) is not None
    await provider.load({'sonarr': {'enabled': False, 'path': str(path)}})
    assert provider.get(InstanceType.SONARR) is None
