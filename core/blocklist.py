from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple

import aiohttp

from core.models import BlocklistType, InstanceType

REGEX_PREFIX = 'regex:'


def _matches_pattern(filename: str, pattern: str) -> bool:
    name = filename.lower()
    pat = pattern.lower()
    starts = pat.startswith('*')
    ends = pat.endswith('*')
    core_pat = pat.strip('*')
    if not core_pat:
        return False
    if starts and not ends:
        return name.endswith(core_pat)
    if ends and not starts:
        return name.startswith(core_pat)
    return core_pat in name


def is_valid(
    filename: str,
    blocklist_type: BlocklistType,
    patterns: Iterable[str],
    regexes: Iterable[Pattern],
) -> bool:
    patterns = list(patterns or [])
    regexes = list(regexes or [])
    matched = any(_matches_pattern(filename, p) for p in patterns) or any(r.search(filename) for r in regexes)
    if blocklist_type == BlocklistType.WHITELIST:
        return matched
    return not matched


def parse_blocklist(lines: Iterable[str]) -> Tuple[List[str], List[Pattern]]:
    patterns: List[str] = []
    regexes: List[Pattern] = []
    for raw in lines:
        line = (raw or '').strip()
        if not line:
            continue
        if line.startswith(REGEX_PREFIX):
            expr = line[len(REGEX_PREFIX):].strip()
            try:
                regexes.append(re.compile(expr, re.IGNORECASE))
            except re.error as e:
                logging.warning(f'invalid regex in blocklist: {expr} ({e})')
            continue
        patterns.append(line)
    return patterns, regexes


@dataclass
class Blocklist:
    type: BlocklistType = BlocklistType.BLACKLIST
    patterns: List[str] = field(default_factory=list)
    regexes: List[Pattern] = field(default_factory=list)

    def is_valid(self, filename: str) -> bool:
        return is_valid(filename, self.type, self.patterns, self.regexes)


class BlocklistProvider:
    """Loads per-instance-type blocklists from a local path or an http(s) URL.

    A list is re-read only when its settings change.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, *, request_timeout: int = 10) -> None:
        self.session = session
        self.request_timeout = request_timeout
        self._lists: Dict[InstanceType, Blocklist] = {}
        self._hashes: Dict[InstanceType, str] = {}

    @staticmethod
    def _settings_hash(settings: Dict[str, Any]) -> str:
        doc = json.dumps(settings, sort_keys=True, default=str)
        return hashlib.sha256(doc.encode('utf-8')).hexdigest()

    async def load(self, content_blocker: Dict[str, Any]) -> None:
        for instance_type in InstanceType:
            settings = content_blocker.get(instance_type.value.lower())
            if not isinstance(settings, dict) or not settings.get('enabled') or not settings.get('path'):
                self._lists.pop(instance_type, None)
                self._hashes.pop(instance_type, None)
                continue
            digest = self._settings_hash(settings)
            if self._hashes.get(instance_type) == digest and instance_type in self._lists:
                continue
            try:
                lines = await self._read_source(str(settings['path']))
            except Exception as e:
                logging.error(f'failed to load {instance_type.value} blocklist from {settings["path"]}: {e}')
                continue
            patterns, regexes = parse_blocklist(lines)
            try:
                bl_type = BlocklistType(str(settings.get('type') or 'blacklist').lower())
            except ValueError:
                bl_type = BlocklistType.BLACKLIST
            self._lists[instance_type] = Blocklist(type=bl_type, patterns=patterns, regexes=regexes)
            self._hashes[instance_type] = digest
            logging.info(
                f'loaded {len(patterns)} patterns and {len(regexes)} regexes for {instance_type.value} ({bl_type.value})'
            )

    def get(self, instance_type: Optional[InstanceType]) -> Optional[Blocklist]:
        if instance_type is None:
            return None
        return self._lists.get(instance_type)

    async def _read_source(self, path: str) -> List[str]:
        if path.startswith('http://') or path.startswith('https://'):
            if self.session is None:
                raise RuntimeError('no http session for remote blocklist')
            resp = await self.session.get(path, timeout=aiohttp.ClientTimeout(total=self.request_timeout))
            resp.raise_for_status()
            text = await resp.text()
            return text.splitlines()
        with open(path, 'r', encoding='utf-8') as f:
            return f.read().splitlines()
