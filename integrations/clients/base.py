from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from core.blocklist import BlocklistProvider
from core.dryrun import DryRunInterceptor
from core.events import NotificationPublisher
from core.hardlinks import HardlinkInspector
from core.models import (
    CleanCategory,
    CleanReason,
    ClientType,
    DeleteReason,
    DownloadCheckResult,
    DownloadClientConfig,
    DownloadFile,
    DownloadItem,
    DownloadState,
    InstanceType,
    StrikeType,
)
from core.rules import find_category, should_clean_download
from core.utils import parse_bool, parse_size, to_float, to_int
from storage.strikes import StrikeStore


@dataclass
class ServiceDeps:
    session: aiohttp.ClientSession
    strikes: StrikeStore
    dry_run: DryRunInterceptor
    hardlinks: HardlinkInspector
    blocklists: BlocklistProvider
    publisher: NotificationPublisher
    queue_cleaner: Dict[str, Any] = field(default_factory=dict)
    download_cleaner: Dict[str, Any] = field(default_factory=dict)
    request_timeout: int = 10
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    debug_logging: bool = False


class DownloadService:
    """Protocol-agnostic download client adapter.

    Subclasses own their wire session and implement the ``_`` primitives;
    the checks, strike bookkeeping and dry-run routing live here so every
    protocol behaves the same. Mutations only ever go through the public
    methods, which route them via the dry-run interceptor.
    """

    client_type: ClientType

    def __init__(self, config: DownloadClientConfig, deps: ServiceDeps) -> None:
        self.config = config
        self.deps = deps
        self.name = config.display_name

    # -- protocol primitives -------------------------------------------------

    async def login(self) -> None:
        raise NotImplementedError

    async def _get_item(self, download_hash: str) -> Optional[DownloadItem]:
        raise NotImplementedError

    async def _get_files(self, item: DownloadItem) -> List[DownloadFile]:
        raise NotImplementedError

    async def _set_unwanted(self, item: DownloadItem, files: List[DownloadFile]) -> None:
        raise NotImplementedError

    async def _delete(self, download_hash: str) -> None:
        raise NotImplementedError

    async def _get_seeding(self) -> List[DownloadItem]:
        raise NotImplementedError

    async def _create_category(self, name: str) -> None:
        raise NotImplementedError

    async def _change_category(self, item: DownloadItem, category: str) -> None:
        raise NotImplementedError

    def _uses_tag_for_unlinked(self) -> bool:
        return False

    # -- mutations, always through the dry-run gate --------------------------

    async def delete_item(self, download_hash: str) -> None:
        await self.deps.dry_run.intercept(self._delete, download_hash, name='delete_item')

    async def set_unwanted_files(self, item: DownloadItem, files: List[DownloadFile]) -> None:
        await self.deps.dry_run.intercept(self._set_unwanted, item, files, name='set_unwanted_files')

    async def change_category(self, item: DownloadItem, category: str) -> None:
        await self.deps.dry_run.intercept(self._change_category, item, category, name='change_category')

    async def create_category(self, name: str) -> None:
        await self.deps.dry_run.intercept(self._create_category, name, name='create_category')

    # -- queue cleaning --------------------------------------------------------

    @property
    def _qc(self) -> Dict[str, Any]:
        return self.deps.queue_cleaner or {}

    @property
    def _dc(self) -> Dict[str, Any]:
        return self.deps.download_cleaner or {}

    async def evaluate_queue_item(
        self,
        download_hash: str,
        ignored_downloads: Iterable[str],
        instance_type: Optional[InstanceType] = None,
    ) -> DownloadCheckResult:
        result = DownloadCheckResult()
        item = await self._get_item(download_hash)
        if item is None:
            logging.debug(f'failed to find {download_hash} in {self.name}')
            return result

        result.found = True
        result.is_private = item.is_private

        if item.should_ignore(list(ignored_downloads or [])):
            logging.info(f'skip | download is ignored | {item.name}')
            return result

        if item.files and all(f.priority == 0 for f in item.files):
            logging.debug(f'all files are skipped | {item.name}')
            result.should_remove = True
            result.reason = DeleteReason.ALL_FILES_SKIPPED
            return result

        for check in (self._check_blocked_files, self._check_slow, self._check_stalled):
            should_remove, reason = await check(item, instance_type)
            if should_remove:
                result.should_remove = True
                result.reason = reason
                return result
        return result

    async def _check_blocked_files(self, item: DownloadItem, instance_type: Optional[InstanceType]) -> Tuple[bool, DeleteReason]:
        cb = self._qc.get('content_blocker') or {}
        if not parse_bool(cb.get('enabled'), False):
            return False, DeleteReason.NONE
        if parse_bool(cb.get('ignore_private'), False) and item.is_private:
            logging.debug(f'skip files check | download is private | {item.name}')
            return False, DeleteReason.NONE
        blocklist = self.deps.blocklists.get(instance_type)
        if blocklist is None:
            return False, DeleteReason.NONE

        unwanted: List[DownloadFile] = []
        total_unwanted = 0
        for f in item.files:
            if f.priority == 0:
                total_unwanted += 1
                continue
            if blocklist.is_valid(f.name):
                continue
            logging.info(f'unwanted file found | {f.name}')
            unwanted.append(f)
            total_unwanted += 1

        if not unwanted:
            return False, DeleteReason.NONE
        if total_unwanted == len(item.files):
            logging.debug(f'all files are blocked | {item.name}')
            return True, DeleteReason.ALL_FILES_BLOCKED

        logging.debug(f'marking {len(unwanted)} unwanted files | {item.name}')
        await self.set_unwanted_files(item, unwanted)
        for f in unwanted:
            f.priority = 0
        return False, DeleteReason.NONE

    async def _check_slow(self, item: DownloadItem, instance_type: Optional[InstanceType] = None) -> Tuple[bool, DeleteReason]:
        slow = self._qc.get('slow') or {}
        max_strikes = to_int(slow.get('max_strikes'), 0)
        if max_strikes == 0:
            return False, DeleteReason.NONE
        if item.state != DownloadState.DOWNLOADING:
            return False, DeleteReason.NONE
        if item.download_speed <= 0:
            return False, DeleteReason.NONE
        if parse_bool(slow.get('ignore_private'), False) and item.is_private:
            logging.debug(f'skip slow check | download is private | {item.name}')
            return False, DeleteReason.NONE
        ignore_above = parse_size(slow.get('ignore_above_size'))
        if ignore_above > 0 and item.size > ignore_above:
            logging.debug(f'skip slow check | download is too large | {item.name}')
            return False, DeleteReason.NONE

        min_speed = parse_size(slow.get('min_speed'))
        max_time_hours = to_float(slow.get('max_time'), 0.0)
        too_slow = min_speed > 0 and item.download_speed < min_speed
        too_long = max_time_hours > 0 and item.eta > max_time_hours * 3600
        if not (too_slow or too_long):
            if parse_bool(slow.get('reset_strikes_on_progress'), True):
                self.deps.strikes.reset_strikes(item.hash, StrikeType.SLOW)
            return False, DeleteReason.NONE

        removed = self.deps.strikes.strike_and_check_limit(item.hash, StrikeType.SLOW, max_strikes, item.name)
        return removed, DeleteReason.SLOW if removed else DeleteReason.NONE

    async def _check_stalled(self, item: DownloadItem, instance_type: Optional[InstanceType] = None) -> Tuple[bool, DeleteReason]:
        stalled = self._qc.get('stalled') or {}
        if item.state == DownloadState.METADATA:
            meta_strikes = to_int(stalled.get('downloading_metadata_max_strikes'), 0)
            if meta_strikes == 0:
                return False, DeleteReason.NONE
            removed = self.deps.strikes.strike_and_check_limit(
                item.hash, StrikeType.DOWNLOADING_METADATA, meta_strikes, item.name
            )
            return removed, DeleteReason.DOWNLOADING_METADATA if removed else DeleteReason.NONE

        max_strikes = to_int(stalled.get('max_strikes'), 0)
        if max_strikes == 0:
            return False, DeleteReason.NONE
        if not self._is_stalled(item):
            return False, DeleteReason.NONE
        if parse_bool(stalled.get('ignore_private'), False) and item.is_private:
            logging.debug(f'skip stalled check | download is private | {item.name}')
            return False, DeleteReason.NONE

        self.deps.strikes.reset_on_progress(
            item.hash, item.downloaded, parse_bool(stalled.get('reset_strikes_on_progress'), True)
        )
        removed = self.deps.strikes.strike_and_check_limit(item.hash, StrikeType.STALLED, max_strikes, item.name)
        return removed, DeleteReason.STALLED if removed else DeleteReason.NONE

    def _is_stalled(self, item: DownloadItem) -> bool:
        """Downloading with no ETA. Clients with a dedicated stalled state override this."""
        if item.state == DownloadState.STALLED:
            return True
        return item.state == DownloadState.DOWNLOADING and item.eta <= 0

    # -- download cleaning ---------------------------------------------------

    async def list_seeding_items(self) -> List[DownloadItem]:
        items = await self._get_seeding()
        for item in items:
            item.client_id = self.config.id
        return items

    @staticmethod
    def filter_by_categories(items: List[DownloadItem], categories: List[CleanCategory]) -> List[DownloadItem]:
        names = {c.name.lower() for c in categories}
        return [i for i in items if (i.category or '').lower() in names]

    @staticmethod
    def filter_by_category_names(items: List[DownloadItem], names: Iterable[str]) -> List[DownloadItem]:
        wanted = {str(n).lower() for n in names}
        return [i for i in items if (i.category or '').lower() in wanted]

    async def clean_seeding(
        self,
        items: List[DownloadItem],
        categories: List[CleanCategory],
        excluded_hashes: Set[str],
        ignored_downloads: Iterable[str],
    ) -> int:
        ignored = list(ignored_downloads or [])
        delete_private = parse_bool(self._dc.get('delete_private'), False)
        cleaned = 0
        for item in items:
            if item.hash.lower() in excluded_hashes:
                logging.debug(f'skip | download is used by an arr | {item.name}')
                continue
            if item.should_ignore(ignored):
                logging.info(f'skip | download is ignored | {item.name}')
                continue
            category = find_category(item, categories)
            if category is None:
                continue
            if item.is_private and not delete_private:
                logging.debug(f'skip | download is private | {item.name}')
                continue

            reason = should_clean_download(item, category)
            if reason == CleanReason.NONE:
                continue
            try:
                await self.delete_item(item.hash)
            except Exception as e:
                logging.error(f'failed to clean download {item.name} on {self.name}: {e}')
                continue
            cleaned += 1
            logging.info(f'download cleaned | {reason.value} reached | {item.name}')
            await self.deps.publisher.notify_download_cleaned(item, category, reason)
        return cleaned

    async def reclassify_unlinked(
        self,
        items: List[DownloadItem],
        excluded_hashes: Set[str],
        ignored_downloads: Iterable[str],
    ) -> int:
        ignored = list(ignored_downloads or [])
        target = str(self._dc.get('unlinked_target_category') or '')
        ignored_root = str(self._dc.get('unlinked_ignored_root_dir') or '')
        if not target:
            return 0
        changed = 0
        for item in items:
            if item.hash.lower() in excluded_hashes:
                logging.debug(f'skip | download is used by an arr | {item.name}')
                continue
            if item.should_ignore(ignored):
                logging.info(f'skip | download is ignored | {item.name}')
                continue
            try:
                files = item.files or await self._get_files(item)
                if self._has_hardlinks(item, files, bool(ignored_root)):
                    logging.debug(f'skip | download has hardlinks | {item.name}')
                    continue
                old = item.category
                await self.change_category(item, target)
            except Exception as e:
                logging.error(f'failed to change category for {item.name} on {self.name}: {e}')
                continue
            changed += 1
            is_tag = self._uses_tag_for_unlinked()
            if is_tag:
                item.tags.append(target)
            else:
                item.category = target
            logging.info(f'category changed for {item.name}')
            await self.deps.publisher.notify_category_changed(item, old, target, is_tag)
        return changed

    def _has_hardlinks(self, item: DownloadItem, files: List[DownloadFile], ignore_root: bool) -> bool:
        for f in files:
            if f.priority <= 0:
                continue
            path = os.path.join(item.save_path, f.path or f.name)
            count = self.deps.hardlinks.get_hardlink_count(path, ignore_root)
            if count < 0:
                logging.debug(f'skip | could not get hardlink count | {path}')
                return True
            if count > 0:
                return True
        return False
