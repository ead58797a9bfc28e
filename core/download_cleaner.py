from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

from core.config import ConfigAccessor
from core.errors import CleanerError
from core.hardlinks import HardlinkInspector
from core.models import DownloadItem
from core.utils import parse_bool
from integrations.arr import ArrClient
from integrations.clients import login_all
from integrations.clients.base import DownloadService


class DownloadCleaner:
    """Seeding sweep plus unlinked reclassification over every logged-in client.

    Downloads still referenced by an Arr queue are excluded from both sweeps;
    if any queue can't be read the run stops before touching anything.
    """

    def __init__(self, arr: ArrClient, hardlinks: HardlinkInspector, *, settle_delay: float = 10) -> None:
        self.arr = arr
        self.hardlinks = hardlinks
        # grace period for freshly grabbed downloads to show up in the Arr queues
        self.settle_delay = settle_delay

    async def collect_excluded_hashes(self, cfg: ConfigAccessor, stop: asyncio.Event) -> Set[str]:
        excluded: Set[str] = set()
        for instance in cfg.instances():
            if stop.is_set():
                raise CleanerError('stopped while collecting queue hashes')
            try:
                async for page in self.arr.iterate_queue(instance):
                    excluded.update(r.download_id.lower() for r in page if r.download_id)
            except Exception as e:
                raise CleanerError(f'failed to read queue of {instance.type.value} instance {instance.url}: {e}') from e
        return excluded

    async def run(self, cfg: ConfigAccessor, services: List[DownloadService], stop: Optional[asyncio.Event] = None) -> Dict[str, int]:
        stop = stop or asyncio.Event()
        summary = {'cleaned': 0, 'reclassified': 0}
        settings = cfg.download_cleaner()
        if not parse_bool(settings.get('enabled'), False):
            logging.debug('download cleaner is disabled')
            return summary
        categories = cfg.clean_categories()
        target = str(settings.get('unlinked_target_category') or '')
        unlinked_categories = [str(c) for c in settings.get('unlinked_categories') or []]

        unlinked_enabled = bool(target) and bool(unlinked_categories)
        cleaning_enabled = bool(categories)
        if not unlinked_enabled and not cleaning_enabled:
            logging.warning('download cleaner is not configured properly')
            return summary
        if not services:
            logging.warning('No download clients configured')
            return summary

        clients = await login_all(services)
        if not clients:
            logging.warning('No enabled download clients available')
            return summary

        seeding: Dict[str, List[DownloadItem]] = {}
        for service in clients:
            try:
                seeding[service.config.id] = await service.list_seeding_items()
            except Exception as e:
                logging.error(f'failed to get seeding downloads from {service.name}: {e}')
        if not any(seeding.values()):
            logging.debug('no seeding downloads found')
            return summary
        logging.debug(f'found {sum(len(v) for v in seeding.values())} seeding downloads')

        if unlinked_enabled:
            for service in clients:
                try:
                    logging.debug(f'creating category {target} on {service.name}')
                    await service.create_category(target)
                except Exception as e:
                    logging.error(f'failed to create category {target} on {service.name}: {e}')

        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        try:
            excluded = await self.collect_excluded_hashes(cfg, stop)
        except CleanerError as e:
            logging.error(f'download cleaner aborted: {e}')
            return summary

        ignored = cfg.ignored_downloads()

        if unlinked_enabled:
            ignored_root = str(settings.get('unlinked_ignored_root_dir') or '')
            if ignored_root:
                self.hardlinks.populate_inode_counts(ignored_root)
            for service in clients:
                if stop.is_set():
                    return summary
                items = service.filter_by_category_names(seeding.get(service.config.id) or [], unlinked_categories)
                if not items:
                    continue
                logging.debug(f'found {len(items)} potential downloads to change category on {service.name}')
                try:
                    summary['reclassified'] += await service.reclassify_unlinked(items, excluded, ignored)
                except Exception as e:
                    logging.error(f'failed to change category for downloads on {service.name}: {e}')

        if not cleaning_enabled:
            return summary

        for service in clients:
            if stop.is_set():
                return summary
            items = service.filter_by_categories(seeding.get(service.config.id) or [], categories)
            if not items:
                continue
            logging.debug(f'found {len(items)} potential downloads to clean on {service.name}')
            try:
                summary['cleaned'] += await service.clean_seeding(items, categories, excluded, ignored)
            except Exception as e:
                logging.error(f'failed to clean downloads on {service.name}: {e}')
        return summary
