from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from core.blocklist import BlocklistProvider
from core.config import DEFAULT_TRIGGERS, ConfigAccessor, ConfigStore
from core.download_cleaner import DownloadCleaner
from core.dryrun import DryRunInterceptor
from core.events import NotificationPublisher
from core.hardlinks import HardlinkInspector
from core.queue_cleaner import QueueCleaner
from core.removal import RemovalPipeline
from core.utils import parse_bool, to_float, to_int
from integrations.clients import create_download_services
from integrations.clients.base import DownloadService, ServiceDeps
from storage.strikes import StrikeStore

JOBS = ('queue_cleaner', 'download_cleaner')


@dataclass
class Runtime:
    session: Any
    config: ConfigStore
    strikes: StrikeStore
    dry_run: DryRunInterceptor
    hardlinks: HardlinkInspector
    blocklists: BlocklistProvider
    publisher: NotificationPublisher
    pipeline: RemovalPipeline
    queue_cleaner: QueueCleaner
    download_cleaner: DownloadCleaner
    # flush batched notifications after each run
    flush_cb: Callable[[ConfigAccessor], Awaitable[None]]
    # persist the strike snapshot
    save_cb: Callable[[Dict[str, Any]], None]
    stop: asyncio.Event = field(default_factory=asyncio.Event)


def prepare_run(cfg: ConfigAccessor, rt: Runtime) -> None:
    """Push the per-run settings from a config snapshot into the shared components."""
    rt.dry_run.enabled = cfg.dry_run()
    longest = max(cfg.trigger_interval(job) for job in DEFAULT_TRIGGERS)
    rt.strikes.window_seconds = StrikeStore.window_for(longest)
    rt.pipeline.configure(
        search_enabled=parse_bool(cfg.general('search_enabled'), True),
        search_delay=to_float(cfg.general('search_delay'), 30.0),
    )


def build_services(cfg: ConfigAccessor, rt: Runtime) -> List[DownloadService]:
    deps = ServiceDeps(
        session=rt.session,
        strikes=rt.strikes,
        dry_run=rt.dry_run,
        hardlinks=rt.hardlinks,
        blocklists=rt.blocklists,
        publisher=rt.publisher,
        queue_cleaner=cfg.queue_cleaner(),
        download_cleaner=cfg.download_cleaner(),
        request_timeout=to_int(cfg.general('request_timeout'), 10),
        retry_attempts=to_int(cfg.general('retry_attempts'), 2),
        retry_backoff=to_float(cfg.general('retry_backoff'), 1.0),
        debug_logging=parse_bool(cfg.general('debug_logging'), False),
    )
    return create_download_services(cfg.download_clients(), deps)


async def run_job(rt: Runtime, job: str) -> Dict[str, int]:
    cfg = rt.config.snapshot()
    prepare_run(cfg, rt)
    services = build_services(cfg, rt)

    if job == 'queue_cleaner':
        enqueued = await rt.queue_cleaner.run(cfg, services, rt.stop)
        await rt.pipeline.join()
        purged = rt.strikes.purge_expired()
        try:
            rt.save_cb(rt.strikes.snapshot())
        except OSError as e:
            logging.error(f'failed to save strikes: {e}')
        summary = {'enqueued': enqueued, 'expired': purged}
    elif job == 'download_cleaner':
        summary = await rt.download_cleaner.run(cfg, services, rt.stop)
    else:
        raise ValueError(f'unknown job: {job}')

    await rt.publisher.drain()
    await rt.flush_cb(cfg)
    return summary


async def job_loop(rt: Runtime, job: str, log_fn: Callable[[str], None] = logging.info) -> None:
    while not rt.stop.is_set():
        summary: Optional[Dict[str, int]] = None
        try:
            summary = await run_job(rt, job)
        except Exception as e:
            log_fn(f'Unhandled error in {job} run: {e}')

        interval = rt.config.snapshot().trigger_interval(job)
        if summary is not None:
            log_fn(f"Run summary ({job}): " + ' '.join(f'{k}={v}' for k, v in summary.items()))
        next_run = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(time.time() + interval))
        log_fn(f'Next {job} run: {next_run} (in {interval}s)')
        try:
            await asyncio.wait_for(rt.stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def run_forever(rt: Runtime, jobs: Iterable[str] = JOBS, log_fn: Callable[[str], None] = logging.info) -> None:
    try:
        await asyncio.gather(*(job_loop(rt, job, log_fn) for job in jobs))
    finally:
        await rt.pipeline.stop()
        await rt.publisher.stop()


async def run_once(rt: Runtime, jobs: Iterable[str] = JOBS) -> Dict[str, Dict[str, int]]:
    results: Dict[str, Dict[str, int]] = {}
    try:
        for job in jobs:
            results[job] = await run_job(rt, job)
    finally:
        await rt.pipeline.stop()
        await rt.publisher.stop()
    return results
