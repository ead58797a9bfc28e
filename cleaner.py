import os
import asyncio
import logging
import signal
import aiohttp
from typing import Any, Dict

from core.blocklist import BlocklistProvider
from core.config import ConfigAccessor, ConfigStore, load_yaml
from core.download_cleaner import DownloadCleaner
from core.dryrun import DryRunInterceptor
from core.events import EventBus, NotificationPublisher
from core.hardlinks import HardlinkInspector
from core.queue_cleaner import QueueCleaner
from core.removal import RemovalPipeline
from core.runner import Runtime, run_forever
from core.utils import to_int
from integrations import notifications
from integrations.arr import ArrClient
from integrations.services import RequestManager
from storage.strikes import StrikeStore, load_strikes, save_strikes


# Helper function to get environment variables with type casting
def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


def _as_bool(x):
    return str(x).lower() in ['true', '1', 'yes']


# Fetch debug flag from environment and set logging level
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=_as_bool)
logging_level = logging.DEBUG if DEBUG_LOGGING else logging.INFO

logging.basicConfig(
    format='%(asctime)s [%(levelname)s]: %(message)s',
    level=logging_level,
    handlers=[logging.StreamHandler()],
    force=True,
)

# Dedicated non-propagating logger for structured event logs
EVENT_LOG = logging.getLogger('download_cleaner.events')
EVENT_LOG.setLevel(logging_level)
EVENT_LOG.propagate = False
for _h in list(EVENT_LOG.handlers):
    EVENT_LOG.removeHandler(_h)
_h = logging.StreamHandler()
_h.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
EVENT_LOG.addHandler(_h)

CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')

# env defaults; YAML `general` / `triggers` win when set
ENV_GENERAL = {
    'debug_logging': DEBUG_LOGGING,
    'structured_logs': get_env_var('STRUCTURED_LOGS', default='true', cast_to=_as_bool),
    'dry_run': get_env_var('DRY_RUN', default='false', cast_to=_as_bool),
    'request_timeout': get_env_var('REQUEST_TIMEOUT', 10, cast_to=int),
    'retry_attempts': get_env_var('RETRY_ATTEMPTS', 2, cast_to=int),
    'retry_backoff': get_env_var('RETRY_BACKOFF', 1.0, cast_to=float),
    'strike_file_path': get_env_var('STRIKE_FILE_PATH', '/app/data/strikes.json'),
}
ENV_TRIGGERS = {
    'queue_cleaner': get_env_var('QUEUE_CLEANER_INTERVAL', 300, cast_to=int),
    'download_cleaner': get_env_var('DOWNLOAD_CLEANER_INTERVAL', 3600, cast_to=int),
}


def load_config(path: str) -> Dict[str, Any]:
    cfg = load_yaml(path)
    general = cfg.get('general') if isinstance(cfg.get('general'), dict) else {}
    for key, value in ENV_GENERAL.items():
        general.setdefault(key, value)
    cfg['general'] = general
    triggers = cfg.get('triggers') if isinstance(cfg.get('triggers'), dict) else {}
    for key, value in ENV_TRIGGERS.items():
        triggers.setdefault(key, value)
    cfg['triggers'] = triggers
    return cfg


CONFIG_STORE = ConfigStore(load_config(CONFIG_PATH), path=CONFIG_PATH, debug_logging=DEBUG_LOGGING, loader=load_config)
_AC = CONFIG_STORE.snapshot()

DEBUG_LOGGING = bool(_AC.general('debug_logging', DEBUG_LOGGING))
STRUCTURED_LOGS = bool(_AC.general('structured_logs', True))
STRIKE_FILE_PATH = str(_AC.general('strike_file_path'))

EVENT_BUS = EventBus(structured_logs=STRUCTURED_LOGS, logger=EVENT_LOG)


def build_runtime(session: aiohttp.ClientSession) -> Runtime:
    ac = CONFIG_STORE.snapshot()
    request_timeout = to_int(ac.general('request_timeout'), 10)

    async def _deliver(event: Dict[str, Any]) -> None:
        cfg = CONFIG_STORE.snapshot()
        await notifications.deliver(session, event, cfg.cfg, cfg.dry_run(), DEBUG_LOGGING)

    async def _flush(cfg: ConfigAccessor) -> None:
        await notifications.flush(session, cfg.dry_run(), DEBUG_LOGGING)

    def _save(data: Dict[str, Any]) -> None:
        save_strikes(data, STRIKE_FILE_PATH)

    publisher = NotificationPublisher(EVENT_BUS, sink=_deliver)
    strikes = StrikeStore(
        StrikeStore.window_for(max(ac.trigger_interval(j) for j in ENV_TRIGGERS)),
        listener=publisher.strike_listener,
    )
    strikes.restore(load_strikes(STRIKE_FILE_PATH, DEBUG_LOGGING))
    dry_run = DryRunInterceptor(ac.dry_run())
    requests = RequestManager(
        request_timeout=request_timeout,
        retry_attempts=to_int(ac.general('retry_attempts'), 2),
        retry_backoff=float(ac.general('retry_backoff', 1.0)),
        min_interval_ms=float(ac.general('min_request_interval_ms', 0) or 0),
        max_concurrent=to_int(ac.general('max_concurrent_requests'), 0),
        debug_logging=DEBUG_LOGGING,
    )
    arr = ArrClient(session, requests, dry_run, strikes)
    pipeline = RemovalPipeline(arr, publisher, strikes)
    blocklists = BlocklistProvider(session, request_timeout=request_timeout)
    hardlinks = HardlinkInspector()
    return Runtime(
        session=session,
        config=CONFIG_STORE,
        strikes=strikes,
        dry_run=dry_run,
        hardlinks=hardlinks,
        blocklists=blocklists,
        publisher=publisher,
        pipeline=pipeline,
        queue_cleaner=QueueCleaner(arr, pipeline, blocklists, strikes),
        download_cleaner=DownloadCleaner(arr, hardlinks),
        flush_cb=_flush,
        save_cb=_save,
    )


async def main():
    async with aiohttp.ClientSession() as session:
        if DEBUG_LOGGING:
            logging.info('Running download cleaner')
        rt = build_runtime(session)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, rt.stop.set)
            loop.add_signal_handler(signal.SIGINT, rt.stop.set)
            loop.add_signal_handler(signal.SIGHUP, CONFIG_STORE.reload)
        except (NotImplementedError, AttributeError):
            # no unix signals on this platform
            pass
        await run_forever(rt)


def cli_main():
    asyncio.run(main())


if __name__ == '__main__':
    cli_main()
