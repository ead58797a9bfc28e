from __future__ import annotations

import copy
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional

import yaml

from core.errors import ConfigValidationError
from core.models import ArrInstance, CleanCategory, ClientType, DownloadClientConfig, InstanceType
from core.utils import parse_bool, parse_size, to_float, to_int

DEFAULT_TRIGGERS = {'queue_cleaner': 300, 'download_cleaner': 3600}

QUEUE_CLEANER_DEFAULTS: Dict[str, Any] = {
    'enabled': True,
    'failed_import': {
        'max_strikes': 0,
        'ignore_private': False,
        'delete_private': False,
        'ignore_patterns': [],
    },
    'stalled': {
        'max_strikes': 0,
        'reset_strikes_on_progress': True,
        'ignore_private': False,
        'delete_private': False,
        'downloading_metadata_max_strikes': 0,
    },
    'slow': {
        'max_strikes': 0,
        'reset_strikes_on_progress': True,
        'ignore_private': False,
        'delete_private': False,
        'min_speed': 0,
        'max_time': 0,
        'ignore_above_size': 0,
    },
    'content_blocker': {
        'enabled': False,
        'ignore_private': False,
        'delete_private': False,
        'sonarr': {'enabled': False, 'path': None, 'type': 'blacklist'},
        'radarr': {'enabled': False, 'path': None, 'type': 'blacklist'},
        'lidarr': {'enabled': False, 'path': None, 'type': 'blacklist'},
    },
}

DOWNLOAD_CLEANER_DEFAULTS: Dict[str, Any] = {
    'enabled': False,
    'delete_private': False,
    'categories': [],
    'unlinked_target_category': 'unlinked',
    'unlinked_use_tag': False,
    'unlinked_ignored_root_dir': '',
    'unlinked_categories': [],
}

STRIKE_SECTIONS = ('failed_import', 'stalled', 'slow')
VALID_DEST_TYPES = {'discord', 'slack', 'generic'}


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except Exception as e:
        logging.error(f'failed to load config {path}: {e}')
        return {}


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(key, default)


def _merge(defaults: Dict[str, Any], override: Any) -> Dict[str, Any]:
    out = copy.deepcopy(defaults)
    if not isinstance(override, dict):
        return out
    for key, value in override.items():
        if isinstance(out.get(key), dict) and isinstance(value, dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    def _section(self, name: str) -> Dict[str, Any]:
        sec = self.cfg.get(name)
        return sec if isinstance(sec, dict) else {}

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        return self._section('general').get(key, default)

    def dry_run(self) -> bool:
        return parse_bool(self.general('dry_run'), False)

    def trigger_interval(self, job: str) -> int:
        return max(1, to_int(self._section('triggers').get(job), DEFAULT_TRIGGERS.get(job, 300)))

    # Endpoints from env (documented precedence: YAML instances, then env)
    def service_endpoint(self, service_name: str) -> Dict[str, Optional[str]]:
        upper = service_name.upper()
        return {
            'api_url': _get_env(f'{upper}_URL') or None,
            'api_key': _get_env(f'{upper}_API_KEY') or None,
        }

    def arr_settings(self, instance_type: InstanceType) -> Dict[str, Any]:
        sec = self._section('arr').get(instance_type.value.lower())
        return sec if isinstance(sec, dict) else {}

    def instances(self, instance_type: Optional[InstanceType] = None) -> List[ArrInstance]:
        out: List[ArrInstance] = []
        types = [instance_type] if instance_type else list(InstanceType)
        for itype in types:
            settings = self.arr_settings(itype)
            if settings and not parse_bool(settings.get('enabled'), True):
                continue
            search_type = str(settings.get('search_type') or 'episode').lower()
            seen = set()
            for inst in settings.get('instances') or []:
                if not isinstance(inst, dict) or not inst.get('url') or not inst.get('api_key'):
                    continue
                url = str(inst['url']).rstrip('/')
                seen.add(url)
                out.append(ArrInstance(
                    name=str(inst.get('name') or url),
                    type=itype,
                    url=url,
                    api_key=str(inst['api_key']),
                    search_type=search_type,
                ))
            ep = self.service_endpoint(itype.value)
            if ep['api_url'] and ep['api_key'] and ep['api_url'].rstrip('/') not in seen:
                out.append(ArrInstance(
                    name=itype.value,
                    type=itype,
                    url=ep['api_url'].rstrip('/'),
                    api_key=ep['api_key'],
                    search_type=search_type,
                ))
        return out

    # Clients
    def download_clients(self, enabled_only: bool = True) -> List[DownloadClientConfig]:
        raw = self.cfg.get('download_clients') if isinstance(self.cfg.get('download_clients'), list) else []
        out: List[DownloadClientConfig] = []
        for idx, c in enumerate(raw):
            if not isinstance(c, dict):
                continue
            try:
                ctype = ClientType(str(c.get('type') or '').lower())
            except ValueError:
                continue
            enabled = parse_bool(c.get('enabled'), True)
            if enabled_only and not enabled:
                continue
            out.append(DownloadClientConfig(
                id=str(c.get('id') or f'{ctype.value}-{idx}'),
                type=ctype,
                host=str(c.get('host') or ''),
                name=str(c.get('name') or ''),
                enabled=enabled,
                username=c.get('username'),
                password=c.get('password'),
                url_base=str(c.get('url_base') or ''),
            ))
        return out

    def queue_cleaner(self) -> Dict[str, Any]:
        return _merge(QUEUE_CLEANER_DEFAULTS, self.cfg.get('queue_cleaner'))

    def content_blocker(self) -> Dict[str, Any]:
        return self.queue_cleaner()['content_blocker']

    def download_cleaner(self) -> Dict[str, Any]:
        return _merge(DOWNLOAD_CLEANER_DEFAULTS, self.cfg.get('download_cleaner'))

    def clean_categories(self) -> List[CleanCategory]:
        cats = self.download_cleaner().get('categories') or []
        return [CleanCategory.from_config(c) for c in cats if isinstance(c, dict) and c.get('name')]

    def ignored_downloads(self) -> List[str]:
        values = [str(v).strip() for v in (self.general('ignored_downloads') or []) if str(v).strip()]
        path = self.general('ignored_downloads_path')
        if path:
            try:
                with open(path, 'r') as f:
                    values.extend(line.strip() for line in f if line.strip() and not line.startswith('#'))
            except OSError as e:
                logging.warning(f'ignored downloads file not found: {path} ({e})')
        return values


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = copy.deepcopy(cfg)

    triggers = out.get('triggers') if isinstance(out.get('triggers'), dict) else {}
    for job, default in DEFAULT_TRIGGERS.items():
        if job in triggers:
            triggers[job] = max(1, to_int(triggers.get(job), default))
    if triggers:
        out['triggers'] = triggers

    qc = out.get('queue_cleaner') if isinstance(out.get('queue_cleaner'), dict) else {}
    for name in STRIKE_SECTIONS:
        sec = qc.get(name) if isinstance(qc.get(name), dict) else None
        if sec is None:
            continue
        if 'max_strikes' in sec:
            sec['max_strikes'] = max(0, to_int(sec.get('max_strikes'), 0))
        if 'downloading_metadata_max_strikes' in sec:
            sec['downloading_metadata_max_strikes'] = max(0, to_int(sec.get('downloading_metadata_max_strikes'), 0))
    slow = qc.get('slow') if isinstance(qc.get('slow'), dict) else None
    if slow is not None:
        slow['min_speed'] = parse_size(slow.get('min_speed'))
        slow['ignore_above_size'] = parse_size(slow.get('ignore_above_size'))
        slow['max_time'] = max(0.0, to_float(slow.get('max_time'), 0.0))
    fi = qc.get('failed_import') if isinstance(qc.get('failed_import'), dict) else None
    if fi is not None and fi.get('ignore_patterns') is not None and not isinstance(fi.get('ignore_patterns'), list):
        fi['ignore_patterns'] = [str(fi['ignore_patterns'])]

    dc = out.get('download_cleaner') if isinstance(out.get('download_cleaner'), dict) else None
    if dc is not None:
        cats = []
        for c in dc.get('categories') or []:
            if not isinstance(c, dict):
                continue
            c = dict(c)
            c['max_ratio'] = to_float(c.get('max_ratio', -1), -1)
            c['min_seed_time'] = to_float(c.get('min_seed_time', 0), 0)
            c['max_seed_time'] = to_float(c.get('max_seed_time', -1), -1)
            cats.append(c)
        dc['categories'] = cats
        if dc.get('unlinked_categories') is not None and not isinstance(dc.get('unlinked_categories'), list):
            dc['unlinked_categories'] = [str(dc['unlinked_categories'])]

    # Notifications destinations validation/cleanup
    notif = out.get('notifications') if isinstance(out.get('notifications'), dict) else {}
    dests = notif.get('destinations') if isinstance(notif.get('destinations'), list) else []
    cleaned = []
    for d in dests:
        if not isinstance(d, dict):
            continue
        typ = str(d.get('type') or 'generic').lower()
        if not d.get('url') or typ not in VALID_DEST_TYPES:
            if debug_logging:
                logging.warning(f'Ignoring invalid notification destination: {d}')
            continue
        for key in ('reasons', 'events'):
            rs = d.get(key)
            if rs is not None and not isinstance(rs, list):
                d[key] = [str(rs)]
        cleaned.append(d)
    if dests:
        notif['destinations'] = cleaned
        out['notifications'] = notif
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Raise ``ConfigValidationError`` on a broken config; return (and log) soft warnings."""
    ac = ConfigAccessor(cfg)
    warnings: List[str] = []

    qc = ac.queue_cleaner()
    for name in STRIKE_SECTIONS:
        max_strikes = to_int(qc[name].get('max_strikes'), 0)
        if 0 < max_strikes < 3:
            raise ConfigValidationError(f'the minimum value for {name} max strikes must be 3')
    meta = to_int(qc['stalled'].get('downloading_metadata_max_strikes'), 0)
    if 0 < meta < 3:
        raise ConfigValidationError('the minimum value for downloading metadata max strikes must be 3')

    dc = ac.download_cleaner()
    if parse_bool(dc.get('enabled'), False):
        names = [c.name for c in ac.clean_categories()]
        if len(names) != len(set(names)):
            raise ConfigValidationError('duplicated clean categories found')
        for cat in ac.clean_categories():
            if cat.max_ratio < 0 and cat.max_seed_time < 0:
                raise ConfigValidationError(f'category {cat.name}: both max_ratio and max_seed_time are disabled')
            if cat.min_seed_time < 0:
                raise ConfigValidationError(f'category {cat.name}: min_seed_time can not be negative')
        target = dc.get('unlinked_target_category')
        unlinked = dc.get('unlinked_categories') or []
        if target and unlinked:
            if target in unlinked:
                raise ConfigValidationError('the unlinked target category should not be present in unlinked categories')
            if any(not str(c).strip() for c in unlinked):
                raise ConfigValidationError('empty unlinked category filter found')
            root = dc.get('unlinked_ignored_root_dir')
            if root and not os.path.isdir(root):
                raise ConfigValidationError(f'{root} root directory does not exist')

    raw_clients = cfg.get('download_clients') if isinstance(cfg.get('download_clients'), list) else []
    for c in raw_clients:
        if not isinstance(c, dict):
            raise ConfigValidationError(f'invalid download client entry: {c!r}')
        try:
            ctype = ClientType(str(c.get('type') or '').lower())
        except ValueError:
            raise ConfigValidationError(f"unknown download client type: {c.get('type')!r}")
        if ctype != ClientType.USENET and not c.get('host'):
            raise ConfigValidationError(f"download client {c.get('id') or c.get('name') or ctype.value} has no host")

    arr = cfg.get('arr') if isinstance(cfg.get('arr'), dict) else {}
    for type_name, settings in arr.items():
        if not isinstance(settings, dict):
            continue
        for inst in settings.get('instances') or []:
            if not isinstance(inst, dict) or not inst.get('url') or not inst.get('api_key'):
                raise ConfigValidationError(f'{type_name} instance is missing url or api_key: {inst!r}')

    # Service env pairs
    for itype in InstanceType:
        ep = ac.service_endpoint(itype.value)
        if bool(ep['api_url']) != bool(ep['api_key']):
            warnings.append(f'Service {itype.value} has partial env config (URL/API_KEY); it will be skipped.')

    notif = cfg.get('notifications') if isinstance(cfg.get('notifications'), dict) else {}
    for d in notif.get('destinations') or []:
        if isinstance(d, dict) and not d.get('url'):
            warnings.append(f"Notification destination '{d.get('name') or d.get('type')}' missing url; it will be ignored.")

    for w in warnings:
        logging.warning(w)
    return warnings


class ConfigStore:
    """Read/write gate around the live config.

    Jobs take one ``snapshot()`` per run; edits go through ``update()`` which
    validates before swapping so a run never observes a half-applied change.
    """

    def __init__(
        self,
        cfg: Dict[str, Any],
        path: Optional[str] = None,
        debug_logging: bool = False,
        loader: Callable[[str], Dict[str, Any]] = load_yaml,
    ) -> None:
        self.path = path
        self.loader = loader
        self.debug_logging = debug_logging
        self._lock = threading.RLock()
        self._cfg = sanitize_config(cfg, debug_logging)
        validate_config(self._cfg, debug_logging)

    def snapshot(self) -> ConfigAccessor:
        with self._lock:
            return ConfigAccessor(copy.deepcopy(self._cfg))

    def update(self, cfg: Dict[str, Any]) -> None:
        clean = sanitize_config(cfg, self.debug_logging)
        validate_config(clean, self.debug_logging)
        with self._lock:
            self._cfg = clean

    def reload(self) -> bool:
        if not self.path:
            return False
        try:
            self.update(self.loader(self.path))
        except ConfigValidationError as e:
            logging.error(f'config reload rejected: {e}')
            return False
        logging.info(f'config reloaded from {self.path}')
        return True
