import argparse
import asyncio
import json
import os
import sys
import time
from typing import Any, Dict

import aiohttp

from core.blocklist import BlocklistProvider
from core.config import ConfigAccessor, load_yaml
from core.models import DownloadItem, InstanceType, StrikeType
from core.rules import find_category, should_clean_download
from core.utils import to_float, to_int
from storage.strikes import load_strikes as storage_load_strikes, save_strikes as storage_save_strikes


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _strike_path() -> str:
    return _env('STRIKE_FILE_PATH', '/app/data/strikes.json')


def _config() -> ConfigAccessor:
    return ConfigAccessor(load_yaml(_env('CONFIG_PATH', '/app/config.yaml')))


def cmd_list(args):
    data = storage_load_strikes(_strike_path(), debug_logging=False)
    print(json.dumps(data, indent=2))


def cmd_clear(args):
    if args.key:
        d = storage_load_strikes(_strike_path(), debug_logging=False)
        if args.key in d:
            d.pop(args.key, None)
            storage_save_strikes(d, _strike_path())
            print(f"Cleared {args.key}")
        else:
            print("Key not found")
    else:
        storage_save_strikes({}, _strike_path())
        print("Cleared all strikes")


def cmd_status(args):
    data = storage_load_strikes(_strike_path(), debug_logging=False)
    per_type: Dict[str, int] = {t.value: 0 for t in StrikeType}
    progress_entries = 0
    for k, v in (data or {}).items():
        if not isinstance(v, dict):
            continue
        parts = str(k).split(':')
        if parts[0] == 'strike' and len(parts) >= 3:
            per_type[parts[1]] = per_type.get(parts[1], 0) + 1
        elif parts[0] == 'progress':
            progress_entries += 1
    cfg = _config()
    intervals = {job: cfg.trigger_interval(job) for job in ('queue_cleaner', 'download_cleaner')}
    next_runs = {
        job: time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(time.time() + seconds))
        for job, seconds in intervals.items()
    }
    print(
        json.dumps(
            {
                "strike_file": _strike_path(),
                "strikes": per_type,
                "progress_entries": progress_entries,
                "intervals": intervals,
                "next_run": next_runs,
            },
            indent=2,
        )
    )


async def _load_blocklist(content_blocker: Dict[str, Any], instance_type: InstanceType):
    async with aiohttp.ClientSession() as session:
        provider = BlocklistProvider(session)
        await provider.load(content_blocker)
        return provider.get(instance_type)


def cmd_check_file(args):
    try:
        instance_type = InstanceType(args.instance.capitalize())
    except ValueError:
        print(f"Unknown instance type: {args.instance}")
        sys.exit(2)
    blocklist = asyncio.run(_load_blocklist(_config().content_blocker(), instance_type))
    if blocklist is None:
        print(json.dumps({"name": args.name, "instance": instance_type.value, "blocklist": None, "valid": True}, indent=2))
        return
    print(
        json.dumps(
            {
                "name": args.name,
                "instance": instance_type.value,
                "blocklist": blocklist.type.value,
                "valid": blocklist.is_valid(args.name),
            },
            indent=2,
        )
    )


def cmd_seed_check(args):
    with open(args.item_json, 'r') as f:
        raw = json.load(f)
    item = DownloadItem(
        hash=str(raw.get('hash') or ''),
        name=str(raw.get('name') or ''),
        ratio=to_float(raw.get('ratio')),
        seeding_time=to_int(raw.get('seeding_time')),
        category=args.category or raw.get('category'),
        is_private=bool(raw.get('is_private', False)),
    )
    category = find_category(item, _config().clean_categories())
    if category is None:
        print(json.dumps({"category": item.category, "reason": None, "error": "category not configured"}, indent=2))
        sys.exit(1)
    reason = should_clean_download(item, category)
    print(json.dumps({"category": category.name, "reason": reason.value}, indent=2))


def main():
    ap = argparse.ArgumentParser(description="Download Cleaner CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_list = sub.add_parser('list', help='List strike records')
    p_list.set_defaults(func=cmd_list)

    p_clear = sub.add_parser('clear', help='Clear strikes (all or one key)')
    p_clear.add_argument('--key', help='Entry key to clear (e.g., strike:Stalled:<hash>)')
    p_clear.set_defaults(func=cmd_clear)

    p_status = sub.add_parser('status', help='Show strike counts per type and job intervals')
    p_status.set_defaults(func=cmd_status)

    p_check = sub.add_parser('check-file', help='Check a file name against the configured blocklist')
    p_check.add_argument('name', help='File name to check')
    p_check.add_argument('--instance', default='Sonarr', help='Sonarr, Radarr or Lidarr')
    p_check.set_defaults(func=cmd_check_file)

    p_seed = sub.add_parser('seed-check', help='Evaluate the seeding rule for an item JSON')
    p_seed.add_argument('item_json', help='Path to item JSON file (ratio, seeding_time in seconds)')
    p_seed.add_argument('--category', help='Clean category to evaluate against')
    p_seed.set_defaults(func=cmd_seed_check)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()
