from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

# Public queues so callers can inspect/clear for tests
notify_queues: Dict[str, List[str]] = {}
notify_dests: Dict[str, Dict[str, Any]] = {}

DEFAULT_TEMPLATES = {
    'strike': 'Strike {strikes} ({strike_type}) for {title}',
    'queue_item_deleted': 'Removed {title} from {instance_type} queue reason={reason}',
    'download_cleaned': 'Cleaned {title} from category {category} reason={reason}',
    'category_changed': 'Moved {title} from {old_category} to {new_category}',
}


class _Fields(dict):
    def __missing__(self, key):
        return 'unknown'


def _notif_destinations(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    notifications = config.get('notifications') if isinstance(config.get('notifications'), dict) else {}
    dests = notifications.get('destinations') if isinstance(notifications, dict) else None
    if isinstance(dests, list) and dests:
        return [d for d in dests if isinstance(d, dict) and d.get('url')]
    return []


def _notif_match(dest: Dict[str, Any], event: Dict[str, Any]) -> bool:
    events = dest.get('events')
    if isinstance(events, list) and events and '*' not in events and event.get('event') not in events:
        return False
    rs = dest.get('reasons')
    if not isinstance(rs, list) or not rs:
        return True
    if '*' in rs:
        return True
    return event.get('reason') in rs or event.get('strike_type') in rs


def _notif_template(dest: Dict[str, Any], event_name: str) -> str:
    t = dest.get('template')
    if isinstance(t, str) and t:
        return t
    return DEFAULT_TEMPLATES.get(event_name, '{event}: {title}')


def _notif_format_line(dest: Dict[str, Any], event: Dict[str, Any]) -> str:
    template = _notif_template(dest, str(event.get('event')))
    fields = _Fields({k: ('unknown' if v is None else v) for k, v in event.items()})
    # For raw_json templates, avoid str.format brace parsing; perform minimal substitution
    if bool(dest.get('raw_json', False)):
        line = template
        for key, value in fields.items():
            line = line.replace('{' + key + '}', str(value))
        return line
    try:
        return template.format_map(fields)
    except (ValueError, IndexError):
        return f"{event.get('event')}: {event.get('title')} reason={event.get('reason') or 'unknown'}"


async def _notif_send_immediate(
    session: aiohttp.ClientSession,
    dest: Dict[str, Any],
    line: str,
    dry_run: bool,
    debug_logging: bool,
) -> None:
    url = dest.get('url')
    typ = str(dest.get('type') or 'generic').lower()
    timeout = aiohttp.ClientTimeout(total=5)
    headers = dest.get('headers') if isinstance(dest.get('headers'), dict) else None
    payload_line = f"[DRY RUN] {line}" if dry_run else line
    try:
        if typ == 'discord':
            resp = await session.post(url, json={'content': payload_line}, timeout=timeout)
        elif typ == 'slack':
            resp = await session.post(url, json={'text': payload_line}, timeout=timeout)
        elif bool(dest.get('raw_json', False)):
            try:
                doc = json.loads(line)
            except ValueError:
                doc = {'message': line}
            if dry_run and isinstance(doc, dict) and 'dryRun' not in doc:
                doc['dryRun'] = True
            resp = await session.post(url, json=doc, headers=headers, timeout=timeout)
        else:
            resp = await session.post(url, json={'message': payload_line}, headers=headers, timeout=timeout)
        status = getattr(resp, 'status', None)
        if debug_logging and status is not None and status >= 400:
            logging.warning(f"Notify({typ}): destination returned {status}")
    except Exception as e:
        logging.warning(f"Notify({typ}): send failed: {e}")


def _notif_enqueue(dest: Dict[str, Any], line: str) -> None:
    key = str(dest.get('name') or dest.get('url'))
    notify_dests[key] = dest
    notify_queues.setdefault(key, []).append(line)


async def deliver(
    session: aiohttp.ClientSession,
    event: Dict[str, Any],
    config: Dict[str, Any],
    dry_run: bool,
    debug_logging: bool,
) -> None:
    for d in _notif_destinations(config):
        if not _notif_match(d, event):
            continue
        line = _notif_format_line(d, event)
        if bool(d.get('batch', False)):
            _notif_enqueue(d, line)
        else:
            await _notif_send_immediate(session, d, line, dry_run, debug_logging)


async def flush(
    session: aiohttp.ClientSession,
    dry_run: bool,
    debug_logging: bool,
) -> None:
    for key, lines in list(notify_queues.items()):
        dest = notify_dests.get(key) or {}
        if not lines:
            continue
        typ = str(dest.get('type') or 'generic').lower()
        url = dest.get('url')
        timeout = aiohttp.ClientTimeout(total=5)
        try:
            if typ == 'discord':
                content = '\n'.join(lines)
                if dry_run:
                    content = '[DRY RUN]\n' + content
                if len(content) > 1900:
                    content = content[:1900] + '\n...'
                await session.post(url, json={'content': content}, timeout=timeout)
            elif typ == 'slack':
                content = '\n'.join(lines)
                if dry_run:
                    content = '[DRY RUN]\n' + content
                if len(content) > 38000:
                    content = content[:38000] + '\n...'
                await session.post(url, json={'text': content}, timeout=timeout)
            else:
                headers = dest.get('headers') if isinstance(dest.get('headers'), dict) else None
                if bool(dest.get('raw_json', False)):
                    try:
                        arr = [json.loads(l) for l in lines]
                    except ValueError:
                        arr = [{'message': l} for l in lines]
                    body: Dict[str, Any] = {'events': arr}
                    if dry_run:
                        body['dryRun'] = True
                    await session.post(url, json=body, headers=headers, timeout=timeout)
                else:
                    content = '\n'.join(lines)
                    if dry_run:
                        content = '[DRY RUN]\n' + content
                    await session.post(url, json={'message': content}, headers=headers, timeout=timeout)
        except Exception as e:
            logging.warning(f"Notify({typ}): batch flush failed: {e}")
        finally:
            lines.clear()
