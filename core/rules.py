from __future__ import annotations

from typing import Iterable, List, Optional

from core.models import CleanCategory, CleanReason, DownloadItem, InstanceType, QueueRecord

IMPORT_BLOCKED_STATES = ('importpending', 'importblocked', 'importfailed')


def is_torrent(record: QueueRecord) -> bool:
    return 'torrent' in (record.protocol or '').lower()


def should_clean_download(item: DownloadItem, category: CleanCategory) -> CleanReason:
    seed_hours = item.seeding_time / 3600.0
    if category.max_ratio >= 0:
        min_met = category.min_seed_time == 0 or seed_hours >= category.min_seed_time
        if min_met and item.ratio >= category.max_ratio:
            return CleanReason.MAX_RATIO_REACHED
    if category.max_seed_time >= 0 and seed_hours >= category.max_seed_time:
        return CleanReason.MAX_SEED_TIME_REACHED
    return CleanReason.NONE


def find_category(item: DownloadItem, categories: Iterable[CleanCategory]) -> Optional[CleanCategory]:
    current = (item.category or '').lower()
    if not current:
        return None
    for cat in categories:
        if cat.name.lower() == current:
            return cat
    return None


def is_import_failed(record: QueueRecord, instance_type: InstanceType) -> bool:
    status = record.tracked_download_status.lower()
    state = record.tracked_download_state.lower()
    if status == 'warning' and state in IMPORT_BLOCKED_STATES:
        return True
    if instance_type == InstanceType.LIDARR:
        return status == 'warning' and record.status.lower() in ('completed', 'failed')
    return False


def status_message_texts(record: QueueRecord) -> List[str]:
    texts: List[str] = []
    for msg in record.status_messages:
        if not isinstance(msg, dict):
            continue
        if msg.get('title'):
            texts.append(str(msg['title']))
        for line in msg.get('messages') or []:
            texts.append(str(line))
    return texts


def matches_ignore_pattern(record: QueueRecord, patterns: Iterable[str]) -> bool:
    pats = [str(p).lower() for p in patterns or [] if str(p).strip()]
    if not pats:
        return False
    for text in status_message_texts(record):
        low = text.lower()
        if any(p in low for p in pats):
            return True
    return False
