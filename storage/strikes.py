from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Optional

from core.models import StrikeType

# Added on top of the trigger interval so counters survive normal consecutive runs
DEFAULT_WINDOW_BUFFER_SECONDS = 2 * 60 * 60

StrikeListener = Callable[[StrikeType, str, int, Optional[str]], None]


def load_strikes(path: str, debug_logging: bool = False) -> Dict[str, Any]:
    try:
        with open(path, 'r') as file:
            data = json.load(file)
            return data if isinstance(data, dict) else {}
    except (FileNotFoundError, json.JSONDecodeError):
        if debug_logging:
            logging.warning("Strike file not found or is invalid. Starting with an empty strike list.")
        return {}


def save_strikes(data: Dict[str, Any], path: str) -> None:
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(data, file, indent=4)
    os.replace(tmp_path, path)


def make_strike_key(strike_type: StrikeType, download_hash: str) -> str:
    return f"strike:{strike_type.value}:{download_hash.lower()}"


def make_progress_key(download_hash: str) -> str:
    return f"progress:{download_hash.lower()}"


def make_removal_key(download_id: str, instance_url: str) -> str:
    return f"removal:{download_id.lower()}:{instance_url.rstrip('/')}"


class StrikeStore:
    """In-memory strike counters, progress snapshots and removal markers.

    Every entry expires on a sliding window: each read or write pushes its
    expiry forward by ``window_seconds``. The window is owned by the caller
    (trigger interval + buffer) and can be changed between runs.
    """

    def __init__(
        self,
        window_seconds: float,
        *,
        listener: Optional[StrikeListener] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = float(window_seconds)
        self.listener = listener
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def window_for(trigger_interval_seconds: float, buffer_seconds: float = DEFAULT_WINDOW_BUFFER_SECONDS) -> float:
        return float(trigger_interval_seconds) + float(buffer_seconds)

    # low-level cache access; callers hold the lock
    def _get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if now - entry['touched'] > self.window_seconds:
            self._entries.pop(key, None)
            return None
        entry['touched'] = now
        return entry['value']

    def _set(self, key: str, value: Any) -> None:
        self._entries[key] = {'value': value, 'touched': self._clock()}

    def strike_and_check_limit(
        self,
        download_hash: str,
        strike_type: StrikeType,
        max_strikes: int,
        name: Optional[str] = None,
    ) -> bool:
        if max_strikes <= 0:
            return False
        key = make_strike_key(strike_type, download_hash)
        with self._lock:
            count = int(self._get(key) or 0) + 1
            self._set(key, count)
            if count >= max_strikes:
                self._entries.pop(key, None)

        logging.info(f'item on strike number {count} | reason {strike_type.value} | {name or download_hash}')
        if self.listener is not None:
            try:
                self.listener(strike_type, download_hash, count, name)
            except Exception as e:
                logging.warning(f'strike listener failed: {e}')

        if count < max_strikes:
            return False
        if count > max_strikes:
            logging.warning(f'blocked item keeps coming back | {name or download_hash}')
        return True

    def reset_on_progress(
        self,
        download_hash: str,
        downloaded: int,
        enabled: bool = True,
        strike_type: StrikeType = StrikeType.STALLED,
    ) -> bool:
        reset = False
        progress_key = make_progress_key(download_hash)
        with self._lock:
            previous = self._get(progress_key)
            if enabled and previous is not None and downloaded > int(previous):
                if self._entries.pop(make_strike_key(strike_type, download_hash), None) is not None:
                    reset = True
            self._set(progress_key, int(downloaded))
        if reset:
            logging.info(f'resetting {strike_type.value.lower()} strikes for {download_hash} due to progress')
        return reset

    def reset_strikes(self, download_hash: str, strike_type: StrikeType) -> None:
        with self._lock:
            self._entries.pop(make_strike_key(strike_type, download_hash), None)

    def get_count(self, download_hash: str, strike_type: StrikeType) -> int:
        with self._lock:
            return int(self._get(make_strike_key(strike_type, download_hash)) or 0)

    def mark(self, key: str) -> None:
        with self._lock:
            self._set(key, True)

    def is_marked(self, key: str) -> bool:
        with self._lock:
            return bool(self._get(key))

    def unmark(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now - e['touched'] > self.window_seconds]
            for k in stale:
                self._entries.pop(k, None)
        return len(stale)

    def clear(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        """Strike counters and progress snapshots; removal markers only live as long as the process."""
        with self._lock:
            return {k: dict(v) for k, v in self._entries.items() if not k.startswith('removal:')}

    def restore(self, data: Dict[str, Any]) -> None:
        now = self._clock()
        with self._lock:
            for key, entry in (data or {}).items():
                if not isinstance(entry, dict) or 'value' not in entry:
                    continue
                try:
                    touched = float(entry.get('touched'))
                except (TypeError, ValueError):
                    continue
                if now - touched > self.window_seconds:
                    continue
                self._entries[key] = {'value': entry['value'], 'touched': touched}
